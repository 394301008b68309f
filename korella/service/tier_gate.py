from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Union

from korella.config import Settings
from korella.logging import get_logger
from korella.service.errors import (
    ForbiddenError,
    NotFoundError,
    TrialExpiredError,
    UpgradeRequiredError,
)
from korella.service.lifecycle import AccountLifecycle
from korella.storage.common import AuthStore
from korella.storage.models import SubscriptionTier, User, utcnow

logger = get_logger(__name__)

PRO_OR_HIGHER: FrozenSet[SubscriptionTier] = frozenset(
    {SubscriptionTier.PRO, SubscriptionTier.ENTERPRISE}
)
PAID: FrozenSet[SubscriptionTier] = frozenset(
    {SubscriptionTier.FREE, SubscriptionTier.PRO, SubscriptionTier.ENTERPRISE}
)
ANY_TIER: FrozenSet[SubscriptionTier] = frozenset(SubscriptionTier)

# Gated features and the tiers that may use them
FEATURE_TIERS: Dict[str, FrozenSet[SubscriptionTier]] = {
    "clients": ANY_TIER,
    "deals": ANY_TIER,
    "tasks": ANY_TIER,
    "documents": ANY_TIER,
    "bulk_import": PRO_OR_HIGHER,
    "advanced_reports": PRO_OR_HIGHER,
    "email_campaigns": PRO_OR_HIGHER,
    "team_management": frozenset({SubscriptionTier.ENTERPRISE}),
    "api_access": frozenset({SubscriptionTier.ENTERPRISE}),
}

_TIER_ORDER = list(SubscriptionTier)

TierRequirement = Union[SubscriptionTier, Iterable[SubscriptionTier]]


def _as_tier_set(required: TierRequirement) -> FrozenSet[SubscriptionTier]:
    if isinstance(required, SubscriptionTier):
        return frozenset({required})
    return frozenset(required)


def format_tier_requirement(tiers: Iterable[SubscriptionTier]) -> str:
    """Render tiers as "a", "a or b" or "a, b, or c"."""

    names = [t.value for t in _TIER_ORDER if t in set(tiers)]
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} or {names[1]}"
    return f"{', '.join(names[:-1])}, or {names[-1]}"


@dataclass(frozen=True)
class SubscriptionStatus:
    tier: SubscriptionTier
    is_trial: bool
    is_trial_expired: bool
    trial_days_remaining: Optional[int]
    trial_expires_at: Optional[datetime]


class TierGate:
    """Authorizes a caller against a set of acceptable tiers.

    The decision always uses the stored user, never the tier snapshot inside
    the session token, and re-runs the active-account check first.
    """

    def __init__(
        self,
        store: AuthStore,
        lifecycle: AccountLifecycle,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def subscription_status(self, user: User) -> SubscriptionStatus:
        is_trial = user.subscription_tier == SubscriptionTier.TRIAL
        expired = False
        remaining: Optional[int] = None
        if is_trial and user.trial_expires_at is not None:
            delta = user.trial_expires_at - self._now()
            expired = delta.total_seconds() <= 0
            remaining = max(0, math.floor(delta.total_seconds() / 86400))
        return SubscriptionStatus(
            tier=user.subscription_tier,
            is_trial=is_trial,
            is_trial_expired=expired,
            trial_days_remaining=remaining,
            trial_expires_at=user.trial_expires_at,
        )

    def _tier_detail(
        self, status: SubscriptionStatus, allowed: FrozenSet[SubscriptionTier]
    ) -> dict:
        return {
            "current_tier": status.tier.value,
            "required_tiers": [t.value for t in _TIER_ORDER if t in allowed],
            "trial_days_remaining": status.trial_days_remaining,
            "upgrade_url": f"{self.settings.app_base_url.rstrip('/')}/settings/billing",
        }

    def authorize(
        self,
        user_id: str,
        required: TierRequirement,
        *,
        allow_expired_trial: bool = False,
    ) -> User:
        """Return the fresh user if allowed, otherwise raise the denial.

        Raises:
            TrialExpiredError: the caller is on an expired trial, even when
                ``trial`` is in the allowed set.
            UpgradeRequiredError: the tier is not in the allowed set.
        """

        user = self.lifecycle.check_active(self.store.get_user(user_id))
        allowed = _as_tier_set(required)
        status = self.subscription_status(user)
        if status.is_trial_expired and not allow_expired_trial:
            logger.info("tier_gate_denied", user_id=user_id, reason="trial_expired")
            raise TrialExpiredError(
                "Your trial period has expired. Please upgrade to continue.",
                detail=self._tier_detail(status, allowed),
            )
        if user.subscription_tier not in allowed:
            logger.info(
                "tier_gate_denied",
                user_id=user_id,
                reason="upgrade_required",
                current_tier=user.subscription_tier.value,
            )
            raise UpgradeRequiredError(
                f"This feature requires {format_tier_requirement(allowed)} tier or higher",
                detail=self._tier_detail(status, allowed),
            )
        return user

    def require_active_trial(self, user_id: str) -> User:
        user = self.lifecycle.check_active(self.store.get_user(user_id))
        status = self.subscription_status(user)
        detail = self._tier_detail(status, frozenset({SubscriptionTier.TRIAL}))
        if status.is_trial_expired:
            raise TrialExpiredError(
                "Your trial period has expired. Please upgrade to continue.",
                detail=detail,
            )
        if not status.is_trial:
            raise ForbiddenError(
                "This feature requires an active trial period", detail=detail
            )
        return user

    def authorize_feature(self, user_id: str, feature: str) -> User:
        allowed = FEATURE_TIERS.get(feature)
        if allowed is None:
            raise NotFoundError("Unknown feature", detail={"feature": feature})
        return self.authorize(user_id, allowed)

    def feature_access(self, user_id: str, feature: str) -> dict:
        """Non-raising variant for clients that render upgrade prompts."""

        if feature not in FEATURE_TIERS:
            raise NotFoundError("Unknown feature", detail={"feature": feature})
        try:
            user = self.authorize_feature(user_id, feature)
        except (TrialExpiredError, UpgradeRequiredError) as exc:
            return {
                "feature": feature,
                "allowed": False,
                "reason": exc.error_code,
                "message": exc.message,
                **exc.detail,
            }
        status = self.subscription_status(user)
        return {
            "feature": feature,
            "allowed": True,
            "reason": None,
            "message": None,
            **self._tier_detail(status, FEATURE_TIERS[feature]),
        }
