"""Account lifecycle: login evaluation, lockout and status transitions.

States are ``pending``, ``active``, ``suspended`` and ``deactivated``. The
locked condition is orthogonal and derived from ``locked_until``; it lapses
on its own once the clock passes it.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from korella.config import Settings
from korella.logging import get_logger, redact_email
from korella.service.audit import AuditLog
from korella.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
)
from korella.service.passwords import PasswordService
from korella.service.tokens import truncate_to_millis
from korella.storage.common import AuthStore
from korella.storage.models import AccountStatus, AuthEventType, User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"

_INACTIVE = {
    AccountStatus.DEACTIVATED: ("ACCOUNT_DEACTIVATED", "Account has been deactivated"),
    AccountStatus.SUSPENDED: ("ACCOUNT_SUSPENDED", "Account has been suspended"),
}

# action -> (allowed source states, target state)
TRANSITIONS: Dict[str, Tuple[FrozenSet[AccountStatus], AccountStatus]] = {
    "activate": (frozenset({AccountStatus.PENDING}), AccountStatus.ACTIVE),
    "deactivate": (frozenset({AccountStatus.ACTIVE}), AccountStatus.DEACTIVATED),
    "reactivate": (
        frozenset({AccountStatus.DEACTIVATED, AccountStatus.SUSPENDED}),
        AccountStatus.ACTIVE,
    ),
    "suspend": (frozenset({AccountStatus.ACTIVE}), AccountStatus.SUSPENDED),
}

_TRANSITION_EVENTS = {
    "deactivate": AuthEventType.ACCOUNT_DEACTIVATE,
    "reactivate": AuthEventType.ACCOUNT_REACTIVATE,
    "suspend": AuthEventType.ACCOUNT_SUSPEND,
}


def lock_remaining_text(locked_until: datetime, now: datetime) -> str:
    seconds = (locked_until - now).total_seconds()
    if seconds <= 0:
        return "now"
    minutes = math.ceil(seconds / 60)
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = math.ceil(minutes / 60)
    return f"{hours} hour{'s' if hours != 1 else ''}"


def trial_expiry(start: datetime, days: int) -> datetime:
    """End of the UTC day ``days`` after ``start``."""

    end = (start + timedelta(days=days)).astimezone(timezone.utc)
    return end.replace(hour=23, minute=59, second=59, microsecond=999999)


class AccountLifecycle:
    def __init__(
        self,
        store: AuthStore,
        passwords: PasswordService,
        audit: AuditLog,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.audit = audit
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _locked_error(self, user: User, now: datetime) -> AccountLockedError:
        remaining = lock_remaining_text(user.locked_until, now)
        return AccountLockedError(
            "Account is temporarily locked due to multiple failed login attempts. "
            f"Please try again in {remaining}",
            detail={
                "locked_until": user.locked_until.isoformat(),
                "retry_after": remaining,
            },
        )

    def _count_failure(self, user: User, now: datetime) -> Tuple[User, bool]:
        return self.store.increment_failed_login(
            user.id,
            threshold=self.settings.max_failed_login_attempts,
            lock_until=now + timedelta(minutes=self.settings.lockout_duration_minutes),
            now=now,
        )

    def _log_failure(
        self,
        email: str,
        reason: str,
        *,
        user: Optional[User],
        ip_address: Optional[str],
        user_agent: Optional[str],
        details: Optional[dict] = None,
        event: AuthEventType = AuthEventType.LOGIN_FAIL,
    ) -> None:
        logger.warning(
            "login_failed",
            reason=reason,
            user_id=user.id if user else None,
            email=redact_email(email),
        )
        self.audit.record(
            event,
            success=False,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            failure_reason=reason,
            target_email=email,
            details=details,
        )

    def evaluate_login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Run one password login attempt and return the signed-in user.

        Checks stop at the first failure: unknown or deleted account, lock,
        inactive status, wrong password, unverified email. Every attempt
        writes exactly one AuthLog row; attempts against a live account move
        its failure counter in one atomic store call.
        """

        now = self._now()
        user = self.store.get_user_by_email(email)
        log = {"ip_address": ip_address, "user_agent": user_agent}

        if user is None or user.is_deleted:
            self.passwords.burn(password)
            self._log_failure(
                email,
                "account_deleted" if user else "user_not_found",
                user=user,
                **log,
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        if user.is_locked(now):
            self.passwords.burn(password)
            counted, _ = self._count_failure(user, now)
            self._log_failure(
                email,
                "account_locked",
                user=user,
                details={"failed_login_count": counted.failed_login_count},
                **log,
            )
            raise self._locked_error(counted, now)

        if user.account_status in _INACTIVE:
            self.passwords.burn(password)
            self._count_failure(user, now)
            code, message = _INACTIVE[user.account_status]
            self._log_failure(email, user.account_status.value, user=user, **log)
            raise AccountInactiveError(message, error_code=code)

        if not self.passwords.verify(password, user.password_hash):
            counted, newly_locked = self._count_failure(user, now)
            details = {"failed_login_count": counted.failed_login_count}
            event = AuthEventType.LOGIN_FAIL
            if newly_locked:
                # The attempt that trips the threshold is recorded as the lockout
                event = AuthEventType.ACCOUNT_LOCKOUT
                details["locked_until"] = counted.locked_until.isoformat()
                details["lockout_duration_minutes"] = self.settings.lockout_duration_minutes
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    locked_until=counted.locked_until.isoformat(),
                )
            self._log_failure(
                email, "invalid_password", user=user, details=details, event=event, **log
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        if not user.email_verified or user.account_status == AccountStatus.PENDING:
            self.store.reset_failed_logins(user.id)
            self._log_failure(email, "email_not_verified", user=user, **log)
            raise EmailNotVerifiedError("Please verify your email before logging in")

        user = self.store.record_login_success(user.id, at=now, ip_address=ip_address)
        if user.password_hash and self.passwords.needs_rehash(user.password_hash):
            user = self.store.update_user(
                user.id, password_hash=self.passwords.hash(password)
            )
        self.audit.record(
            AuthEventType.LOGIN_SUCCESS,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=user.email,
        )
        logger.info("login_succeeded", user_id=user.id)
        return user

    def check_active(self, user: Optional[User]) -> User:
        """Reject users who must not act on an existing session."""

        now = self._now()
        if user is None or user.is_deleted:
            raise AuthenticationError("Authentication required")
        if user.account_status in _INACTIVE:
            code, message = _INACTIVE[user.account_status]
            raise AccountInactiveError(message, error_code=code)
        if user.is_locked(now):
            raise self._locked_error(user, now)
        if not user.email_verified or user.account_status != AccountStatus.ACTIVE:
            raise EmailNotVerifiedError("Please verify your email before logging in")
        return user

    def transition(
        self,
        user_id: str,
        action: str,
        *,
        actor: str = "user",
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        **extra_changes,
    ) -> User:
        allowed, target = TRANSITIONS[action]
        user = self.store.get_user(user_id)
        if user is None or user.is_deleted:
            raise NotFoundError("Account not found")
        if user.account_status not in allowed:
            raise ConflictError(
                f"Cannot {action} an account that is {user.account_status.value}",
                error_code="INVALID_TRANSITION",
                detail={"from": user.account_status.value, "action": action},
            )
        changes = dict(extra_changes)
        changes["account_status"] = target
        if target in _INACTIVE:
            # Sessions issued before the status change stay dead after reactivation
            changes["tokens_valid_after"] = truncate_to_millis(self._now())
        updated = self.store.update_user(user_id, **changes)
        logger.info(
            "account_transition",
            user_id=user_id,
            action=action,
            from_status=user.account_status.value,
            to_status=target.value,
            actor=actor,
        )
        event = _TRANSITION_EVENTS.get(action)
        if event is not None:
            self.audit.record(
                event,
                success=True,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"actor": actor, "status": target.value, "reason": reason},
            )
        return updated

    def activate(self, user_id: str, **changes) -> User:
        return self.transition(user_id, "activate", **changes)

    def deactivate(self, user_id: str, **kwargs) -> User:
        return self.transition(user_id, "deactivate", **kwargs)

    def reactivate(self, user_id: str, **kwargs) -> User:
        return self.transition(user_id, "reactivate", **kwargs)

    def suspend(self, user_id: str, **kwargs) -> User:
        return self.transition(user_id, "suspend", **kwargs)

    def unlock(self, user_id: str, *, actor: str = "operator") -> User:
        user = self.store.get_user(user_id)
        if user is None or user.is_deleted:
            raise NotFoundError("Account not found")
        if not user.is_locked(self._now()) and not user.failed_login_count:
            raise ConflictError(
                "Account is not locked", error_code="INVALID_TRANSITION"
            )
        updated = self.store.reset_failed_logins(user_id)
        self.audit.record(
            AuthEventType.ACCOUNT_UNLOCK,
            success=True,
            user_id=user_id,
            details={"actor": actor},
        )
        logger.info("account_unlocked", user_id=user_id, actor=actor)
        return updated
