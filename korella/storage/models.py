from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class SubscriptionTier(str, Enum):
    """Subscription tiers.

    ``trial`` is a parallel track rather than the bottom rung of a ladder, so
    tiers are compared by set membership, never by ordering.
    """

    TRIAL = "trial"
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class AuthEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAIL = "login_fail"
    LOGOUT = "logout"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    PASSWORD_CHANGE = "password_change"
    EMAIL_VERIFICATION = "email_verification"
    EMAIL_VERIFICATION_RESEND = "email_verification_resend"
    ACCOUNT_LOCKOUT = "account_lockout"
    ACCOUNT_SUSPEND = "account_suspend"
    ACCOUNT_UNLOCK = "account_unlock"
    OAUTH_LOGIN = "oauth_login"
    OAUTH_LINK = "oauth_link"
    OAUTH_UNLINK = "oauth_unlink"
    REGISTRATION = "registration"
    ACCOUNT_DEACTIVATE = "account_deactivate"
    ACCOUNT_REACTIVATE = "account_reactivate"


@dataclass
class User:
    id: str
    email: str
    full_name: Optional[str] = None
    password_hash: Optional[str] = None
    email_verified: bool = False
    verified_at: Optional[datetime] = None
    account_status: AccountStatus = AccountStatus.PENDING
    subscription_tier: SubscriptionTier = SubscriptionTier.TRIAL
    trial_expires_at: Optional[datetime] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    # Session tokens issued before this instant are no longer honoured
    tokens_valid_after: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        full_name: Optional[str] = None,
        password_hash: Optional[str] = None,
        account_status: AccountStatus = AccountStatus.PENDING,
        subscription_tier: SubscriptionTier = SubscriptionTier.TRIAL,
        email_verified: bool = False,
        verified_at: Optional[datetime] = None,
        trial_expires_at: Optional[datetime] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            full_name=full_name,
            password_hash=password_hash,
            email_verified=email_verified,
            verified_at=verified_at,
            account_status=account_status,
            subscription_tier=subscription_tier,
            trial_expires_at=trial_expires_at,
            created_at=now,
            updated_at=now,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class OAuthLink:
    user_id: str
    provider: OAuthProvider
    provider_user_id: str
    provider_email: Optional[str] = None
    tokens: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SingleUseToken:
    """Server-side record of an email verification or password reset link.

    Only the SHA-256 digest of the emailed value is stored.
    """

    token_hash: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    email: Optional[str] = None
    used: bool = False
    used_at: Optional[datetime] = None
    request_ip: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def is_redeemable(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now


@dataclass
class AuthLog:
    event_type: AuthEventType
    success: bool
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    target_email: Optional[str] = None
    event_details: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
