from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_PASSWORD_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""

    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "VALIDATION_ERROR",
        "WEAK_PASSWORD",
        "INVALID_TOKEN",
        "UNAUTHORIZED",
        "INVALID_CREDENTIALS",
        "MISSING",
        "INVALID_FORMAT",
        "MALFORMED",
        "INVALID_SIGNATURE",
        "EXPIRED",
        "FORBIDDEN",
        "EMAIL_NOT_VERIFIED",
        "ACCOUNT_DEACTIVATED",
        "ACCOUNT_SUSPENDED",
        "TRIAL_EXPIRED",
        "UPGRADE_REQUIRED",
        "NOT_FOUND",
        "CONFLICT",
        "EMAIL_EXISTS",
        "ACCOUNT_PENDING_VERIFICATION",
        "ACCOUNT_PREVIOUSLY_DELETED",
        "INVALID_TRANSITION",
        "ACCOUNT_LOCKED",
        "RATE_LIMITED",
        "SERVER_ERROR",
        "SERVICE_UNAVAILABLE",
        # OAuth redirect codes
        "access_denied",
        "authentication_failed",
        "state_mismatch",
        "invalid_provider",
        "missing_code",
        "code_expired",
        "email_not_verified",
        "account_unavailable",
        "account_locked",
        "unknown_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailPayload(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailPayload):
    # Strength rules are applied by the service so every violation is reported
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    full_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("full_name")
    @classmethod
    def _clean_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = _normalize_unicode(value).strip()
        return cleaned or None


class LoginRequest(_EmailPayload):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = False


class ResendVerificationRequest(_EmailPayload):
    pass


class ForgotPasswordRequest(_EmailPayload):
    pass


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordStrengthResponse(BaseModel):
    ok: bool
    violations: List[str]
    messages: List[str]


class DeactivateRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    email_verified: bool
    account_status: str
    subscription_tier: str
    trial_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    extended: bool = False


class MessageResponse(BaseModel):
    message: str


class SubscriptionResponse(BaseModel):
    tier: str
    is_trial: bool
    is_trial_expired: bool
    trial_days_remaining: Optional[int] = None
    trial_expires_at: Optional[datetime] = None


class FeatureAccessResponse(BaseModel):
    feature: str
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    current_tier: str
    required_tiers: List[str]
    trial_days_remaining: Optional[int] = None
    upgrade_url: str
