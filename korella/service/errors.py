from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP status and a stable upper-case error code;
    instances may narrow the code (for example ``EXPIRED`` on a TokenError)
    and attach machine-readable ``detail``.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class WeakPasswordError(ValidationError):
    error_code = "WEAK_PASSWORD"


class InvalidTokenError(ValidationError):
    """Verification or reset link is unknown, used or expired (400)."""
    error_code = "INVALID_TOKEN"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"


class TokenError(AuthenticationError):
    """Session token rejected; ``error_code`` names the reason."""

    MISSING = "MISSING"
    INVALID_FORMAT = "INVALID_FORMAT"
    MALFORMED = "MALFORMED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED = "EXPIRED"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message, error_code=reason)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "EMAIL_NOT_VERIFIED"


class AccountInactiveError(ForbiddenError):
    """Deactivated or suspended; the code tells which."""
    error_code = "ACCOUNT_DEACTIVATED"


class TrialExpiredError(ForbiddenError):
    error_code = "TRIAL_EXPIRED"


class UpgradeRequiredError(ForbiddenError):
    error_code = "UPGRADE_REQUIRED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class OAuthError(ServiceError):
    """OAuth failure carrying a stable lower-case redirect code."""

    ACCESS_DENIED = "access_denied"
    AUTHENTICATION_FAILED = "authentication_failed"
    STATE_MISMATCH = "state_mismatch"
    INVALID_PROVIDER = "invalid_provider"
    MISSING_CODE = "missing_code"
    CODE_EXPIRED = "code_expired"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_UNAVAILABLE = "account_unavailable"
    ACCOUNT_LOCKED = "account_locked"
    UNKNOWN_ERROR = "unknown_error"

    status_code = 400

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message, error_code=code)
        self.code = code


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "AccountInactiveError",
    "TrialExpiredError",
    "UpgradeRequiredError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "OAuthError",
    "ServerError",
]
