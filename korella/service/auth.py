from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from korella.config import Settings
from korella.logging import get_logger, redact_email
from korella.service.audit import AuditLog
from korella.service.email import Mailer
from korella.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    TokenError,
    ValidationError,
    WeakPasswordError,
)
from korella.service.lifecycle import AccountLifecycle, trial_expiry
from korella.service.oauth import (
    OAuthFederation,
    OAuthProviderClient,
    OAuthStart,
    OAuthStateStore,
)
from korella.service.passwords import PasswordService, StrengthReport, validate_strength
from korella.service.rate_limit import RateLimiter
from korella.service.tier_gate import SubscriptionStatus, TierGate
from korella.service.tokens import Claims, IssuedToken, TokenService, truncate_to_millis
from korella.service.verification import TokenManager
from korella.storage.common import AuthStore, normalize_email
from korella.storage.errors import ConstraintViolation
from korella.storage.models import (
    AccountStatus,
    AuthEventType,
    SubscriptionTier,
    TokenPurpose,
    User,
    utcnow,
)

logger = get_logger(__name__)

RESET_REQUEST_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent"
)
RESEND_MESSAGE = (
    "If an account exists for that email, a verification link has been sent"
)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller, threaded explicitly through each handler."""

    user: User
    claims: Claims
    token: str


class AuthService:
    """Orchestrates the account flows over the auth components.

    Construction is explicit: the store, the optional Redis cache, the mailer
    and the OAuth provider client are handed in by the process entry point.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        mailer: Mailer,
        cache=None,
        oauth_client: Optional[OAuthProviderClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.mailer = mailer
        self._clock = clock or utcnow
        self.passwords = PasswordService(settings)
        self.tokens = TokenService(settings, clock=self._clock)
        self.audit = AuditLog(
            store, retention_days=settings.auth_log_retention_days, clock=self._clock
        )
        self.lifecycle = AccountLifecycle(
            store, self.passwords, self.audit, settings, clock=self._clock
        )
        self.verification = TokenManager(store, settings, clock=self._clock)
        self.gate = TierGate(store, self.lifecycle, settings, clock=self._clock)
        self.limiter = RateLimiter(cache, clock=self._clock)
        self.oauth = OAuthFederation(
            store,
            oauth_client or OAuthProviderClient(settings),
            OAuthStateStore(cache),
            self.audit,
            settings,
            clock=self._clock,
        )
        # Logged-out token ids when Redis is not configured
        self._denylist: Dict[str, datetime] = {}
        self._denylist_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def _session_cutoff(self) -> datetime:
        # Sessions issued before this instant, at token resolution, are void
        return truncate_to_millis(self._now())

    async def _deliver(self, send: Callable[..., bool], *args, **kwargs) -> None:
        """Hand a message to the mailer without letting delivery block the flow."""

        try:
            delivered = await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            logger.error("email_delivery_error", mail=send.__name__, error=str(exc))
            return
        if not delivered:
            logger.error("email_delivery_failed", mail=send.__name__)

    @staticmethod
    def password_strength(password: str) -> StrengthReport:
        return validate_strength(password)

    def _require_strong(self, password: str) -> None:
        report = validate_strength(password)
        if not report.ok:
            raise WeakPasswordError(
                "Password does not meet requirements",
                detail={
                    "violations": [v.value for v in report.violations],
                    "messages": report.messages,
                },
            )

    # -- registration and verification ---------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        email = normalize_email(email)
        self._require_strong(password)
        existing = self.store.get_user_by_email(email)
        if existing is not None:
            raise self._registration_conflict(existing)
        try:
            user = self.store.create_user(
                User.new(
                    email,
                    full_name=full_name,
                    password_hash=self.passwords.hash(password),
                    account_status=AccountStatus.PENDING,
                    subscription_tier=SubscriptionTier.TRIAL,
                )
            )
        except ConstraintViolation:
            raise ConflictError(
                "An account with this email already exists", error_code="EMAIL_EXISTS"
            )
        token = self.verification.issue_verification_token(
            user, request_ip=ip_address, user_agent=user_agent
        )
        await self._deliver(self.mailer.send_verification_email, user, token)
        self.audit.record(
            AuthEventType.REGISTRATION,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=email,
        )
        logger.info("user_registered", user_id=user.id)
        return user

    @staticmethod
    def _registration_conflict(existing: User) -> ConflictError:
        if existing.is_deleted:
            return ConflictError(
                "This email address was previously deleted. Please contact support.",
                error_code="ACCOUNT_PREVIOUSLY_DELETED",
            )
        if existing.account_status == AccountStatus.PENDING:
            return ConflictError(
                "An account with this email is pending verification. "
                "Please check your email or request a new verification link.",
                error_code="ACCOUNT_PENDING_VERIFICATION",
            )
        return ConflictError(
            "An account with this email already exists", error_code="EMAIL_EXISTS"
        )

    async def verify_email(
        self,
        token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        redemption = self.verification.consume(token, TokenPurpose.EMAIL_VERIFICATION)
        user, record = redemption.user, redemption.token
        now = self._now()
        target_email = normalize_email(record.email) if record.email else user.email

        if target_email != user.email:
            try:
                user = self.store.update_user(
                    user.id, email=target_email, email_verified=True, verified_at=now
                )
            except ConstraintViolation:
                raise ConflictError(
                    "An account with this email already exists", error_code="EMAIL_EXISTS"
                )
            logger.info("email_change_verified", user_id=user.id)
        elif user.account_status == AccountStatus.PENDING:
            changes = {"email_verified": True, "verified_at": now}
            if user.subscription_tier == SubscriptionTier.TRIAL and user.trial_expires_at is None:
                changes["trial_expires_at"] = trial_expiry(now, self.settings.trial_period_days)
            user = self.lifecycle.activate(user.id, **changes)
        elif not user.email_verified:
            user = self.store.update_user(user.id, email_verified=True, verified_at=now)

        self.audit.record(
            AuthEventType.EMAIL_VERIFICATION,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=user.email,
        )
        logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        email = normalize_email(email)
        await self.limiter.enforce(
            f"verify:{email}",
            self.settings.reset_rate_limit_per_hour,
            3600,
            message="Too many verification requests. Please try again later",
            fixed_window=True,
        )
        user = self.store.get_user_by_email(email)
        if user is None or user.is_deleted:
            return RESEND_MESSAGE
        if user.email_verified:
            return "Email is already verified"
        if user.account_status != AccountStatus.PENDING:
            return "This account does not require verification"
        token = self.verification.issue_verification_token(
            user, request_ip=ip_address, user_agent=user_agent
        )
        await self._deliver(self.mailer.send_verification_email, user, token)
        self.audit.record(
            AuthEventType.EMAIL_VERIFICATION_RESEND,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=email,
        )
        return RESEND_MESSAGE

    # -- passwords -------------------------------------------------------------

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Send a reset link when the account can use one.

        The answer is the same for unknown and ineligible addresses.
        """

        email = normalize_email(email)
        await self.limiter.enforce(
            f"reset:{email}",
            self.settings.reset_rate_limit_per_hour,
            3600,
            message="Too many password reset requests. Please try again later",
            fixed_window=True,
        )
        user = self.store.get_user_by_email(email)
        eligible = (
            user is not None
            and not user.is_deleted
            and user.password_hash is not None
            and user.account_status not in (AccountStatus.DEACTIVATED, AccountStatus.SUSPENDED)
        )
        if eligible:
            token = self.verification.issue_reset_token(
                user, request_ip=ip_address, user_agent=user_agent
            )
            await self._deliver(self.mailer.send_password_reset_email, user, token)
        else:
            logger.info("password_reset_skipped", email=redact_email(email))
        self.audit.record(
            AuthEventType.PASSWORD_RESET_REQUEST,
            success=eligible,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=email,
            failure_reason=None if eligible else "ineligible",
        )
        return RESET_REQUEST_MESSAGE

    async def reset_password(
        self,
        token: Optional[str],
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        # Checked first so a weak password does not burn the link
        self._require_strong(new_password)
        redemption = self.verification.consume(token, TokenPurpose.PASSWORD_RESET)
        user = self.store.update_user(
            redemption.user.id,
            password_hash=self.passwords.hash(new_password),
            failed_login_count=0,
            locked_until=None,
            tokens_valid_after=self._session_cutoff(),
        )
        self.verification.revoke_outstanding(user.id, TokenPurpose.PASSWORD_RESET)
        await self._deliver(self.mailer.send_password_changed_email, user)
        self.audit.record(
            AuthEventType.PASSWORD_RESET_COMPLETE,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=user.email,
        )
        logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedToken:
        """Change the caller's password and sign out their other sessions.

        Returns a fresh session token so the caller stays signed in.
        """

        user = ctx.user
        if not self.passwords.verify(current_password, user.password_hash):
            self.audit.record(
                AuthEventType.PASSWORD_CHANGE,
                success=False,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="invalid_current_password",
            )
            raise InvalidCredentialsError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must be different from current password")
        self._require_strong(new_password)
        user = self.store.update_user(
            user.id,
            password_hash=self.passwords.hash(new_password),
            tokens_valid_after=self._session_cutoff(),
        )
        issued = self.tokens.issue(user, extended=ctx.claims.extended)
        await self._deliver(self.mailer.send_password_changed_email, user)
        self.audit.record(
            AuthEventType.PASSWORD_CHANGE,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return issued

    # -- sessions --------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, IssuedToken]:
        user = self.lifecycle.evaluate_login(
            normalize_email(email),
            password,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, self.tokens.issue(user, extended=remember_me)

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        """Resolve a presented session token into an AuthContext.

        Raises:
            TokenError: the token is missing, malformed, forged, expired,
                logged out or predates a credential change.
            AuthenticationError / ForbiddenError subclasses: the account may
                no longer act.
        """

        claims = self.tokens.validate(token)
        if await self._is_denylisted(claims.token_id):
            raise TokenError(TokenError.EXPIRED, "Session expired. Please login again")
        user = self.store.get_user(claims.user_id)
        if user is None:
            raise AuthenticationError("Authentication required")
        if user.tokens_valid_after and claims.issued_at < user.tokens_valid_after:
            raise TokenError(TokenError.EXPIRED, "Session expired. Please login again")
        self.lifecycle.check_active(user)
        return AuthContext(user=user, claims=claims, token=token)

    async def logout(
        self,
        ctx: AuthContext,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self._denylist_token(ctx.claims.token_id, ctx.claims.expires_at)
        self.audit.record(
            AuthEventType.LOGOUT,
            success=True,
            user_id=ctx.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("user_logged_out", user_id=ctx.user.id)

    async def _denylist_token(self, jti: str, expires_at: datetime) -> None:
        if self.cache is not None:
            await self.cache.denylist_token(jti, expires_at)
            return
        with self._denylist_lock:
            self._denylist[jti] = expires_at

    async def _is_denylisted(self, jti: str) -> bool:
        if self.cache is not None:
            return await self.cache.is_token_denylisted(jti)
        now = self._now()
        with self._denylist_lock:
            for stale in [k for k, exp in self._denylist.items() if exp <= now]:
                self._denylist.pop(stale, None)
            return jti in self._denylist

    # -- account ---------------------------------------------------------------

    async def deactivate_self(
        self,
        ctx: AuthContext,
        password: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = ctx.user
        if user.password_hash is not None and not self.passwords.verify(
            password or "", user.password_hash
        ):
            raise InvalidCredentialsError("Password is incorrect")
        updated = self.lifecycle.deactivate(
            user.id, actor="user", ip_address=ip_address, user_agent=user_agent
        )
        await self._denylist_token(ctx.claims.token_id, ctx.claims.expires_at)
        return updated

    def subscription_status(self, ctx: AuthContext) -> SubscriptionStatus:
        return self.gate.subscription_status(ctx.user)

    # -- oauth -----------------------------------------------------------------

    async def begin_oauth(self, provider: str) -> OAuthStart:
        return await self.oauth.begin_auth(provider)

    async def complete_oauth(
        self,
        provider: str,
        *,
        code: Optional[str],
        state: Optional[str],
        binding: Optional[str],
        error: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, IssuedToken]:
        user = await self.oauth.complete_auth(
            provider,
            code=code,
            state=state,
            binding=binding,
            error=error,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, self.tokens.issue(user)

    def unlink_oauth(
        self,
        ctx: AuthContext,
        provider: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.oauth.unlink(ctx.user, provider, ip_address=ip_address, user_agent=user_agent)
