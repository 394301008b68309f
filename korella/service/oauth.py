"""OAuth federation for Google and Microsoft sign-in.

``begin_auth`` mints an unguessable ``state`` bound to the initiating browser
through a separate cookie value. ``complete_auth`` consumes that state once,
checks the binding, and only then exchanges the code and maps the external
identity onto a local account.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from korella.config import Settings
from korella.logging import get_logger, redact_email
from korella.service.audit import AuditLog
from korella.service.errors import ConflictError, NotFoundError, OAuthError
from korella.service.lifecycle import trial_expiry
from korella.service.tokens import truncate_to_millis
from korella.storage.common import AuthStore, normalize_email
from korella.storage.errors import ConstraintViolation
from korella.storage.models import (
    AccountStatus,
    AuthEventType,
    OAuthLink,
    OAuthProvider,
    SubscriptionTier,
    TokenPurpose,
    User,
    utcnow,
)

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    OAuthProvider.GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    OAuthProvider.MICROSOFT: {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}


def parse_provider(name: str) -> OAuthProvider:
    try:
        return OAuthProvider(name.lower())
    except ValueError:
        raise OAuthError(OAuthError.INVALID_PROVIDER, "Unsupported OAuth provider")


def _binding_hash(binding: str) -> str:
    return hashlib.sha256(binding.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class OAuthIdentity:
    provider: OAuthProvider
    provider_user_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    tokens: Dict = field(default_factory=dict)


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str
    binding: str


class OAuthProviderClient:
    """Authorization URL construction and code exchange per provider."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    def credentials(self, provider: OAuthProvider) -> Tuple[Optional[str], Optional[str]]:
        if provider == OAuthProvider.GOOGLE:
            return (
                self.settings.oauth_google_client_id,
                self.settings.oauth_google_client_secret,
            )
        return (
            self.settings.oauth_microsoft_client_id,
            self.settings.oauth_microsoft_client_secret,
        )

    def redirect_uri(self, provider: OAuthProvider) -> str:
        base = self.settings.api_base_url.rstrip("/")
        return f"{base}/v1/auth/oauth/{provider.value}/callback"

    def authorization_url(self, provider: OAuthProvider, state: str) -> str:
        client_id, _ = self.credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider.value)
            raise OAuthError(OAuthError.INVALID_PROVIDER, "OAuth provider is not configured")
        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri(provider),
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == OAuthProvider.GOOGLE:
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        elif provider == OAuthProvider.MICROSOFT:
            params["response_mode"] = "query"
        return f"{config['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, provider: OAuthProvider, code: str) -> OAuthIdentity:
        client_id, client_secret = self.credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider.value)
            raise OAuthError(OAuthError.INVALID_PROVIDER, "OAuth provider is not configured")
        config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                if token_response.status_code == 400 and self._is_invalid_grant(
                    token_response
                ):
                    raise OAuthError(
                        OAuthError.CODE_EXPIRED, "Authorization code expired or already used"
                    )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider.value)
                    raise OAuthError(
                        OAuthError.AUTHENTICATION_FAILED, "Provider did not return a token"
                    )

                userinfo_response = await client.get(
                    config["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider.value,
                status_code=exc.response.status_code,
            )
            raise OAuthError(OAuthError.AUTHENTICATION_FAILED, "OAuth exchange failed")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider.value, error=str(exc))
            raise OAuthError(OAuthError.AUTHENTICATION_FAILED, "OAuth exchange failed")

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=provider.value)
            raise OAuthError(OAuthError.AUTHENTICATION_FAILED, "OAuth exchange failed")
        identity = self._parse_userinfo(provider, userinfo, token_result)
        logger.info(
            "oauth_exchange_success",
            provider=provider.value,
            provider_uid=identity.provider_user_id,
        )
        return identity

    @staticmethod
    def _is_invalid_grant(response: httpx.Response) -> bool:
        try:
            body = response.json()
        except ValueError:
            return False
        return isinstance(body, dict) and body.get("error") == "invalid_grant"

    @staticmethod
    def _parse_userinfo(
        provider: OAuthProvider, userinfo: dict, token_result: dict
    ) -> OAuthIdentity:
        if provider == OAuthProvider.GOOGLE:
            uid = userinfo.get("id")
            email = userinfo.get("email")
            name = userinfo.get("name")
            verified = bool(userinfo.get("verified_email"))
        else:
            uid = userinfo.get("id")
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
            name = userinfo.get("displayName")
            # Graph only returns addresses the tenant has already verified
            verified = bool(email)
        if not uid or not email:
            logger.error("oauth_identity_incomplete", provider=provider.value)
            raise OAuthError(
                OAuthError.AUTHENTICATION_FAILED, "Provider did not return an identity"
            )
        # Keep token metadata only; bearer secrets are not persisted
        tokens = {
            key: token_result[key]
            for key in ("token_type", "scope", "expires_in")
            if key in token_result
        }
        return OAuthIdentity(
            provider=provider,
            provider_user_id=str(uid),
            email=normalize_email(email),
            email_verified=verified,
            name=name,
            tokens=tokens,
        )


class OAuthStateStore:
    """Pending ``state`` records, in Redis when available.

    Without a cache the records live in a locked dict, which is only correct
    for a single process.
    """

    def __init__(self, cache=None) -> None:
        self.cache = cache
        self._states: Dict[str, dict] = {}
        self._lock = threading.Lock()

    async def put(
        self, state: str, provider: OAuthProvider, binding_hash: str, expires_at: datetime
    ) -> None:
        if self.cache is not None:
            await self.cache.set_oauth_state(state, provider.value, binding_hash, expires_at)
            return
        with self._lock:
            self._states[state] = {
                "provider": provider.value,
                "binding_hash": binding_hash,
                "expires_at": expires_at,
            }

    async def pop(self, state: str) -> Optional[dict]:
        if self.cache is not None:
            return await self.cache.pop_oauth_state(state)
        with self._lock:
            return self._states.pop(state, None)


class OAuthFederation:
    def __init__(
        self,
        store: AuthStore,
        client: OAuthProviderClient,
        states: OAuthStateStore,
        audit: AuditLog,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.states = states
        self.audit = audit
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def login_redirect_url(self, code: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/login?{urlencode({'error': code})}"

    def dashboard_url(self) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/dashboard"

    async def begin_auth(self, provider_name: str) -> OAuthStart:
        provider = parse_provider(provider_name)
        state = secrets.token_urlsafe(32)
        binding = secrets.token_urlsafe(32)
        url = self.client.authorization_url(provider, state)
        expires_at = self._now() + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        await self.states.put(state, provider, _binding_hash(binding), expires_at)
        logger.info("oauth_started", provider=provider.value)
        return OAuthStart(authorization_url=url, state=state, binding=binding)

    async def complete_auth(
        self,
        provider_name: str,
        *,
        code: Optional[str],
        state: Optional[str],
        binding: Optional[str],
        error: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Finish a provider callback and return the signed-in local user.

        Raises:
            OAuthError: with one of the stable redirect codes.
        """

        provider = parse_provider(provider_name)
        record = await self.states.pop(state) if state else None

        if error:
            logger.warning("oauth_provider_error", provider=provider.value, error=error)
            if error == "access_denied":
                raise OAuthError(OAuthError.ACCESS_DENIED, "Sign-in was cancelled")
            raise OAuthError(OAuthError.AUTHENTICATION_FAILED, "Provider sign-in failed")
        if not code:
            raise OAuthError(OAuthError.MISSING_CODE, "Missing authorization code")
        if not self._state_matches(record, provider, binding):
            logger.warning("oauth_state_mismatch", provider=provider.value)
            raise OAuthError(OAuthError.STATE_MISMATCH, "OAuth state did not match")

        identity = await self.client.exchange_code(provider, code)
        user, linked = self._find_user(identity)
        created = False
        if user is None:
            user, created = self._create_user(identity)

        # Nothing is written for an account that may not sign in
        now = self._now()
        self._check_can_sign_in(user, now)
        if not linked:
            user = self._link(user, identity)
            if not created:
                user = self._adopt_verified_email(user, identity)

        user = self.store.record_login_success(user.id, at=now, ip_address=ip_address)
        self.audit.record(
            AuthEventType.OAUTH_LOGIN,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            target_email=user.email,
            details={"provider": provider.value},
        )
        return user

    def _state_matches(
        self, record: Optional[dict], provider: OAuthProvider, binding: Optional[str]
    ) -> bool:
        if not record or not binding:
            return False
        if record.get("provider") != provider.value:
            return False
        if record["expires_at"] <= self._now():
            return False
        return hmac.compare_digest(record.get("binding_hash", ""), _binding_hash(binding))

    def _find_user(self, identity: OAuthIdentity) -> Tuple[Optional[User], bool]:
        """Return the local account for ``identity`` and whether it is already linked."""

        link = self.store.get_oauth_link(identity.provider, identity.provider_user_id)
        if link is not None:
            user = self.store.get_user(link.user_id)
            if user is None:
                raise OAuthError(OAuthError.ACCOUNT_UNAVAILABLE, "Account is unavailable")
            return user, True

        if not identity.email_verified:
            logger.warning(
                "oauth_email_unverified",
                provider=identity.provider.value,
                email=redact_email(identity.email),
            )
            raise OAuthError(
                OAuthError.EMAIL_NOT_VERIFIED, "Provider email address is not verified"
            )
        return self.store.get_user_by_email(identity.email), False

    @staticmethod
    def _check_can_sign_in(user: User, now: datetime) -> None:
        if user.is_deleted or user.account_status in (
            AccountStatus.DEACTIVATED,
            AccountStatus.SUSPENDED,
        ):
            raise OAuthError(OAuthError.ACCOUNT_UNAVAILABLE, "Account is unavailable")
        # A lock on an unverified account guards nobody; adoption clears it
        if user.email_verified and user.is_locked(now):
            raise OAuthError(OAuthError.ACCOUNT_LOCKED, "Account is temporarily locked")

    def _create_user(self, identity: OAuthIdentity) -> Tuple[User, bool]:
        now = self._now()
        try:
            user = self.store.create_user(
                User.new(
                    identity.email,
                    full_name=identity.name,
                    account_status=AccountStatus.ACTIVE,
                    subscription_tier=SubscriptionTier.TRIAL,
                    email_verified=True,
                    verified_at=now,
                    trial_expires_at=trial_expiry(now, self.settings.trial_period_days),
                )
            )
        except ConstraintViolation:
            # Lost a race with a concurrent sign-up for the same address
            existing = self.store.get_user_by_email(identity.email)
            if existing is None:
                raise OAuthError(OAuthError.ACCOUNT_UNAVAILABLE, "Account is unavailable")
            return existing, False
        logger.info("oauth_user_created", user_id=user.id, provider=identity.provider.value)
        self.audit.record(
            AuthEventType.REGISTRATION,
            success=True,
            user_id=user.id,
            target_email=user.email,
            details={"provider": identity.provider.value},
        )
        return user, True

    def _link(self, user: User, identity: OAuthIdentity) -> User:
        try:
            self.store.create_oauth_link(
                OAuthLink(
                    user_id=user.id,
                    provider=identity.provider,
                    provider_user_id=identity.provider_user_id,
                    provider_email=identity.email,
                    tokens=identity.tokens or None,
                )
            )
        except ConstraintViolation:
            link = self.store.get_oauth_link(identity.provider, identity.provider_user_id)
            if link is None or link.user_id != user.id:
                raise OAuthError(
                    OAuthError.AUTHENTICATION_FAILED, "Identity is linked to another account"
                )
            return user
        self.audit.record(
            AuthEventType.OAUTH_LINK,
            success=True,
            user_id=user.id,
            target_email=user.email,
            details={"provider": identity.provider.value},
        )
        return user

    def _adopt_verified_email(self, user: User, identity: OAuthIdentity) -> User:
        """Hand an unverified local account to the provider-verified owner.

        Nobody proved control of the address when the local account was
        registered, so its password, pending links and sessions are dropped
        before the provider's owner takes it over.
        """

        if user.email_verified and user.account_status != AccountStatus.PENDING:
            return user
        now = self._now()
        for purpose in (TokenPurpose.EMAIL_VERIFICATION, TokenPurpose.PASSWORD_RESET):
            self.store.supersede_tokens(user.id, purpose, now=now)
        changes: Dict = {
            "email_verified": True,
            "verified_at": now,
            "account_status": AccountStatus.ACTIVE,
            "password_hash": None,
            "full_name": identity.name or user.full_name,
            "failed_login_count": 0,
            "locked_until": None,
            "tokens_valid_after": truncate_to_millis(now),
        }
        if user.subscription_tier == SubscriptionTier.TRIAL and user.trial_expires_at is None:
            changes["trial_expires_at"] = trial_expiry(now, self.settings.trial_period_days)
        logger.warning(
            "oauth_unverified_account_claimed",
            user_id=user.id,
            provider=identity.provider.value,
            had_password=user.password_hash is not None,
        )
        return self.store.update_user(user.id, **changes)

    def unlink(
        self,
        user: User,
        provider_name: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        provider = parse_provider(provider_name)
        links = self.store.list_oauth_links(user.id)
        if not any(link.provider == provider for link in links):
            raise NotFoundError("Provider is not linked to this account")
        if not user.password_hash and len(links) <= 1:
            raise ConflictError(
                "Set a password before disconnecting your last sign-in method"
            )
        self.store.delete_oauth_link(user.id, provider)
        self.audit.record(
            AuthEventType.OAUTH_UNLINK,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"provider": provider.value},
        )
        logger.info("oauth_unlinked", user_id=user.id, provider=provider.value)
