from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from korella.config import Settings
from korella.logging import get_logger
from korella.service.errors import InvalidTokenError
from korella.storage.common import AuthStore, hash_token
from korella.storage.models import SingleUseToken, TokenPurpose, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Redemption:
    user: User
    token: SingleUseToken


class TokenManager:
    """Issues and redeems single-use email verification and reset tokens.

    The raw value only ever travels in the emailed link; the store keeps its
    SHA-256 digest. Issuing a token retires any unused token of the same
    purpose for that user, and redemption is one atomic check-and-mark.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose == TokenPurpose.PASSWORD_RESET:
            return timedelta(hours=self.settings.password_reset_ttl_hours)
        return timedelta(hours=self.settings.email_verification_ttl_hours)

    def _issue(
        self,
        user: User,
        purpose: TokenPurpose,
        *,
        email: Optional[str] = None,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        now = self._now()
        superseded = self.store.supersede_tokens(user.id, purpose, now=now)
        raw = secrets.token_hex(32)
        self.store.save_token(
            SingleUseToken(
                token_hash=hash_token(raw),
                user_id=user.id,
                purpose=purpose,
                expires_at=now + self._ttl(purpose),
                email=email,
                request_ip=request_ip,
                user_agent=user_agent,
                created_at=now,
            )
        )
        logger.info(
            "single_use_token_issued",
            user_id=user.id,
            purpose=purpose.value,
            superseded=superseded,
        )
        return raw

    def issue_verification_token(
        self,
        user: User,
        *,
        email: Optional[str] = None,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Issue a verification link for ``email`` (defaults to the current one).

        Passing a different address lets a pending email change be confirmed.
        """

        return self._issue(
            user,
            TokenPurpose.EMAIL_VERIFICATION,
            email=email or user.email,
            request_ip=request_ip,
            user_agent=user_agent,
        )

    def issue_reset_token(
        self,
        user: User,
        *,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        return self._issue(
            user,
            TokenPurpose.PASSWORD_RESET,
            email=user.email,
            request_ip=request_ip,
            user_agent=user_agent,
        )

    def consume(self, raw_token: Optional[str], purpose: TokenPurpose) -> Redemption:
        if not raw_token:
            raise InvalidTokenError("Invalid or expired token")
        token = self.store.consume_token(hash_token(raw_token), purpose, now=self._now())
        if token is None:
            logger.warning("single_use_token_rejected", purpose=purpose.value)
            raise InvalidTokenError("Invalid or expired token")
        user = self.store.get_user(token.user_id)
        if user is None or user.is_deleted:
            logger.warning(
                "single_use_token_orphaned", purpose=purpose.value, user_id=token.user_id
            )
            raise InvalidTokenError("Invalid or expired token")
        return Redemption(user=user, token=token)

    def revoke_outstanding(self, user_id: str, purpose: TokenPurpose) -> int:
        return self.store.supersede_tokens(user_id, purpose, now=self._now())
