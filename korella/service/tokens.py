from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from korella.config import Settings
from korella.logging import get_logger
from korella.service.errors import TokenError
from korella.storage.models import SubscriptionTier, User, utcnow

logger = get_logger(__name__)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def truncate_to_millis(moment: datetime) -> datetime:
    """Drop sub-millisecond precision so a value survives the token payload."""

    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


def _to_millis(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def _issued_at(payload: dict) -> datetime:
    if "iat_ms" in payload:
        return _EPOCH + timedelta(milliseconds=int(payload["iat_ms"]))
    return datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)


@dataclass(frozen=True)
class Claims:
    """Decoded session token.

    ``tier`` is a snapshot taken at issue time; authorization decisions read
    the stored user instead.
    """

    user_id: str
    email: str
    name: Optional[str]
    tier: SubscriptionTier
    issued_at: datetime
    expires_at: datetime
    extended: bool
    token_id: str


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: Claims


class TokenService:
    """HS256 signed session tokens.

    Lifetimes come only from settings. Validation is a pure function of the
    token, the secret and the current time.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._secret = settings.jwt_secret.encode()

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user: User, *, extended: bool = False) -> IssuedToken:
        now = self._now()
        days = (
            self.settings.extended_session_ttl_days
            if extended
            else self.settings.session_ttl_days
        )
        issued_at = truncate_to_millis(now)
        expires_at = issued_at.replace(microsecond=0) + timedelta(days=days)
        claims = Claims(
            user_id=user.id,
            email=user.email,
            name=user.full_name,
            tier=user.subscription_tier,
            issued_at=issued_at,
            expires_at=expires_at,
            extended=extended,
            token_id=str(uuid.uuid4()),
        )
        payload = {
            "sub": claims.user_id,
            "email": claims.email,
            "name": claims.name,
            "tier": claims.tier.value,
            "iat": int(issued_at.timestamp()),
            # Sub-second issue time, compared against credential-change cutoffs
            "iat_ms": _to_millis(issued_at),
            "exp": int(expires_at.timestamp()),
            "ext": extended,
            "jti": claims.token_id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return IssuedToken(token=f"{signing_input}.{self._sign(signing_input)}", claims=claims)

    def validate(self, token: Optional[str]) -> Claims:
        """Verify and decode ``token``.

        Raises:
            TokenError: with reason MISSING, MALFORMED, INVALID_SIGNATURE or
                EXPIRED. No claims are returned unless the signature matched.
        """

        if not token:
            raise TokenError(TokenError.MISSING, "Authentication required")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenError(TokenError.MALFORMED, "Invalid token format")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenError(TokenError.MALFORMED, "Invalid token format")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenError(TokenError.MALFORMED, "Invalid token format")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            logger.warning("jwt_signature_mismatch")
            raise TokenError(TokenError.INVALID_SIGNATURE, "Invalid token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenError(TokenError.MALFORMED, "Invalid token format")
        if not isinstance(payload, dict):
            raise TokenError(TokenError.MALFORMED, "Invalid token format")
        if payload.get("iss") != self.settings.jwt_issuer or not self._audience_ok(
            payload.get("aud")
        ):
            raise TokenError(TokenError.INVALID_SIGNATURE, "Invalid token")

        try:
            claims = self._claims_from_payload(payload)
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenError.MALFORMED, "Invalid token format")
        # Expiry is exclusive: a token expiring exactly now is already expired
        if claims.expires_at <= self._now():
            raise TokenError(TokenError.EXPIRED, "Session expired. Please login again")
        return claims

    def _audience_ok(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.settings.jwt_audience
        if isinstance(aud, list):
            return self.settings.jwt_audience in aud
        return False

    @staticmethod
    def _claims_from_payload(payload: dict) -> Claims:
        return Claims(
            user_id=str(payload["sub"]),
            email=str(payload["email"]),
            name=payload.get("name"),
            tier=SubscriptionTier(payload["tier"]),
            issued_at=_issued_at(payload),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            extended=bool(payload.get("ext", False)),
            token_id=str(payload["jti"]),
        )

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> str:
        """Pull the token out of an ``Authorization`` header value."""

        if not authorization:
            raise TokenError(TokenError.MISSING, "Authentication required")
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            raise TokenError(TokenError.INVALID_FORMAT, "Invalid token format")
        return value.strip()
