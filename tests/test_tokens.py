"""Tests for session token issue and validation."""

import base64
import json
from datetime import timedelta

import pytest

from korella.service.errors import TokenError
from korella.service.tokens import TokenService
from korella.storage.models import SubscriptionTier, User


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def user():
    return User.new("agent@example.com", full_name="Agent", subscription_tier=SubscriptionTier.PRO)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_default_lifetime_is_three_days(self, tokens, user, clock):
        issued = tokens.issue(user)
        assert issued.claims.expires_at - issued.claims.issued_at == timedelta(days=3)
        assert issued.claims.extended is False
        assert issued.claims.issued_at == clock()

    def test_issue_time_keeps_milliseconds(self, tokens, user, clock):
        clock.advance(microseconds=123456)
        issued = tokens.issue(user)
        assert issued.claims.issued_at.microsecond == 123000
        assert tokens.validate(issued.token).issued_at == issued.claims.issued_at

    def test_extended_lifetime_is_thirty_days(self, tokens, user):
        issued = tokens.issue(user, extended=True)
        assert issued.claims.expires_at - issued.claims.issued_at == timedelta(days=30)
        assert issued.claims.extended is True

    def test_claims_round_trip(self, tokens, user):
        issued = tokens.issue(user)
        claims = tokens.validate(issued.token)
        assert claims == issued.claims
        assert claims.tier == SubscriptionTier.PRO
        assert claims.email == "agent@example.com"

    def test_each_token_gets_a_distinct_id(self, tokens, user):
        assert tokens.issue(user).claims.token_id != tokens.issue(user).claims.token_id


class TestValidate:
    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, tokens, token):
        with pytest.raises(TokenError) as exc:
            tokens.validate(token)
        assert exc.value.error_code == TokenError.MISSING

    @pytest.mark.parametrize("token", ["abc", "a.b", "a..c", "!!!.@@@.###"])
    def test_malformed_token(self, tokens, token):
        with pytest.raises(TokenError) as exc:
            tokens.validate(token)
        assert exc.value.error_code == TokenError.MALFORMED

    def test_tampered_payload_fails_signature(self, tokens, user):
        header, payload, signature = tokens.issue(user).token.split(".")
        decoded = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        decoded["tier"] = "enterprise"
        forged = f"{header}.{_segment(decoded)}.{signature}"
        with pytest.raises(TokenError) as exc:
            tokens.validate(forged)
        assert exc.value.error_code == TokenError.INVALID_SIGNATURE

    def test_other_secret_fails_signature(self, tokens, user, clock, settings_factory):
        other = TokenService(
            settings_factory(jwt_secret="another-secret-value-that-is-long-enough"), clock=clock
        )
        token = other.issue(user).token
        with pytest.raises(TokenError) as exc:
            tokens.validate(token)
        assert exc.value.error_code == TokenError.INVALID_SIGNATURE

    def test_unsigned_algorithm_is_rejected(self, tokens, user):
        _, payload, signature = tokens.issue(user).token.split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenError) as exc:
            tokens.validate(f"{header}.{payload}.{signature}")
        assert exc.value.error_code == TokenError.MALFORMED

    def test_wrong_audience_is_rejected(self, tokens, user, clock, settings_factory):
        issuer = TokenService(settings_factory(jwt_audience="someone-else"), clock=clock)
        token = issuer.issue(user).token
        with pytest.raises(TokenError) as exc:
            tokens.validate(token)
        assert exc.value.error_code == TokenError.INVALID_SIGNATURE

    def test_expired_token(self, tokens, user, clock):
        token = tokens.issue(user).token
        clock.advance(days=3, seconds=1)
        with pytest.raises(TokenError) as exc:
            tokens.validate(token)
        assert exc.value.error_code == TokenError.EXPIRED
        assert exc.value.message == "Session expired. Please login again"

    def test_expiry_instant_is_exclusive(self, tokens, user, clock):
        issued = tokens.issue(user)
        clock.now = issued.claims.expires_at
        with pytest.raises(TokenError):
            tokens.validate(issued.token)

    def test_valid_one_second_before_expiry(self, tokens, user, clock):
        issued = tokens.issue(user)
        clock.now = issued.claims.expires_at - timedelta(seconds=1)
        assert tokens.validate(issued.token).user_id == user.id


class TestExtractBearer:
    def test_bearer_header(self):
        assert TokenService.extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert TokenService.extract_bearer("bearer abc") == "abc"

    def test_missing_header(self):
        with pytest.raises(TokenError) as exc:
            TokenService.extract_bearer(None)
        assert exc.value.error_code == TokenError.MISSING

    @pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Token abc"])
    def test_wrong_scheme(self, header):
        with pytest.raises(TokenError) as exc:
            TokenService.extract_bearer(header)
        assert exc.value.error_code == TokenError.INVALID_FORMAT
