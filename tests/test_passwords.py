"""Tests for the password strength policy and argon2 hashing."""

import pytest

from korella.service.passwords import (
    PasswordService,
    PasswordViolation,
    validate_strength,
)


@pytest.fixture
def passwords(settings):
    return PasswordService(settings)


class TestStrengthPolicy:
    def test_strong_password_passes(self):
        report = validate_strength("Abcdef1!")
        assert report.ok
        assert report.violations == []
        assert report.messages == []

    def test_short_password_reports_only_length(self):
        report = validate_strength("Ab1!")
        assert not report.ok
        assert report.violations == [PasswordViolation.TOO_SHORT]

    def test_every_failing_predicate_is_reported(self):
        report = validate_strength("abc")
        assert set(report.violations) == {
            PasswordViolation.TOO_SHORT,
            PasswordViolation.MISSING_UPPERCASE,
            PasswordViolation.MISSING_DIGIT,
            PasswordViolation.MISSING_SYMBOL,
        }
        assert len(report.messages) == 4

    def test_empty_password_fails_all_rules(self):
        report = validate_strength("")
        assert len(report.violations) == 5

    @pytest.mark.parametrize(
        "password,missing",
        [
            ("abcdefg1!", PasswordViolation.MISSING_UPPERCASE),
            ("ABCDEFG1!", PasswordViolation.MISSING_LOWERCASE),
            ("Abcdefgh!", PasswordViolation.MISSING_DIGIT),
            ("Abcdefgh1", PasswordViolation.MISSING_SYMBOL),
        ],
    )
    def test_single_missing_class(self, password, missing):
        report = validate_strength(password)
        assert report.violations == [missing]

    def test_space_counts_as_symbol(self):
        assert validate_strength("Abcdef 1").ok


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, passwords):
        first = passwords.hash("Abcdef1!")
        second = passwords.hash("Abcdef1!")
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_accepts_correct_password(self, passwords):
        digest = passwords.hash("Abcdef1!")
        assert passwords.verify("Abcdef1!", digest)

    def test_verify_rejects_wrong_password(self, passwords):
        digest = passwords.hash("Abcdef1!")
        assert not passwords.verify("Abcdef1?", digest)

    def test_missing_digest_never_verifies(self, passwords):
        assert not passwords.verify("korella-dummy-password", None)

    def test_unreadable_digest_is_rejected(self, passwords):
        assert not passwords.verify("Abcdef1!", "not-a-hash")

    def test_needs_rehash_after_cost_change(self, passwords, settings_factory):
        digest = passwords.hash("Abcdef1!")
        assert not passwords.needs_rehash(digest)
        stronger = PasswordService(settings_factory(password_hash_time_cost=2))
        assert stronger.needs_rehash(digest)
        # Old digests still verify under the new cost
        assert stronger.verify("Abcdef1!", digest)
