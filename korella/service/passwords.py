from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from korella.config import Settings
from korella.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class PasswordViolation(str, Enum):
    TOO_SHORT = "too_short"
    MISSING_UPPERCASE = "missing_uppercase"
    MISSING_LOWERCASE = "missing_lowercase"
    MISSING_DIGIT = "missing_digit"
    MISSING_SYMBOL = "missing_symbol"


_VIOLATION_MESSAGES = {
    PasswordViolation.TOO_SHORT: f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
    PasswordViolation.MISSING_UPPERCASE: "Password must contain at least one uppercase letter",
    PasswordViolation.MISSING_LOWERCASE: "Password must contain at least one lowercase letter",
    PasswordViolation.MISSING_DIGIT: "Password must contain at least one number",
    PasswordViolation.MISSING_SYMBOL: "Password must contain at least one special character",
}


@dataclass(frozen=True)
class StrengthReport:
    ok: bool
    violations: List[PasswordViolation] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        return [_VIOLATION_MESSAGES[v] for v in self.violations]


def validate_strength(password: str) -> StrengthReport:
    """Check the five independent strength predicates.

    Every failing predicate is reported so a UI can render a checklist.
    """

    violations: List[PasswordViolation] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        violations.append(PasswordViolation.TOO_SHORT)
    if not any(ch.isupper() for ch in password):
        violations.append(PasswordViolation.MISSING_UPPERCASE)
    if not any(ch.islower() for ch in password):
        violations.append(PasswordViolation.MISSING_LOWERCASE)
    if not any(ch.isdigit() for ch in password):
        violations.append(PasswordViolation.MISSING_DIGIT)
    if all(ch.isalnum() for ch in password):
        violations.append(PasswordViolation.MISSING_SYMBOL)
    return StrengthReport(ok=not violations, violations=violations)


class PasswordService:
    """argon2id hashing with a fixed configured cost.

    Digests are self-describing, so hashes created under an older cost still
    verify; ``needs_rehash`` reports when a stored digest should be upgraded.
    """

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # Verified against when the account is missing so login work stays uniform
        self._dummy_hash = self._hasher.hash("korella-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: Optional[str]) -> bool:
        """Verify ``password``; a missing digest still costs one argon2 verify."""

        target = digest or self._dummy_hash
        try:
            matched = self._hasher.verify(target, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False
        return matched and digest is not None

    def burn(self, password: str) -> None:
        """Spend one verification's worth of work without a real digest."""

        self.verify(password, None)

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True
