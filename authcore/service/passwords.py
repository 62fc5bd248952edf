from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SECURE_TOKEN_BYTES = 32

_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass
class StrengthResult:
    ok: bool
    violations: List[str] = field(default_factory=list)


def hash_token(token: str) -> str:
    """Digest a single-use token before it is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CredentialPolicy:
    """Password hashing, strength rules and opaque token generation."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password: str, stored_hash: Optional[str]) -> bool:
        """Return True when ``password`` matches; never raises on mismatch."""
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    @staticmethod
    def generate_secure_token() -> str:
        return secrets.token_hex(SECURE_TOKEN_BYTES)

    @staticmethod
    def validate_strength(password: str) -> StrengthResult:
        """Check every rule and report all violations together."""
        violations: List[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            violations.append(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            violations.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")
        if not re.search(r"[a-z]", password):
            violations.append("Password must contain at least one lowercase letter")
        if not re.search(r"[A-Z]", password):
            violations.append("Password must contain at least one uppercase letter")
        if not re.search(r"\d", password):
            violations.append("Password must contain at least one number")
        if not _SPECIAL_CHARACTERS.search(password):
            violations.append("Password must contain at least one special character")
        return StrengthResult(ok=not violations, violations=violations)
