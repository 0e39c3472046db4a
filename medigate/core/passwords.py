"""
Password policy and hashing.

Hashes are Argon2id with the cost parameters encoded in the hash string,
so stored hashes keep verifying after PASSWORD_KDF_PARAMS changes and can
be upgraded on the next successful login.
"""

import asyncio
import logging
import re

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from medigate.core.config import KdfParams

logger = logging.getLogger(__name__)


# =============================================================================
# Policy
# =============================================================================

class PasswordPolicy:
    """Minimum password policy applied at registration, change and reset."""

    MIN_LENGTH = 10
    MAX_LENGTH = 128

    BLOCKLIST = frozenset({
        "password123",
        "password1234",
        "passw0rd123",
        "1234567890",
        "12345678910",
        "qwerty12345",
        "qwertyuiop1",
        "letmein123",
        "welcome123",
        "welcome1234",
        "iloveyou123",
        "abc1234567",
        "abcdef12345",
        "admin12345",
        "changeme123",
        "trustno1234",
        "football123",
        "monkey12345",
        "doctor12345",
        "patient1234",
        "healthcare1",
    })

    @classmethod
    def validate(
        cls,
        password: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> tuple[bool, list[str]]:
        """
        Check a candidate password.

        Returns:
            (is_valid, list of violation messages)
        """
        violations = []

        if len(password) < cls.MIN_LENGTH:
            violations.append(f"Password must be at least {cls.MIN_LENGTH} characters")
        if len(password) > cls.MAX_LENGTH:
            violations.append(f"Password must be at most {cls.MAX_LENGTH} characters")
        if not re.search(r"[A-Za-z]", password):
            violations.append("Password must contain at least one letter")
        if not re.search(r"\d", password):
            violations.append("Password must contain at least one digit")

        lowered = password.strip().lower()
        if lowered in cls.BLOCKLIST:
            violations.append("Password is too common")
        if email and lowered == email.strip().lower():
            violations.append("Password must not match your email address")
        if phone and lowered == phone.strip().lower():
            violations.append("Password must not match your phone number")

        return len(violations) == 0, violations


# =============================================================================
# Hashing
# =============================================================================

class PasswordHasher:
    """
    Argon2id hashing that runs off the event loop.

    verify() with no stored hash still performs a full verification against
    a dummy hash, so unknown accounts cost the same as wrong passwords.
    """

    _DUMMY_SECRET = "medigate-timing-equalizer-0"

    def __init__(self, params: KdfParams):
        self.params = params
        self._hasher = Argon2Hasher(
            time_cost=params.time_cost,
            memory_cost=params.memory_cost,
            parallelism=params.parallelism,
            type=Type.ID,
        )
        self._dummy_hash: str | None = None

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    async def verify(self, stored_hash: str | None, password: str) -> bool:
        """Constant-effort check of a password against a stored hash."""
        target = stored_hash
        if not target:
            if self._dummy_hash is None:
                self._dummy_hash = await self.hash(self._DUMMY_SECRET)
            target = self._dummy_hash
        try:
            await asyncio.to_thread(self._hasher.verify, target, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("Stored password hash could not be verified")
            return False
        return bool(stored_hash)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
