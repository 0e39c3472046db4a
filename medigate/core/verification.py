"""
E-mail and phone verification codes.

A code is six digits, lives 24 hours, is bound to (subject, channel) and
can be used once. Codes are stored as keyed hashes, never in clear.
Three wrong guesses inside a 15 minute window lock the code until that
window closes.
"""

import asyncio
import hashlib
import hmac
import logging
import math
import secrets
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from medigate.core.clock import Clock
from medigate.core.keys import KeyProvider

logger = logging.getLogger(__name__)

CODE_TTL = timedelta(hours=24)
ATTEMPT_WINDOW = timedelta(minutes=15)
MAX_ATTEMPTS = 3


class VerificationChannel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


@dataclass
class VerificationCode:
    """Pending code for one subject and channel."""
    subject_id: str
    channel: VerificationChannel
    code_hash: str
    expires_at: datetime
    created_at: datetime
    attempts: int = 0
    window_started_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    consumed_at: Optional[datetime] = None


class CheckOutcome(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    THROTTLED = "throttled"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CheckResult:
    outcome: CheckOutcome
    retry_after: Optional[int] = None
    attempts_remaining: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome is CheckOutcome.VERIFIED


# =============================================================================
# Store
# =============================================================================

class VerificationStore(ABC):
    """Keeps at most one code per (subject, channel)."""

    @abstractmethod
    async def get(self, subject_id: str, channel: VerificationChannel) -> Optional[VerificationCode]:
        pass

    @abstractmethod
    async def save(self, code: VerificationCode) -> None:
        """Insert or replace the code for (subject, channel)."""
        pass

    @abstractmethod
    async def consume(self, subject_id: str, channel: VerificationChannel, now: datetime) -> bool:
        """Mark the code consumed. False if it already was."""
        pass


class MemoryVerificationStore(VerificationStore):
    """In-process verification code store for development and tests."""

    def __init__(self):
        self._codes: dict[tuple[str, VerificationChannel], VerificationCode] = {}

    async def get(self, subject_id: str, channel: VerificationChannel) -> Optional[VerificationCode]:
        code = self._codes.get((subject_id, channel))
        return replace(code) if code else None

    async def save(self, code: VerificationCode) -> None:
        self._codes[(code.subject_id, code.channel)] = replace(code)

    async def consume(self, subject_id: str, channel: VerificationChannel, now: datetime) -> bool:
        code = self._codes.get((subject_id, channel))
        if code is None or code.consumed_at is not None:
            return False
        code.consumed_at = now
        return True


# =============================================================================
# Service
# =============================================================================

class VerificationService:
    """Issues and checks verification codes."""

    def __init__(self, store: VerificationStore, keys: KeyProvider, clock: Clock):
        self.store = store
        self._keys = keys
        self._clock = clock
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _hash(self, subject_id: str, channel: VerificationChannel, code: str) -> str:
        message = f"{subject_id}:{channel.value}:{code}".encode("utf-8")
        return hmac.new(self._keys.code_hash_key(), message, hashlib.sha256).hexdigest()

    async def issue(self, subject_id: str, channel: VerificationChannel) -> str:
        """
        Create a fresh code, replacing any pending one. Returns the plaintext code.

        Wrong attempts and any lock from the current window carry over to the
        new code.
        """
        code = f"{secrets.randbelow(10 ** 6):06d}"
        now = self._clock.now()
        async with self._locks[(subject_id, channel.value)]:
            fresh = VerificationCode(
                subject_id=subject_id,
                channel=channel,
                code_hash=self._hash(subject_id, channel, code),
                expires_at=now + CODE_TTL,
                created_at=now,
            )
            pending = await self.store.get(subject_id, channel)
            if pending and pending.window_started_at and now < pending.window_started_at + ATTEMPT_WINDOW:
                fresh.attempts = pending.attempts
                fresh.window_started_at = pending.window_started_at
                fresh.locked_until = pending.locked_until
            await self.store.save(fresh)
        logger.info("Issued %s verification code", channel.value)
        return code

    async def check(self, subject_id: str, channel: VerificationChannel, code: str) -> CheckResult:
        async with self._locks[(subject_id, channel.value)]:
            record = await self.store.get(subject_id, channel)
            if record is None:
                return CheckResult(CheckOutcome.NOT_FOUND)
            if record.consumed_at is not None:
                return CheckResult(CheckOutcome.CONSUMED)

            now = self._clock.now()
            if record.locked_until and now < record.locked_until:
                return CheckResult(CheckOutcome.THROTTLED, retry_after=_seconds_until(record.locked_until, now))

            if record.window_started_at and now >= record.window_started_at + ATTEMPT_WINDOW:
                record.attempts = 0
                record.window_started_at = None
                record.locked_until = None

            if now >= record.expires_at:
                return CheckResult(CheckOutcome.EXPIRED)

            if hmac.compare_digest(self._hash(subject_id, channel, code), record.code_hash):
                if not await self.store.consume(subject_id, channel, now):
                    return CheckResult(CheckOutcome.CONSUMED)
                return CheckResult(CheckOutcome.VERIFIED)

            record.attempts += 1
            if record.window_started_at is None:
                record.window_started_at = now
            if record.attempts >= MAX_ATTEMPTS:
                record.locked_until = record.window_started_at + ATTEMPT_WINDOW
                await self.store.save(record)
                logger.warning("Verification attempts exhausted for %s channel", channel.value)
                return CheckResult(CheckOutcome.THROTTLED, retry_after=_seconds_until(record.locked_until, now))

            await self.store.save(record)
            return CheckResult(CheckOutcome.MISMATCH, attempts_remaining=MAX_ATTEMPTS - record.attempts)


def _seconds_until(instant: datetime, now: datetime) -> int:
    return max(1, math.ceil((instant - now).total_seconds()))
