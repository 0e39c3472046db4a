"""
Session and revocation state for Medigate.

Holds the refresh-token families, the access-token revocation list, the
per-subject "not before" instants and the single-use registry for medical
and reset token ids.

Refresh rotation is a compare-and-set on the presented token id: exactly
one caller can move a session from active to rotated. Everyone else sees
REPLAYED, which the credential flow turns into a family revocation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Records
# =============================================================================

@dataclass
class RefreshSession:
    """One refresh token id within a family."""
    token_id: str
    subject_id: str
    family: str
    issued_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    rotated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.rotated_at is None and self.revoked_at is None and now < self.expires_at


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    REPLAYED = "replayed"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RotationResult:
    outcome: RotationOutcome
    session: Optional[RefreshSession] = None


# =============================================================================
# Store Interface
# =============================================================================

class SessionStore(ABC):
    """Refresh families plus access-token and single-use revocation state."""

    # -- refresh families ----------------------------------------------------

    @abstractmethod
    async def start_family(
        self,
        subject_id: str,
        token_id: str,
        family: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshSession:
        """Open a new family, revoking every other active session of the subject."""
        pass

    @abstractmethod
    async def rotate(
        self,
        token_id: str,
        subject_id: str,
        new_token_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RotationResult:
        """Compare-and-set: retire token_id and add new_token_id to its family."""
        pass

    @abstractmethod
    async def get(self, token_id: str) -> Optional[RefreshSession]:
        pass

    @abstractmethod
    async def active_sessions(self, subject_id: str, now: datetime) -> list[RefreshSession]:
        pass

    @abstractmethod
    async def revoke_family(self, family: str, now: datetime) -> int:
        pass

    @abstractmethod
    async def revoke_subject(self, subject_id: str, now: datetime) -> int:
        pass

    @abstractmethod
    async def revoke_token(self, token_id: str, now: datetime) -> bool:
        pass

    # -- access tokens -------------------------------------------------------

    @abstractmethod
    async def revoke_access_token(self, token_id: str, expires_at: datetime) -> None:
        """Deny an access token id until it would have expired anyway."""
        pass

    @abstractmethod
    async def is_access_token_revoked(self, token_id: str, now: datetime) -> bool:
        pass

    @abstractmethod
    async def set_not_before(self, subject_id: str, instant: datetime) -> None:
        """Access tokens for subject_id issued before instant are revoked."""
        pass

    @abstractmethod
    async def not_before(self, subject_id: str) -> Optional[datetime]:
        pass

    # -- single-use ids ------------------------------------------------------

    @abstractmethod
    async def consume_once(self, token_id: str, expires_at: datetime, now: datetime) -> bool:
        """True the first time token_id is consumed, False on every later call."""
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# In-Memory Implementation
# =============================================================================

class MemorySessionStore(SessionStore):
    """
    In-process session store with one lock per subject.
    NOT suitable for multi-instance deployments.
    """

    def __init__(self):
        self._sessions: dict[str, RefreshSession] = {}
        self._revoked_access: dict[str, datetime] = {}
        self._not_before: dict[str, datetime] = {}
        self._consumed: dict[str, datetime] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._registry_lock = asyncio.Lock()

    async def start_family(
        self,
        subject_id: str,
        token_id: str,
        family: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshSession:
        async with self._locks[subject_id]:
            for session in self._sessions.values():
                if session.subject_id == subject_id and session.revoked_at is None and session.rotated_at is None:
                    session.revoked_at = issued_at
            session = RefreshSession(
                token_id=token_id,
                subject_id=subject_id,
                family=family,
                issued_at=issued_at,
                expires_at=expires_at,
                last_seen_at=issued_at,
            )
            self._sessions[token_id] = session
            return replace(session)

    async def rotate(
        self,
        token_id: str,
        subject_id: str,
        new_token_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RotationResult:
        async with self._locks[subject_id]:
            current = self._sessions.get(token_id)
            if current is None or current.subject_id != subject_id:
                return RotationResult(RotationOutcome.UNKNOWN)
            if current.rotated_at is not None:
                return RotationResult(RotationOutcome.REPLAYED, replace(current))
            if current.revoked_at is not None:
                return RotationResult(RotationOutcome.REVOKED, replace(current))

            current.rotated_at = issued_at
            current.last_seen_at = issued_at
            current.replaced_by = new_token_id
            successor = RefreshSession(
                token_id=new_token_id,
                subject_id=subject_id,
                family=current.family,
                issued_at=issued_at,
                expires_at=expires_at,
                last_seen_at=issued_at,
            )
            self._sessions[new_token_id] = successor
            return RotationResult(RotationOutcome.ROTATED, replace(successor))

    async def get(self, token_id: str) -> Optional[RefreshSession]:
        session = self._sessions.get(token_id)
        return replace(session) if session else None

    async def active_sessions(self, subject_id: str, now: datetime) -> list[RefreshSession]:
        return [
            replace(session)
            for session in self._sessions.values()
            if session.subject_id == subject_id and session.is_active(now)
        ]

    async def revoke_family(self, family: str, now: datetime) -> int:
        members = [session for session in self._sessions.values() if session.family == family]
        if not members:
            return 0
        async with self._locks[members[0].subject_id]:
            count = 0
            for session in members:
                if session.revoked_at is None:
                    session.revoked_at = now
                    count += 1
            return count

    async def revoke_subject(self, subject_id: str, now: datetime) -> int:
        async with self._locks[subject_id]:
            count = 0
            for session in self._sessions.values():
                if session.subject_id == subject_id and session.revoked_at is None:
                    session.revoked_at = now
                    count += 1
            return count

    async def revoke_token(self, token_id: str, now: datetime) -> bool:
        session = self._sessions.get(token_id)
        if session is None:
            return False
        async with self._locks[session.subject_id]:
            if session.revoked_at is not None:
                return False
            session.revoked_at = now
            return True

    async def revoke_access_token(self, token_id: str, expires_at: datetime) -> None:
        async with self._registry_lock:
            self._revoked_access[token_id] = expires_at

    async def is_access_token_revoked(self, token_id: str, now: datetime) -> bool:
        async with self._registry_lock:
            self._prune(self._revoked_access, now)
            return token_id in self._revoked_access

    async def set_not_before(self, subject_id: str, instant: datetime) -> None:
        async with self._registry_lock:
            current = self._not_before.get(subject_id)
            if current is None or instant > current:
                self._not_before[subject_id] = instant

    async def not_before(self, subject_id: str) -> Optional[datetime]:
        return self._not_before.get(subject_id)

    async def consume_once(self, token_id: str, expires_at: datetime, now: datetime) -> bool:
        async with self._registry_lock:
            self._prune(self._consumed, now)
            if token_id in self._consumed:
                return False
            self._consumed[token_id] = expires_at
            return True

    @staticmethod
    def _prune(entries: dict[str, datetime], now: datetime) -> None:
        expired = [key for key, until in entries.items() if until <= now]
        for key in expired:
            del entries[key]
