"""
Clock and identifier services.

All TTL arithmetic goes through a Clock so tests can substitute a manual one.
"""

import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Source of the current instant (timezone-aware, UTC)."""

    @abstractmethod
    def now(self) -> datetime:
        pass

    def timestamp(self) -> float:
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def new_id() -> str:
    """Opaque, URL-safe identifier with 128 bits of entropy."""
    return secrets.token_urlsafe(16)


def whole_seconds(instant: datetime) -> datetime:
    """Drop sub-second precision; token claims carry integer timestamps."""
    return instant.replace(microsecond=0)


def from_timestamp(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def ensure_aware(instant: datetime | None) -> datetime | None:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if instant is not None and instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant
