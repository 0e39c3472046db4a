"""
Audit Logging for Medigate.

Append-only journal of authentication, access and account events.

Every event is built through AuditEvent.create(), which masks subject and
target ids and redacts the details map, so nothing unmasked can reach a
sink. Events are delivered two ways:

    await audit.write(event)   # durable: returns once the sink has it
    audit.submit(event)        # buffered: never blocks the request

When the sink fails, events fall back to the buffer and the outage clock
starts. Once the outage is older than the configured threshold, high and
emergency events fail closed (AuditUnavailableError, HTTP 503); everything
else fails open and bumps local_error_count.

Usage:
    from medigate.core.audit import AuditEventType, Outcome

    await services.audit.record(
        AuditEventType.LOGIN_FAILED,
        outcome=Outcome.DENIED,
        subject_id=identifier,
        details={"reason": "bad credentials"},
    )
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import httpx

from medigate.core.clock import Clock, new_id
from medigate.core.errors import AuditUnavailableError
from medigate.core.redaction import mask_id, redact, redact_details

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("medigate.audit")


# =============================================================================
# Vocabulary
# =============================================================================

class AuditEventType(str, Enum):
    """Stable event type strings."""

    # Account lifecycle
    USER_REGISTERED = "USER_REGISTERED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PHONE_VERIFIED = "PHONE_VERIFIED"
    VERIFICATION_REQUESTED = "VERIFICATION_REQUESTED"
    VERIFICATION_THROTTLED = "VERIFICATION_THROTTLED"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"

    # Credentials
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_THROTTLED = "LOGIN_THROTTLED"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    REFRESH_REPLAY = "REFRESH_REPLAY"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    REAUTHENTICATION_FAILED = "REAUTHENTICATION_FAILED"
    SESSIONS_REVOKED = "SESSIONS_REVOKED"

    # Pipeline
    AUTHENTICATION_SUCCESS = "AUTHENTICATION_SUCCESS"
    UNAUTHENTICATED_ATTEMPT = "UNAUTHENTICATED_ATTEMPT"
    INVALID_TOKEN = "INVALID_TOKEN"
    INACTIVE_OR_MISSING_SUBJECT = "INACTIVE_OR_MISSING_SUBJECT"
    UNAUTHORIZED_ROLE = "UNAUTHORIZED_ROLE"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    UNAUTHORIZED_PATIENT_ACCESS = "UNAUTHORIZED_PATIENT_ACCESS"
    UNVERIFIED_ACCOUNT = "UNVERIFIED_ACCOUNT"
    HEALTHCARE_PROVIDER_ACCESS = "HEALTHCARE_PROVIDER_ACCESS"
    ADMIN_ACCESS = "ADMIN_ACCESS"
    MEDICAL_RECORD_TOKEN_ACCESS = "MEDICAL_RECORD_TOKEN_ACCESS"
    MEDICAL_SCOPE_DENIED = "MEDICAL_SCOPE_DENIED"
    RATE_LIMITED = "RATE_LIMITED"

    # Degradation
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class Outcome(str, Enum):
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


class RetentionClass(str, Enum):
    """Advisory retention for the persistence layer."""
    ERROR = "error"
    AUDIT = "audit"
    GENERAL = "general"

    @property
    def days(self) -> int:
        return RETENTION_DAYS[self]


RETENTION_DAYS = {
    RetentionClass.ERROR: 90,
    RetentionClass.AUDIT: 7 * 365,
    RetentionClass.GENERAL: 30,
}

_E = AuditEventType
_L, _M, _H = Severity.LOW, Severity.MEDIUM, Severity.HIGH
_ERR, _AUD, _GEN = RetentionClass.ERROR, RetentionClass.AUDIT, RetentionClass.GENERAL

EVENT_DEFAULTS: dict[AuditEventType, tuple[Severity, RetentionClass]] = {
    _E.USER_REGISTERED: (_L, _AUD),
    _E.EMAIL_VERIFIED: (_L, _AUD),
    _E.PHONE_VERIFIED: (_L, _AUD),
    _E.VERIFICATION_REQUESTED: (_L, _GEN),
    _E.VERIFICATION_THROTTLED: (_M, _AUD),
    _E.ACCOUNT_DEACTIVATED: (_M, _AUD),
    _E.LOGIN_SUCCESS: (_L, _AUD),
    _E.LOGIN_FAILED: (_M, _AUD),
    _E.LOGIN_THROTTLED: (_M, _AUD),
    _E.LOGOUT: (_L, _AUD),
    _E.TOKEN_REFRESHED: (_L, _GEN),
    _E.REFRESH_REPLAY: (_H, _AUD),
    _E.PASSWORD_CHANGED: (_M, _AUD),
    _E.PASSWORD_RESET_REQUESTED: (_M, _AUD),
    _E.PASSWORD_RESET_COMPLETED: (_M, _AUD),
    _E.REAUTHENTICATION_FAILED: (_M, _AUD),
    _E.SESSIONS_REVOKED: (_M, _AUD),
    _E.AUTHENTICATION_SUCCESS: (_L, _GEN),
    _E.UNAUTHENTICATED_ATTEMPT: (_L, _ERR),
    _E.INVALID_TOKEN: (_M, _ERR),
    _E.INACTIVE_OR_MISSING_SUBJECT: (_M, _ERR),
    _E.UNAUTHORIZED_ROLE: (_M, _AUD),
    _E.INSUFFICIENT_PERMISSIONS: (_M, _AUD),
    _E.UNAUTHORIZED_PATIENT_ACCESS: (_H, _AUD),
    _E.UNVERIFIED_ACCOUNT: (_L, _ERR),
    _E.HEALTHCARE_PROVIDER_ACCESS: (_L, _AUD),
    _E.ADMIN_ACCESS: (_M, _AUD),
    _E.MEDICAL_RECORD_TOKEN_ACCESS: (_M, _AUD),
    _E.MEDICAL_SCOPE_DENIED: (_H, _AUD),
    _E.RATE_LIMITED: (_L, _ERR),
    _E.UPSTREAM_TIMEOUT: (_M, _ERR),
}


def invalid_token_severity(variant: str) -> Severity:
    """Forgeries are high, stale tokens low, everything else medium."""
    if variant in ("BadSignature", "WrongVariant"):
        return Severity.HIGH
    if variant == "Expired":
        return Severity.LOW
    return Severity.MEDIUM


# =============================================================================
# Event
# =============================================================================

@dataclass(frozen=True)
class AuditEvent:
    """
    One immutable audit record.

    Build with AuditEvent.create(); the constructor does not mask or redact.
    """
    event_id: str
    timestamp: datetime
    event_type: AuditEventType
    severity: Severity
    outcome: Outcome
    retention: RetentionClass
    subject_id_masked: str
    target_id_masked: Optional[str] = None
    remote_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: AuditEventType,
        *,
        timestamp: datetime,
        outcome: Outcome = Outcome.SUCCESS,
        subject_id: Optional[str] = None,
        target_id: Optional[str] = None,
        remote_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        severity: Optional[Severity] = None,
    ) -> "AuditEvent":
        default_severity, retention = EVENT_DEFAULTS[event_type]
        return cls(
            event_id=new_id(),
            timestamp=timestamp,
            event_type=event_type,
            severity=severity or default_severity,
            outcome=outcome,
            retention=retention,
            subject_id_masked=mask_id(subject_id),
            target_id_masked=mask_id(target_id) if target_id else None,
            remote_address=remote_address,
            user_agent=redact(user_agent) if user_agent else None,
            request_id=request_id,
            details=redact_details(details, audit=True),
        )

    @property
    def protected(self) -> bool:
        """Never dropped on buffer overflow."""
        return self.retention is RetentionClass.AUDIT or self.severity is Severity.EMERGENCY

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "eventType": self.event_type.value,
            "severity": self.severity.value,
            "outcome": self.outcome.value,
            "retentionClass": self.retention.value,
            "subjectIdMasked": self.subject_id_masked,
            "targetIdMasked": self.target_id_masked,
            "remoteAddress": self.remote_address,
            "userAgent": self.user_agent,
            "requestId": self.request_id,
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Sinks
# =============================================================================

class AuditSinkError(Exception):
    """The sink could not accept events."""


class AuditSink(ABC):
    """Destination for audit events. write() raises AuditSinkError on failure."""

    name = "sink"

    @abstractmethod
    async def write(self, events: Sequence[AuditEvent]) -> None:
        pass

    async def close(self) -> None:
        pass


class MemoryAuditSink(AuditSink):
    """Keeps events in a list. Set fail=True to simulate an outage."""

    name = "memory"

    def __init__(self):
        self.events: list[AuditEvent] = []
        self.fail = False

    async def write(self, events: Sequence[AuditEvent]) -> None:
        if self.fail:
            raise AuditSinkError("memory sink marked unavailable")
        self.events.extend(events)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [event for event in self.events if event.event_type is event_type]


class LoggingAuditSink(AuditSink):
    """Writes one JSON line per event to the medigate.audit.trail logger."""

    name = "log"

    def __init__(self, logger_name: str = "medigate.audit.trail"):
        self._logger = logging.getLogger(logger_name)

    async def write(self, events: Sequence[AuditEvent]) -> None:
        for event in events:
            self._logger.info(event.to_json())


class FileAuditSink(AuditSink):
    """JSON lines file, rotated daily: <directory>/audit_YYYY-MM-DD.jsonl."""

    name = "file"

    def __init__(self, directory: str | Path, clock: Clock):
        self._log_dir = Path(directory)
        self._clock = clock

    def _get_log_file(self) -> Path:
        date_str = self._clock.now().strftime("%Y-%m-%d")
        return self._log_dir / f"audit_{date_str}.jsonl"

    def _append(self, lines: list[str]) -> None:
        self._log_dir.mkdir(parents=True, exist_ok=True)
        with open(self._get_log_file(), "a", encoding="utf-8") as f:
            f.write("".join(lines))

    async def write(self, events: Sequence[AuditEvent]) -> None:
        lines = [event.to_json() + "\n" for event in events]
        try:
            await asyncio.to_thread(self._append, lines)
        except OSError as e:
            raise AuditSinkError(f"audit file write failed: {e}") from e


class WebhookAuditSink(AuditSink):
    """POSTs batches of events to an external collector."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 2.0, client: Optional[httpx.AsyncClient] = None):
        self._webhook_url = url
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def write(self, events: Sequence[AuditEvent]) -> None:
        try:
            client = await self._get_client()
            response = await client.post(
                self._webhook_url,
                json={"events": [event.to_dict() for event in events]},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise AuditSinkError(f"audit webhook failed: {type(e).__name__}") from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Audit Log
# =============================================================================

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.EMERGENCY: logging.ERROR,
}


class AuditLog:
    """
    Buffered, ordered front for an AuditSink.

    The buffer is bounded by buffer_size. On overflow general events go
    first, then error-class events; audit-class and emergency events are
    kept even past the bound.
    """

    RECENT_LIMIT = 1000

    def __init__(
        self,
        sink: AuditSink,
        clock: Clock,
        *,
        buffer_size: int = 1000,
        outage_seconds: float = 30.0,
        timeout_seconds: float = 2.0,
    ):
        self.sink = sink
        self._clock = clock
        self._buffer_size = buffer_size
        self._outage_seconds = outage_seconds
        self._timeout = timeout_seconds
        self._buffer: deque[AuditEvent] = deque()
        self._recent: deque[AuditEvent] = deque(maxlen=self.RECENT_LIMIT)
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._unavailable_since: Optional[datetime] = None
        self.local_error_count = 0
        self.dropped_count = 0

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def event(self, event_type: AuditEventType, **fields: Any) -> AuditEvent:
        """Build an event stamped with the current time."""
        return AuditEvent.create(event_type, timestamp=self._clock.now(), **fields)

    async def record(self, event_type: AuditEventType, **fields: Any) -> AuditEvent:
        """Build and durably write an event."""
        event = self.event(event_type, **fields)
        await self.write(event)
        return event

    def record_later(self, event_type: AuditEventType, **fields: Any) -> AuditEvent:
        """Build and buffer an event."""
        event = self.event(event_type, **fields)
        self.submit(event)
        return event

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def write(self, event: AuditEvent) -> None:
        """
        Deliver the event (after anything already buffered) and return once
        the sink has accepted it.

        Raises AuditUnavailableError when the sink has been down past the
        threshold and the event is high or emergency severity.
        """
        self._accept(event)
        async with self._lock:
            batch = list(self._buffer)
            self._buffer.clear()
            batch.append(event)
            try:
                await self._deliver(batch)
            except AuditSinkError as e:
                self._requeue(batch)
                self._note_failure(e, len(batch))
                if self._fail_closed(event):
                    logger.error(
                        "Audit sink unavailable; refusing %s event %s",
                        event.severity.value,
                        event.event_type.value,
                    )
                    raise AuditUnavailableError() from e

    def submit(self, event: AuditEvent) -> None:
        """Buffer the event and schedule a background flush. Never blocks."""
        self._accept(event)
        self._buffer.append(event)
        self._trim()
        self._schedule_flush()

    async def flush(self) -> int:
        """Deliver buffered events. Returns how many were written."""
        async with self._lock:
            if not self._buffer:
                return 0
            batch = list(self._buffer)
            self._buffer.clear()
            try:
                await self._deliver(batch)
            except AuditSinkError as e:
                self._requeue(batch)
                self._note_failure(e, len(batch))
                return 0
            return len(batch)

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            await asyncio.gather(self._flush_task, return_exceptions=True)
        await self.flush()
        if self._buffer:
            logger.warning("Audit log closing with %d undelivered events", len(self._buffer))
        await self.sink.close()

    async def _deliver(self, batch: list[AuditEvent]) -> None:
        try:
            await asyncio.wait_for(self.sink.write(batch), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise AuditSinkError("audit sink timed out") from e
        if self._unavailable_since is not None:
            logger.info("Audit sink %s recovered", self.sink.name)
        self._unavailable_since = None

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_task = loop.create_task(self.flush())

    # -------------------------------------------------------------------------
    # Buffer & outage bookkeeping
    # -------------------------------------------------------------------------

    def _accept(self, event: AuditEvent) -> None:
        self._recent.append(event)
        audit_logger.log(
            _LOG_LEVELS[event.severity],
            "AUDIT: %s | outcome=%s | subject=%s | target=%s",
            event.event_type.value,
            event.outcome.value,
            event.subject_id_masked,
            event.target_id_masked or "-",
            extra={"request_id": event.request_id, "audit_event_id": event.event_id},
        )

    def _requeue(self, batch: list[AuditEvent]) -> None:
        self._buffer.extendleft(reversed(batch))
        self._trim()

    def _trim(self) -> None:
        while len(self._buffer) > self._buffer_size:
            victim = self._pick_victim()
            if victim is None:
                logger.warning("Audit buffer holds %d protected events past its bound", len(self._buffer))
                return
            self._buffer.remove(victim)
            self.dropped_count += 1
            logger.warning("Dropped buffered audit event %s", victim.event_type.value)

    def _pick_victim(self) -> Optional[AuditEvent]:
        for event in self._buffer:
            if event.retention is RetentionClass.GENERAL and event.severity is not Severity.EMERGENCY:
                return event
        for event in self._buffer:
            if not event.protected:
                return event
        return None

    def _note_failure(self, error: Exception, count: int) -> None:
        now = self._clock.now()
        if self._unavailable_since is None:
            self._unavailable_since = now
        self.local_error_count += 1
        logger.error(
            "Audit sink %s write failed for %d events: %s",
            self.sink.name,
            count,
            error,
        )

    def _fail_closed(self, event: AuditEvent) -> bool:
        if self._unavailable_since is None:
            return False
        if event.severity not in (Severity.HIGH, Severity.EMERGENCY):
            return False
        outage = (self._clock.now() - self._unavailable_since).total_seconds()
        return outage >= self._outage_seconds

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def recent(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent accepted events, oldest first."""
        limit = max(0, min(limit, self.RECENT_LIMIT))
        if limit == 0:
            return []
        return list(self._recent)[-limit:]

    @property
    def available(self) -> bool:
        return self._unavailable_since is None

    def status(self) -> dict[str, Any]:
        return {
            "sink": self.sink.name,
            "available": self.available,
            "unavailableSince": self._unavailable_since.isoformat() if self._unavailable_since else None,
            "buffered": len(self._buffer),
            "localErrorCount": self.local_error_count,
            "dropped": self.dropped_count,
        }
