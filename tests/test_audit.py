"""
Medigate - Audit Log Tests
Masking, severity defaults, buffering and the fail-closed threshold.
"""

import json

import httpx
import pytest

from medigate.core.audit import (
    AuditEvent,
    AuditEventType,
    AuditLog,
    AuditSinkError,
    FileAuditSink,
    MemoryAuditSink,
    Outcome,
    RetentionClass,
    Severity,
    WebhookAuditSink,
    invalid_token_severity,
)
from medigate.core.errors import AuditUnavailableError

from conftest import START, ManualClock


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_sink():
    return MemoryAuditSink()


@pytest.fixture
def audit(memory_sink, clock):
    return AuditLog(memory_sink, clock, buffer_size=2, outage_seconds=30)


# =============================================================================
# Events
# =============================================================================

def test_create_masks_ids_and_redacts_details():
    event = AuditEvent.create(
        AuditEventType.LOGIN_FAILED,
        timestamp=START,
        outcome=Outcome.DENIED,
        subject_id="patient-0042",
        target_id="P2",
        user_agent="curl/8.0 (jane@x.io)",
        details={"password": "hunter2", "note": "called from 555-010-0001", "attempt": 2},
    )
    assert event.subject_id_masked == "***0042"
    assert event.target_id_masked == "***P2"
    assert event.user_agent == "curl/8.0 ([REDACTED_EMAIL])"
    assert event.details == {"password": "[REDACTED]", "note": "called from [REDACTED_PHONE]", "attempt": 2}
    assert event.severity is Severity.MEDIUM
    assert event.retention is RetentionClass.AUDIT


def test_missing_subject_is_unknown():
    event = AuditEvent.create(AuditEventType.UNAUTHENTICATED_ATTEMPT, timestamp=START)
    assert event.subject_id_masked == "unknown"
    assert event.target_id_masked is None


def test_severity_defaults_and_override():
    replay = AuditEvent.create(AuditEventType.REFRESH_REPLAY, timestamp=START)
    assert replay.severity is Severity.HIGH
    forged = AuditEvent.create(
        AuditEventType.INVALID_TOKEN, timestamp=START, severity=invalid_token_severity("BadSignature")
    )
    assert forged.severity is Severity.HIGH
    assert invalid_token_severity("Expired") is Severity.LOW
    assert invalid_token_severity("Revoked") is Severity.MEDIUM


def test_protected_events():
    assert AuditEvent.create(AuditEventType.LOGIN_SUCCESS, timestamp=START).protected
    assert not AuditEvent.create(AuditEventType.TOKEN_REFRESHED, timestamp=START).protected
    assert AuditEvent.create(AuditEventType.TOKEN_REFRESHED, timestamp=START, severity=Severity.EMERGENCY).protected


def test_to_dict_uses_wire_names():
    event = AuditEvent.create(AuditEventType.LOGOUT, timestamp=START, subject_id="A", request_id="req-1")
    body = event.to_dict()
    assert body["eventType"] == "LOGOUT"
    assert body["subjectIdMasked"] == "***A"
    assert body["retentionClass"] == "audit"
    assert body["timestamp"] == START.isoformat()
    assert json.loads(event.to_json())["requestId"] == "req-1"


# =============================================================================
# Delivery
# =============================================================================

@pytest.mark.anyio
async def test_record_writes_through(audit, memory_sink):
    await audit.record(AuditEventType.LOGIN_SUCCESS, subject_id="A")
    assert [event.event_type for event in memory_sink.events] == [AuditEventType.LOGIN_SUCCESS]
    assert audit.status()["available"] is True


@pytest.mark.anyio
async def test_submit_is_flushed(audit, memory_sink):
    audit.record_later(AuditEventType.AUTHENTICATION_SUCCESS, subject_id="A")
    assert audit.recent(10)[-1].event_type is AuditEventType.AUTHENTICATION_SUCCESS
    await audit.close()
    assert memory_sink.of_type(AuditEventType.AUTHENTICATION_SUCCESS)


@pytest.mark.anyio
async def test_outage_fails_open_below_threshold(audit, memory_sink, clock):
    memory_sink.fail = True
    await audit.record(AuditEventType.LOGIN_FAILED, subject_id="A")
    await audit.record(AuditEventType.REFRESH_REPLAY, subject_id="A")

    status = audit.status()
    assert status["available"] is False
    assert status["unavailableSince"] == START.isoformat()
    assert status["localErrorCount"] == 2
    assert status["buffered"] == 2


@pytest.mark.anyio
async def test_outage_past_threshold_fails_closed_for_high_events(audit, memory_sink, clock):
    memory_sink.fail = True
    await audit.record(AuditEventType.LOGIN_FAILED, subject_id="A")
    clock.advance(30)

    await audit.record(AuditEventType.LOGOUT, subject_id="A")
    with pytest.raises(AuditUnavailableError):
        await audit.record(AuditEventType.UNAUTHORIZED_PATIENT_ACCESS, subject_id="P1", target_id="P2")

    memory_sink.fail = False
    await audit.record(AuditEventType.REFRESH_REPLAY, subject_id="A")
    assert [event.event_type for event in memory_sink.events] == [
        AuditEventType.LOGIN_FAILED,
        AuditEventType.LOGOUT,
        AuditEventType.UNAUTHORIZED_PATIENT_ACCESS,
        AuditEventType.REFRESH_REPLAY,
    ]
    assert audit.available


@pytest.mark.anyio
async def test_buffer_drops_general_events_first_and_keeps_protected(audit, memory_sink):
    memory_sink.fail = True
    for _ in range(3):
        await audit.record(AuditEventType.TOKEN_REFRESHED, subject_id="A")
    await audit.record(AuditEventType.LOGIN_SUCCESS, subject_id="A")
    assert audit.status()["dropped"] == 2

    await audit.record(AuditEventType.LOGIN_FAILED, subject_id="A")
    await audit.record(AuditEventType.LOGIN_FAILED, subject_id="A")
    status = audit.status()
    assert status["dropped"] == 3
    assert status["buffered"] == 3

    memory_sink.fail = False
    assert await audit.flush() == 3
    assert [event.event_type for event in memory_sink.events] == [
        AuditEventType.LOGIN_SUCCESS,
        AuditEventType.LOGIN_FAILED,
        AuditEventType.LOGIN_FAILED,
    ]


@pytest.mark.anyio
async def test_recent_includes_undelivered_events(audit, memory_sink):
    memory_sink.fail = True
    await audit.record(AuditEventType.LOGIN_FAILED, subject_id="A")
    assert [event.event_type for event in audit.recent()] == [AuditEventType.LOGIN_FAILED]
    assert audit.recent(0) == []


# =============================================================================
# Sinks
# =============================================================================

@pytest.mark.anyio
async def test_file_sink_appends_json_lines(tmp_path, clock):
    audit = AuditLog(FileAuditSink(tmp_path / "audit", clock), clock)
    await audit.record(AuditEventType.LOGIN_SUCCESS, subject_id="A")
    await audit.record(AuditEventType.LOGOUT, subject_id="A")

    lines = (tmp_path / "audit" / "audit_2025-03-01.jsonl").read_text().splitlines()
    assert [json.loads(line)["eventType"] for line in lines] == ["LOGIN_SUCCESS", "LOGOUT"]
    assert json.loads(lines[0])["subjectIdMasked"] == "***A"


@pytest.mark.anyio
async def test_webhook_sink_posts_batches():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sink = WebhookAuditSink("https://audit.example/ingest", client=client)
    await sink.write([AuditEvent.create(AuditEventType.LOGOUT, timestamp=START, subject_id="A")])
    assert received[0]["events"][0]["eventType"] == "LOGOUT"
    await client.aclose()


@pytest.mark.anyio
async def test_webhook_sink_error_is_sink_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    sink = WebhookAuditSink("https://audit.example/ingest", client=client)
    with pytest.raises(AuditSinkError):
        await sink.write([AuditEvent.create(AuditEventType.LOGOUT, timestamp=START)])
    await client.aclose()
