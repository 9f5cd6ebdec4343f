import json

import pytest

from webaudit.app.events import AuditEvent, AuditEventType, MemoryQueueEventEmitter

pytestmark = pytest.mark.anyio


def _event(event_type, **details):
    return AuditEvent(audit_id="audit-events", event_type=event_type, details=details or None)


async def test_stream_ends_at_first_terminal_event():
    emitter = MemoryQueueEventEmitter()

    await emitter.emit(_event(AuditEventType.AUDIT_STARTED))
    await emitter.emit(_event(AuditEventType.STAGE_STARTED, stage="preflight"))
    await emitter.emit(_event(AuditEventType.AUDIT_PAUSED))
    await emitter.emit(_event(AuditEventType.AUDIT_COMPLETED))

    streamed = [e.event_type async for e in emitter.stream()]

    assert streamed == [
        AuditEventType.AUDIT_STARTED,
        AuditEventType.STAGE_STARTED,
        AuditEventType.AUDIT_PAUSED,
    ]
    assert emitter.closed is True
    assert len(emitter.history) == 3


async def test_report_ready_does_not_end_stream():
    emitter = MemoryQueueEventEmitter()

    await emitter.emit(_event(AuditEventType.AUDIT_REPORT_READY))

    assert emitter.closed is False


def test_sse_frame_carries_type_and_json_body():
    event = _event(AuditEventType.STAGE_FAILED, stage="explore", error="boom")

    frame = event.to_sse_payload()

    lines = frame.rstrip("\n").split("\n")
    assert lines[0] == f"id: {event.event_id}"
    assert lines[1] == "event: stage_failed"
    body = json.loads(lines[2].removeprefix("data: "))
    assert body["details"] == {"stage": "explore", "error": "boom"}
    assert frame.endswith("\n\n")
