from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class AuditEventType(str, Enum):
    """
    Transitions the scheduler reports while driving a run.

    Values are part of the SSE wire format (`event:` line), so renaming
    one breaks existing stream consumers.
    """

    # Run
    AUDIT_STARTED = "audit_started"
    AUDIT_RESUMED = "audit_resumed"
    AUDIT_COMPLETED = "audit_completed"
    AUDIT_FAILED = "audit_failed"
    AUDIT_STOPPED = "audit_stopped"
    AUDIT_PAUSED = "audit_paused"

    # Stage
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"

    # Emitted once report.json is on disk; the run may still be finishing.
    AUDIT_REPORT_READY = "audit_report_ready"


# A run emits exactly one of these, and nothing after it.
TERMINAL_EVENT_TYPES = frozenset(
    {
        AuditEventType.AUDIT_COMPLETED,
        AuditEventType.AUDIT_FAILED,
        AuditEventType.AUDIT_STOPPED,
        AuditEventType.AUDIT_PAUSED,
    }
)


class AuditEvent(BaseModel):
    """
    One scheduler transition for one audit.

    `details` carries whatever the transition needs to be understood on
    its own: the stage name, finding counts, the failure message or the
    skip reason.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: UUID = Field(default_factory=uuid4)
    audit_id: str
    event_type: AuditEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    def to_sse_payload(self) -> str:
        """Render as one Server-Sent Events frame."""
        body = json.dumps(self.model_dump(mode="json"), ensure_ascii=False)
        return f"id: {self.event_id}\nevent: {self.event_type.value}\ndata: {body}\n\n"
