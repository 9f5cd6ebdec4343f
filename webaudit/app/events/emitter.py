from __future__ import annotations

from typing import Protocol

from webaudit.app.events.models import AuditEvent


class AuditEventEmitter(Protocol):
    """
    Sink for scheduler observations (run and stage transitions).

    The scheduler awaits `emit` inline between stages, so sinks should
    return quickly. A sink that raises is logged by the scheduler and the
    run carries on.
    """

    async def emit(self, event: AuditEvent) -> None:
        ...


class NullEventEmitter:
    """Discards every event. Default for CLI runs and direct scheduler use."""

    async def emit(self, event: AuditEvent) -> None:
        return None
