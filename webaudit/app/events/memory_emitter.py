from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from webaudit.app.events.models import AuditEvent

logger = logging.getLogger(__name__)

# Sentinel pushed onto the queue once the run has reached a terminal event.
_END_OF_RUN = None


class MemoryQueueEventEmitter:
    """
    Buffers the events of one in-process run for a single SSE reader.

    Events are appended to `history` as well as queued, so the API can
    report what happened even after the stream has been consumed. The
    first terminal event (completed, failed, stopped or paused) ends the
    stream; anything emitted afterwards is ignored.
    """

    def __init__(self) -> None:
        self._pending: asyncio.Queue[Optional[AuditEvent]] = asyncio.Queue()
        self._finished = False
        self.history: List[AuditEvent] = []

    @property
    def closed(self) -> bool:
        return self._finished

    async def emit(self, event: AuditEvent) -> None:
        if self._finished:
            logger.debug(
                "Run %s already finished; ignoring %s",
                event.audit_id,
                event.event_type.value,
            )
            return

        self.history.append(event)
        self._pending.put_nowait(event)

        if event.is_terminal:
            await self.close()

    async def close(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._pending.put_nowait(_END_OF_RUN)

    async def stream(self) -> AsyncIterator[AuditEvent]:
        """Yield queued events in emission order until the run ends."""
        while True:
            event = await self._pending.get()
            if event is _END_OF_RUN:
                return
            yield event
