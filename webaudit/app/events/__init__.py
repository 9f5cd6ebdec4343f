"""
Run event stream: the observational side channel of the scheduler.

The checkpoint and progress files stay authoritative; events only mirror
their transitions for live consumers such as the SSE endpoint.
"""

from .emitter import AuditEventEmitter, NullEventEmitter
from .memory_emitter import MemoryQueueEventEmitter
from .models import TERMINAL_EVENT_TYPES, AuditEvent, AuditEventType

__all__ = [
    "AuditEventType",
    "AuditEvent",
    "TERMINAL_EVENT_TYPES",
    "AuditEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
]
