"""Run journal — event models and JSONL recorder."""

from codebridge.journal.models import (
    ChatInboundEvent,
    ErrorEvent,
    InvocationEndEvent,
    InvocationStartEvent,
    JournalEvent,
    OrchestrationRoundEvent,
    SessionExpiredEvent,
    StreamEventRecord,
)
from codebridge.journal.recorder import JournalRecorder

__all__ = [
    "ChatInboundEvent",
    "ErrorEvent",
    "InvocationEndEvent",
    "InvocationStartEvent",
    "JournalEvent",
    "JournalRecorder",
    "OrchestrationRoundEvent",
    "SessionExpiredEvent",
    "StreamEventRecord",
]
