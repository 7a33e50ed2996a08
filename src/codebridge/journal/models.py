"""Pydantic v2 models for run-journal events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _EventBase(BaseModel):
    """Common envelope fields shared by every journal event."""

    model_config = ConfigDict(extra="forbid")

    ts: str = Field(default="", description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(default=0, ge=0, description="Monotonic sequence number")


class InvocationStartEvent(_EventBase):
    """Emitted when an agent process has been spawned."""

    type: Literal["invocation_start"] = "invocation_start"
    pid: int | None = Field(description="Agent process id")
    prompt: str = Field(description="Prompt passed to the agent")
    cwd: str = Field(description="Working directory of the run")
    resumed: bool = Field(description="Whether a continuation token was passed")


class InvocationEndEvent(_EventBase):
    """Emitted once an invocation is over, whatever the outcome."""

    type: Literal["invocation_end"] = "invocation_end"
    pid: int | None = Field(description="Agent process id")
    status: Literal["exited", "errored", "aborted", "retried"] = Field(
        description="How the invocation ended",
    )
    exit_code: int | None = Field(default=None, description="Process exit code")
    signal: int | None = Field(
        default=None,
        description="Terminating signal number, if killed by one",
    )


class StreamEventRecord(_EventBase):
    """One decoded event from the agent's structured stdout."""

    type: Literal["stream_event"] = "stream_event"
    pid: int | None = Field(description="Agent process id")
    kind: str = Field(description="Stream event kind")
    summary: str = Field(description="Short human-readable description")


class SessionExpiredEvent(_EventBase):
    """The agent rejected the continuation token."""

    type: Literal["session_expired"] = "session_expired"
    token: str = Field(description="The rejected continuation token")


class ChatInboundEvent(_EventBase):
    """An inbound chat message accepted by the bridge."""

    type: Literal["chat_inbound"] = "chat_inbound"
    route: Literal["command", "chat"] = Field(description="Dispatch target")
    text: str = Field(description="Message text after prefix stripping")


class OrchestrationRoundEvent(_EventBase):
    """One reasoning-backend round of the orchestration loop."""

    type: Literal["orchestration_round"] = "orchestration_round"
    round: int = Field(ge=1, description="Round number (1-indexed)")
    command: str | None = Field(
        default=None,
        description="Command extracted from the reply, if any",
    )


class ErrorEvent(_EventBase):
    """An error encountered by the supervisor, bridge or orchestrator."""

    type: Literal["error"] = "error"
    error: str = Field(description="Error description")
    context: str | None = Field(
        default=None,
        description="Error context: subprocess, transport, reasoning, ...",
    )


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


JournalEvent = Annotated[
    Annotated[InvocationStartEvent, Tag("invocation_start")]
    | Annotated[InvocationEndEvent, Tag("invocation_end")]
    | Annotated[StreamEventRecord, Tag("stream_event")]
    | Annotated[SessionExpiredEvent, Tag("session_expired")]
    | Annotated[ChatInboundEvent, Tag("chat_inbound")]
    | Annotated[OrchestrationRoundEvent, Tag("orchestration_round")]
    | Annotated[ErrorEvent, Tag("error")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all journal event types."""
