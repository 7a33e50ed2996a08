"""Decoder for the coding agent's ``--output-format stream-json`` protocol.

Each stdout line is one JSON object.  The top-level ``type`` field picks
the shape:

* ``system``      — init event with ``session_id``, ``model`` and ``cwd``.
* ``assistant``   — wraps an API message; ``message.content`` is a string or
  a list of ``text`` / ``thinking`` / ``tool_use`` blocks.
* ``user``        — tool results fed back to the model, as ``tool_result``
  blocks inside ``message.content``.
* ``tool_use`` / ``tool_result`` — flattened variants of the above.
* ``result``      — final aggregated answer in the ``result`` field.

Decoding is pure: malformed or uninteresting lines decode to ``None``.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

#: Text the agent prints when ``--resume`` names an unknown conversation.
SESSION_EXPIRED_MARKER = "No conversation found"

#: Raw-output tail kept when no structured summary is available.
_SUMMARY_TAIL_CHARS = 500


class _StreamEventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SystemEvent(_StreamEventBase):
    """Run initialisation metadata."""

    kind: Literal["system"] = "system"
    model: str | None = None
    cwd: str | None = None
    session_id: str | None = None


class ThinkingEvent(_StreamEventBase):
    """Extended-thinking output."""

    kind: Literal["thinking"] = "thinking"
    text: str


class TextEvent(_StreamEventBase):
    """Plain assistant text."""

    kind: Literal["text"] = "text"
    text: str


class ToolUseEvent(_StreamEventBase):
    """The agent asked to run a tool."""

    kind: Literal["tool_use"] = "tool_use"
    id: str
    tool: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(_StreamEventBase):
    """Output of a tool run, correlated to a ``ToolUseEvent`` by ``id``."""

    kind: Literal["tool_result"] = "tool_result"
    id: str
    output: str
    is_error: bool = False


class ResultEvent(_StreamEventBase):
    """The agent's final answer."""

    kind: Literal["result"] = "result"
    text: str


def _kind_discriminator(v: Any) -> str:
    if isinstance(v, dict):
        return str(v.get("kind", ""))
    return str(getattr(v, "kind", ""))


StreamEvent = Annotated[
    Annotated[SystemEvent, Tag("system")]
    | Annotated[ThinkingEvent, Tag("thinking")]
    | Annotated[TextEvent, Tag("text")]
    | Annotated[ToolUseEvent, Tag("tool_use")]
    | Annotated[ToolResultEvent, Tag("tool_result")]
    | Annotated[ResultEvent, Tag("result")],
    Discriminator(_kind_discriminator),
]
"""Discriminated union of decoded stream events."""


# ------------------------------------------------------------------ #
# Decoding
# ------------------------------------------------------------------ #


def parse_line(line: str) -> dict[str, Any] | None:
    """Parse one stdout line into a JSON object, or ``None``."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def decode_line(line: str) -> StreamEvent | None:
    """Decode one stdout line into at most one ``StreamEvent``."""
    payload = parse_line(line)
    if payload is None:
        return None
    return decode_payload(payload)


def decode_payload(payload: dict[str, Any]) -> StreamEvent | None:
    """Map a parsed stream-json object onto a ``StreamEvent``."""
    event_type = payload.get("type")

    if event_type == "system":
        return SystemEvent(
            model=_opt_str(payload.get("model")),
            cwd=_opt_str(payload.get("cwd")),
            session_id=_opt_str(payload.get("session_id")),
        )

    if event_type == "assistant":
        return _decode_assistant(payload.get("message"))

    if event_type == "user":
        return _decode_user(payload.get("message"))

    if event_type == "tool_use":
        return ToolUseEvent(
            id=str(payload.get("id") or payload.get("tool_use_id") or ""),
            tool=str(payload.get("tool") or payload.get("name") or "unknown"),
            input=_as_dict(payload.get("input")),
        )

    if event_type == "tool_result":
        raw_output = payload.get("content")
        if raw_output is None:
            raw_output = payload.get("output")
        return ToolResultEvent(
            id=str(payload.get("tool_use_id") or payload.get("id") or ""),
            output=_stringify_output(raw_output),
            is_error=payload.get("is_error") is True,
        )

    if event_type == "result":
        result = payload.get("result")
        if isinstance(result, str) and result:
            return ResultEvent(text=result)
        return None

    return None


def _decode_assistant(message: object) -> StreamEvent | None:
    """Decode the first meaningful block of an assistant message.

    Later blocks of the same message are not decoded.
    """
    if not isinstance(message, dict):
        return None
    content = message.get("content")

    if isinstance(content, str):
        return TextEvent(text=content) if content.strip() else None

    if not isinstance(content, list):
        return None

    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text.strip():
                return TextEvent(text=text)
        elif block_type == "thinking":
            thinking = block.get("thinking")
            if isinstance(thinking, str) and thinking.strip():
                return ThinkingEvent(text=thinking)
        elif block_type == "tool_use":
            return ToolUseEvent(
                id=str(block.get("id") or ""),
                tool=str(block.get("name") or "unknown"),
                input=_as_dict(block.get("input")),
            )
    return None


def _decode_user(message: object) -> StreamEvent | None:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, dict) and block.get("type") == "tool_result":
            return ToolResultEvent(
                id=str(block.get("tool_use_id") or ""),
                output=_stringify_output(block.get("content")),
                is_error=block.get("is_error") is True,
            )
    return None


def _opt_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_dict(value: object) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _stringify_output(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        texts = [
            block["text"]
            for block in value
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(value, ensure_ascii=False)


# ------------------------------------------------------------------ #
# Session expiry
# ------------------------------------------------------------------ #


def is_session_expired(text: str) -> bool:
    """True if *text* says the continuation token names no conversation.

    The only place that knows how the agent words this failure.
    """
    return SESSION_EXPIRED_MARKER in text


def payload_reports_expired_session(payload: dict[str, Any]) -> bool:
    """True if a stream-json object's ``errors`` array reports expiry."""
    errors = payload.get("errors")
    if not isinstance(errors, list):
        return False
    return any(isinstance(e, str) and is_session_expired(e) for e in errors)


# ------------------------------------------------------------------ #
# Presentation helpers
# ------------------------------------------------------------------ #


def describe_event(event: StreamEvent) -> str:
    """One-line description of *event* for logs and the journal."""
    match event:
        case SystemEvent():
            return f"model={event.model or '?'} cwd={event.cwd or '?'}"
        case ThinkingEvent() | TextEvent() | ResultEvent():
            return _first_line(event.text, 120)
        case ToolUseEvent():
            return f"{event.tool} ({event.id})"
        case ToolResultEvent():
            state = "error" if event.is_error else "ok"
            return f"{event.id} {state}"
    return ""


def _first_line(text: str, limit: int) -> str:
    line = next((ln for ln in text.splitlines() if ln.strip()), "")
    return line if len(line) <= limit else line[: limit - 1] + "…"


def extract_summary(
    raw_output: str, exit_code: int | None, signal: int | None = None
) -> str:
    """Build the human-readable answer of a finished run from raw stdout.

    ``result`` payloads are the agent's authoritative answer and win over
    assistant text; when neither exists the raw tail is returned.
    """
    result_parts: list[str] = []
    assistant_parts: list[str] = []

    for line in raw_output.split("\n"):
        payload = parse_line(line)
        if payload is None:
            continue
        event_type = payload.get("type")
        if event_type == "result":
            result = payload.get("result")
            if isinstance(result, str) and result:
                result_parts.append(result)
        elif event_type == "assistant":
            assistant_parts.extend(_assistant_texts(payload.get("message")))

    summary = "\n".join(result_parts or assistant_parts).strip()
    if summary:
        return summary

    if len(raw_output) > _SUMMARY_TAIL_CHARS:
        return f"…{raw_output[-_SUMMARY_TAIL_CHARS:]}"
    if raw_output:
        return raw_output
    if exit_code == 0:
        return "Done."
    if signal is not None:
        return f"Process killed by signal {signal}"
    return f"Process exited with code {exit_code}"


def _assistant_texts(message: object) -> list[str]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [content] if content else []
    if not isinstance(content, list):
        return []
    return [
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
        and block["text"]
    ]
