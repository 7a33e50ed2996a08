"""Progress renderer — turns stream events into a compact live status panel."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol

from codebridge.agent.stream_events import (
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolResultEvent,
    ToolUseEvent,
)

logger = logging.getLogger(__name__)

#: Delay that batches a burst of events into a single panel edit.
FLUSH_DELAY = 0.3

#: Visible step capacity; the oldest step is evicted first.
MAX_VISIBLE_STEPS = 8

_SNIPPET_CHARS = 80
_COMMAND_CHARS = 40

_RUNNING = "🔧"
_DONE = "✅"
_FAILED = "❌"


class ProgressSink(Protocol):
    """The bridge operations a renderer needs."""

    async def update_progress(
        self, lines: list[str], force: bool = False
    ) -> int | None: ...

    async def finish_progress(self) -> None: ...


class FlushState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    FLUSHING = "flushing"


@dataclass
class _Step:
    tool_id: str
    label: str
    marker: str = _RUNNING

    def render(self) -> str:
        return f"{self.marker} {self.label}"


def _basename(path: str) -> str:
    parts = path.replace("\\", "/").split("/")
    return parts[-1] or path


def summarize_tool_input(tool_input: dict[str, Any]) -> str:
    """Short argument summary: file path, path, shell command, or pattern."""
    if tool_input.get("file_path"):
        return _basename(str(tool_input["file_path"]))
    if tool_input.get("path"):
        return _basename(str(tool_input["path"]))
    if tool_input.get("command"):
        command = str(tool_input["command"])
        if len(command) > _COMMAND_CHARS:
            return command[: _COMMAND_CHARS - 3] + "…"
        return command
    if tool_input.get("pattern"):
        return str(tool_input["pattern"])
    return ""


def thinking_snippet(text: str) -> str:
    """First non-blank line of *text*, shortened for the panel."""
    line = next((ln for ln in text.split("\n") if ln.strip()), "")
    if len(line) > _SNIPPET_CHARS:
        return line[: _SNIPPET_CHARS - 3] + "…"
    return line


class ProgressRenderer:
    """Accumulates one invocation's events and pushes them to a ``ProgressSink``.

    Flushes are coalesced: the first event after an idle period schedules
    a flush ``flush_delay`` seconds later and further events only update
    state.  Once :meth:`close` or :meth:`finish` has been called, events
    are ignored and nothing more is sent.
    """

    def __init__(
        self,
        sink: ProgressSink,
        flush_delay: float = FLUSH_DELAY,
        max_steps: int = MAX_VISIBLE_STEPS,
    ) -> None:
        self._sink = sink
        self._flush_delay = flush_delay
        self._steps: deque[_Step] = deque(maxlen=max_steps)
        self._turn_count = 0
        self._thinking = ""
        self._finished = False
        self._flush_state = FlushState.IDLE
        self._dirty = False
        self._flush_task: asyncio.Task[None] | None = None

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def thinking(self) -> str:
        return self._thinking

    @property
    def flush_state(self) -> FlushState:
        return self._flush_state

    @property
    def finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------ #
    # Event intake
    # ------------------------------------------------------------------ #

    def on_event(self, event: StreamEvent) -> None:
        """Fold *event* into the panel state and schedule a flush if needed."""
        if self._finished:
            return

        changed = False
        if isinstance(event, TextEvent | ThinkingEvent):
            self._turn_count += 1
            snippet = thinking_snippet(event.text)
            if snippet:
                self._thinking = snippet
                changed = True
        elif isinstance(event, ToolUseEvent):
            self._turn_count += 1
            detail = summarize_tool_input(event.input)
            label = f"{event.tool} → {detail}" if detail else event.tool
            self._steps.append(_Step(tool_id=event.id, label=label))
            changed = True
        elif isinstance(event, ToolResultEvent):
            changed = self._complete_step(event)

        if changed:
            self._schedule_flush()

    def _complete_step(self, event: ToolResultEvent) -> bool:
        # Newest first, so a reused id promotes the latest run.
        for step in reversed(self._steps):
            if step.tool_id == event.id and step.marker == _RUNNING:
                step.marker = _FAILED if event.is_error else _DONE
                return True
        # Evicted or never seen.
        return False

    def render(self) -> list[str]:
        """Panel lines: turn counter, thinking snippet, then the step list."""
        lines: list[str] = []
        if self._turn_count > 0:
            lines.append(f"🔄 Turn {self._turn_count}")
        if self._thinking:
            lines.append(f"💭 {self._thinking}")
        if self._steps:
            lines.append("")
            lines.extend(step.render() for step in self._steps)
        return lines

    # ------------------------------------------------------------------ #
    # Flush scheduling (idle → pending → flushing → idle)
    # ------------------------------------------------------------------ #

    def _schedule_flush(self) -> None:
        if self._flush_state is not FlushState.IDLE:
            # A pending flush will pick up this change; a running one is
            # followed by another round (see _run_flush).
            if self._flush_state is FlushState.FLUSHING:
                self._dirty = True
            return
        self._dirty = False
        self._flush_state = FlushState.PENDING
        self._flush_task = asyncio.create_task(self._run_flush(), name="progress-flush")
        self._flush_task.add_done_callback(_log_flush_failure)

    async def _run_flush(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._flush_delay)
                if self._finished:
                    return
                self._flush_state = FlushState.FLUSHING
                lines = self.render()
                if lines:
                    await self._sink.update_progress(lines)
                if not self._dirty or self._finished:
                    return
                self._dirty = False
                self._flush_state = FlushState.PENDING
        finally:
            self._flush_state = FlushState.IDLE

    # ------------------------------------------------------------------ #
    # Finalisation
    # ------------------------------------------------------------------ #

    def close(self) -> None:
        """Stop accepting events and cancel a flush that has not started yet."""
        self._finished = True
        task = self._flush_task
        if task is not None and not task.done() and self._flush_state is FlushState.PENDING:
            task.cancel()

    async def finish(self) -> None:
        """Close the renderer and have the sink delete the live panel.

        A flush already talking to the sink is allowed to complete first so
        it cannot recreate the panel after deletion.
        """
        self.close()
        task = self._flush_task
        if task is not None and not task.done():
            await asyncio.wait({task})
        await self._sink.finish_progress()


def _log_flush_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Progress flush failed: %s", exc)
