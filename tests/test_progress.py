"""Tests for the progress renderer."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from codebridge.agent.progress import (
    FlushState,
    ProgressRenderer,
    summarize_tool_input,
    thinking_snippet,
)
from codebridge.agent.stream_events import (
    ResultEvent,
    SystemEvent,
    TextEvent,
    ThinkingEvent,
    ToolResultEvent,
    ToolUseEvent,
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _make_sink() -> MagicMock:
    sink = MagicMock()
    sink.update_progress = AsyncMock(return_value=1)
    sink.finish_progress = AsyncMock()
    return sink


def _make_renderer(sink: MagicMock | None = None, delay: float = 0.01) -> ProgressRenderer:
    return ProgressRenderer(sink or _make_sink(), flush_delay=delay)


async def _settle(seconds: float = 0.05) -> None:
    await asyncio.sleep(seconds)


# ------------------------------------------------------------------ #
# Pure helpers
# ------------------------------------------------------------------ #


class TestSummarizeToolInput:
    def test_file_path_basename(self) -> None:
        assert summarize_tool_input({"file_path": "/repo/src/app.py", "command": "x"}) == "app.py"

    def test_windows_path_basename(self) -> None:
        assert summarize_tool_input({"path": "C:\\repo\\src"}) == "src"

    def test_short_command(self) -> None:
        assert summarize_tool_input({"command": "ls -la"}) == "ls -la"

    def test_long_command_truncated(self) -> None:
        command = "pytest tests/test_a_really_long_module_name.py -k something"
        summary = summarize_tool_input({"command": command})
        assert summary == command[:37] + "…"
        assert len(summary) == 38

    def test_pattern(self) -> None:
        assert summarize_tool_input({"pattern": "TODO"}) == "TODO"

    def test_priority_path_over_pattern(self) -> None:
        assert summarize_tool_input({"pattern": "x", "path": "/a/b"}) == "b"

    def test_nothing_recognised(self) -> None:
        assert summarize_tool_input({"url": "https://example.com"}) == ""


class TestThinkingSnippet:
    def test_first_non_blank_line(self) -> None:
        assert thinking_snippet("\n  \nLet me look\nmore") == "Let me look"

    def test_truncated_to_80(self) -> None:
        snippet = thinking_snippet("a" * 100)
        assert snippet == "a" * 77 + "…"


# ------------------------------------------------------------------ #
# State
# ------------------------------------------------------------------ #


class TestRendererState:
    async def test_render_layout(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(TextEvent(text="Reading the code"))
        renderer.on_event(ToolUseEvent(id="t1", tool="Read", input={"file_path": "/x/a.py"}))

        assert renderer.render() == [
            "🔄 Turn 2",
            "💭 Reading the code",
            "",
            "🔧 Read → a.py",
        ]
        renderer.close()

    async def test_tool_result_promotes_step_in_place(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(ToolUseEvent(id="X", tool="Bash", input={"command": "ls"}))
        renderer.on_event(ToolResultEvent(id="X", output="a\nb"))

        steps = [line for line in renderer.render() if "Bash" in line]
        assert steps == ["✅ Bash → ls"]
        renderer.close()

    async def test_error_result_marks_failure(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(ToolUseEvent(id="X", tool="Bash", input={"command": "false"}))
        renderer.on_event(ToolResultEvent(id="X", output="exit 1", is_error=True))
        assert renderer.render()[-1] == "❌ Bash → false"
        renderer.close()

    async def test_unmatched_result_is_dropped(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(ToolUseEvent(id="A", tool="Read", input={}))
        renderer.on_event(ToolResultEvent(id="B", output=""))
        assert renderer.render()[-1] == "🔧 Read"
        renderer.close()

    async def test_steps_capped_fifo(self) -> None:
        renderer = _make_renderer()
        for i in range(10):
            renderer.on_event(ToolUseEvent(id=f"t{i}", tool=f"Tool{i}", input={}))

        steps = renderer.render()[2:]
        assert len(steps) == 8
        assert steps[0] == "🔧 Tool2"
        assert steps[-1] == "🔧 Tool9"

        # The result of an evicted step changes nothing.
        renderer.on_event(ToolResultEvent(id="t0", output=""))
        assert renderer.render()[2:] == steps
        renderer.close()

    async def test_parallel_tools_promoted_by_id(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(ToolUseEvent(id="a", tool="Read", input={"path": "/1"}))
        renderer.on_event(ToolUseEvent(id="b", tool="Read", input={"path": "/2"}))
        renderer.on_event(ToolResultEvent(id="a", output=""))
        assert renderer.render()[-2:] == ["✅ Read → 1", "🔧 Read → 2"]
        renderer.close()

    async def test_system_and_result_events_ignored(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(SystemEvent(model="m"))
        renderer.on_event(ResultEvent(text="done"))
        assert renderer.render() == []
        assert renderer.flush_state is FlushState.IDLE

    async def test_thinking_counts_a_turn(self) -> None:
        renderer = _make_renderer()
        renderer.on_event(ThinkingEvent(text="plan"))
        assert renderer.turn_count == 1
        assert renderer.thinking == "plan"
        renderer.close()


# ------------------------------------------------------------------ #
# Flushing
# ------------------------------------------------------------------ #


class TestRendererFlush:
    async def test_burst_coalesced_into_one_update(self) -> None:
        sink = _make_sink()
        renderer = _make_renderer(sink, delay=0.02)
        for i in range(5):
            renderer.on_event(ToolUseEvent(id=f"t{i}", tool="Read", input={}))
        assert renderer.flush_state is FlushState.PENDING

        await _settle()

        sink.update_progress.assert_awaited_once()
        lines = sink.update_progress.await_args.args[0]
        assert lines.count("🔧 Read") == 5
        assert renderer.flush_state is FlushState.IDLE

    async def test_events_during_flush_trigger_another_round(self) -> None:
        sink = _make_sink()
        renderer = _make_renderer(sink, delay=0.01)
        gate = asyncio.Event()

        async def _slow_update(lines: list[str], force: bool = False) -> int:
            await gate.wait()
            return 1

        sink.update_progress.side_effect = _slow_update
        renderer.on_event(ToolUseEvent(id="a", tool="Read", input={}))
        await _settle(0.03)
        assert renderer.flush_state is FlushState.FLUSHING

        renderer.on_event(ToolUseEvent(id="b", tool="Edit", input={}))
        gate.set()
        await _settle()

        assert sink.update_progress.await_count == 2
        assert "🔧 Edit" in sink.update_progress.await_args_list[1].args[0]

    async def test_finish_cancels_pending_flush_and_deletes_panel(self) -> None:
        sink = _make_sink()
        renderer = _make_renderer(sink, delay=0.5)
        renderer.on_event(TextEvent(text="working"))

        await renderer.finish()
        await _settle()

        sink.update_progress.assert_not_awaited()
        sink.finish_progress.assert_awaited_once()
        assert renderer.finished

    async def test_events_after_finish_are_ignored(self) -> None:
        sink = _make_sink()
        renderer = _make_renderer(sink)
        await renderer.finish()

        renderer.on_event(TextEvent(text="late"))
        await _settle()

        assert renderer.render() == []
        sink.update_progress.assert_not_awaited()

    async def test_finish_waits_for_inflight_flush(self) -> None:
        sink = _make_sink()
        renderer = _make_renderer(sink, delay=0.01)
        order: list[str] = []
        gate = asyncio.Event()

        async def _slow_update(lines: list[str], force: bool = False) -> int:
            await gate.wait()
            order.append("update")
            return 1

        async def _finish() -> None:
            order.append("finish")

        sink.update_progress.side_effect = _slow_update
        sink.finish_progress.side_effect = _finish

        renderer.on_event(TextEvent(text="x"))
        await _settle(0.03)
        finishing = asyncio.create_task(renderer.finish())
        await _settle(0.01)
        gate.set()
        await finishing

        assert order == ["update", "finish"]
