"""Tests for the reasoning backend and the orchestration loop."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from codebridge.agent.providers import LLMResponse
from codebridge.agent.supervisor import BusyError, ExecutionResult
from codebridge.journal.recorder import JournalRecorder
from codebridge.orchestrator import (
    CODE_RESULT_PREFIX,
    SYSTEM_PROMPT,
    OrchestrationLoop,
    ReasoningBackend,
    extract_command,
)

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _make_provider(*replies: str | None | Exception) -> MagicMock:
    provider = MagicMock()
    side_effect = [
        r if isinstance(r, Exception) else LLMResponse(content=r) for r in replies
    ]
    provider.chat = AsyncMock(side_effect=side_effect)
    return provider


def _make_bridge() -> MagicMock:
    bridge = MagicMock()
    bridge.is_enabled = True
    bridge.send_orchestrator_message = AsyncMock(return_value=10)
    bridge.send_user_command = AsyncMock(return_value=20)
    bridge.send_status = AsyncMock(return_value=30)
    bridge.send_assistant_response = AsyncMock(return_value=40)
    return bridge


def _make_supervisor(summary: str = "did the thing") -> MagicMock:
    supervisor = MagicMock()
    supervisor.is_busy = False
    supervisor.execute = AsyncMock(
        return_value=ExecutionResult(success=True, summary=summary)
    )
    supervisor.abort = MagicMock(return_value=None)
    return supervisor


def _make_loop(
    provider: MagicMock,
    supervisor: MagicMock | None = None,
    bridge: MagicMock | None = None,
    journal: JournalRecorder | None = None,
) -> tuple[OrchestrationLoop, MagicMock, MagicMock]:
    supervisor = supervisor or _make_supervisor()
    bridge = bridge or _make_bridge()
    backend = ReasoningBackend(provider, "MiniMax-M2.5", journal=journal)
    loop = OrchestrationLoop(
        backend,
        supervisor,
        bridge,
        cwd=lambda: "/work",
        journal=journal,
    )
    return loop, supervisor, bridge


# ------------------------------------------------------------------ #
# extract_command
# ------------------------------------------------------------------ #


class TestExtractCommand:
    def test_single_block(self) -> None:
        text = "Let me check.\n[EXECUTE]list the files in src[/EXECUTE]\nThen I'll report."
        assert extract_command(text) == "list the files in src"

    def test_case_insensitive_and_multiline(self) -> None:
        text = "[execute]\n  step one\n  step two\n[/Execute]"
        assert extract_command(text) == "step one\n  step two"

    def test_first_block_wins(self) -> None:
        text = "[EXECUTE]a[/EXECUTE] and [EXECUTE]b[/EXECUTE]"
        assert extract_command(text) == "a"

    def test_no_block(self) -> None:
        assert extract_command("Just an answer.") is None

    def test_empty_block(self) -> None:
        assert extract_command("[EXECUTE]   [/EXECUTE]") is None

    def test_unclosed_block(self) -> None:
        assert extract_command("[EXECUTE]never closed") is None


# ------------------------------------------------------------------ #
# ReasoningBackend
# ------------------------------------------------------------------ #


class TestReasoningBackend:
    async def test_reply_and_history(self) -> None:
        provider = _make_provider("Sure. [EXECUTE]run tests[/EXECUTE]")
        backend = ReasoningBackend(provider, "m")

        result = await backend.chat("please test")

        assert result.command == "run tests"
        assert result.reply == "Sure. [EXECUTE]run tests[/EXECUTE]"
        assert backend.history == [
            {"role": "user", "content": "please test"},
            {"role": "assistant", "content": "Sure. [EXECUTE]run tests[/EXECUTE]"},
        ]
        sent = provider.chat.await_args.args[0]
        assert sent[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert provider.chat.await_args.args[1] == "m"

    async def test_history_trimmed_to_most_recent(self) -> None:
        provider = _make_provider(*[f"answer {i}" for i in range(20)])
        backend = ReasoningBackend(provider, "m", max_history=30)

        for i in range(20):
            await backend.chat(f"question {i}")

        history = backend.history
        assert len(history) == 30
        assert history[0] == {"role": "user", "content": "question 5"}
        assert history[-1] == {"role": "assistant", "content": "answer 19"}

        # System prompt plus the trimmed history goes out on every call.
        sent = provider.chat.await_args.args[0]
        assert len(sent) == 31
        assert sent[0]["role"] == "system"

    async def test_provider_failure_becomes_reply(self) -> None:
        provider = _make_provider(RuntimeError("HTTP 500 for key sk-abcdefghijklmnop"))
        backend = ReasoningBackend(provider, "m", label="MiniMax M2.5")

        result = await backend.chat("hi")

        assert result.command is None
        assert result.reply.startswith("MiniMax M2.5 request failed:")
        assert "sk-abcdefghijklmnop" not in result.reply
        assert backend.history == [{"role": "user", "content": "hi"}]

    async def test_failure_journaled(self, tmp_path: Path) -> None:
        journal = JournalRecorder(tmp_path / "journal")
        backend = ReasoningBackend(_make_provider(RuntimeError("boom")), "m", journal=journal)
        await backend.chat("hi")
        journal.close()

        event = json.loads(journal.path.read_text().splitlines()[-1])
        assert event["type"] == "error"
        assert event["context"] == "reasoning"

    async def test_empty_reply(self) -> None:
        backend = ReasoningBackend(_make_provider(None), "m", label="Brain")
        result = await backend.chat("hi")
        assert result.reply == "(Brain returned empty response)"
        assert result.command is None

    async def test_clear_history(self) -> None:
        backend = ReasoningBackend(_make_provider("ok"), "m")
        await backend.chat("hi")
        backend.clear_history()
        assert backend.history == []


# ------------------------------------------------------------------ #
# OrchestrationLoop
# ------------------------------------------------------------------ #


class TestOrchestrationLoop:
    async def test_direct_answer_single_round(self) -> None:
        loop, supervisor, bridge = _make_loop(_make_provider("It is a Python project."))

        rounds = await loop.run("what is this repo?")

        assert rounds == 1
        supervisor.execute.assert_not_awaited()
        bridge.send_orchestrator_message.assert_awaited_once_with("It is a Python project.")
        bridge.send_user_command.assert_not_awaited()

    async def test_command_then_answer(self) -> None:
        provider = _make_provider(
            "Looking. [EXECUTE]count lines in src[/EXECUTE]",
            "There are 1200 lines.",
        )
        loop, supervisor, bridge = _make_loop(provider, _make_supervisor("1200 lines"))

        rounds = await loop.run("how big is src?")

        assert rounds == 2
        supervisor.execute.assert_awaited_once()
        command, options = supervisor.execute.await_args.args
        assert command == "count lines in src"
        assert options.collect_output
        assert options.source_is_bridge
        assert options.cwd == "/work"

        bridge.send_user_command.assert_awaited_once_with("count lines in src")
        bridge.send_status.assert_awaited_once_with("⏳ Running, please wait…")
        bridge.send_assistant_response.assert_awaited_once_with("1200 lines", 20)
        supervisor.notify_remote_command.assert_called_once_with(
            "[MiniMax M2.5→Code] count lines in src"
        )

        second_prompt = provider.chat.await_args_list[1].args[0][-1]
        assert second_prompt == {
            "role": "user",
            "content": f"{CODE_RESULT_PREFIX}\n1200 lines",
        }

    async def test_round_cap_announced(self) -> None:
        provider = _make_provider(*["[EXECUTE]again[/EXECUTE]"] * 10)
        loop, supervisor, bridge = _make_loop(provider)

        rounds = await loop.run("loop forever")

        assert rounds == 5
        assert provider.chat.await_count == 5
        assert supervisor.execute.await_count == 5
        bridge.send_status.assert_awaited_with(
            "⚠️ Orchestration round limit reached, stopping."
        )

    async def test_conversational_last_round_not_announced(self) -> None:
        replies = ["[EXECUTE]step[/EXECUTE]"] * 4 + ["All done."]
        loop, supervisor, bridge = _make_loop(_make_provider(*replies))

        rounds = await loop.run("do work")

        assert rounds == 5
        assert supervisor.execute.await_count == 4
        statuses = [c.args[0] for c in bridge.send_status.await_args_list]
        assert "⚠️ Orchestration round limit reached, stopping." not in statuses

    async def test_busy_supervisor_aborted_first(self) -> None:
        supervisor = _make_supervisor()
        supervisor.is_busy = True
        loop, _, bridge = _make_loop(_make_provider("ok"), supervisor)

        await loop.run("new topic")

        supervisor.abort.assert_called_once()
        bridge.send_status.assert_awaited_once_with(
            "⏹ Previous task aborted, handling the new message…"
        )

    async def test_rejected_execute_fed_back(self) -> None:
        supervisor = _make_supervisor()
        supervisor.execute = AsyncMock(side_effect=BusyError("An agent process is already running"))
        provider = _make_provider("[EXECUTE]x[/EXECUTE]", "I'll wait.")
        loop, _, bridge = _make_loop(provider, supervisor)

        rounds = await loop.run("go")

        assert rounds == 2
        bridge.send_assistant_response.assert_awaited_once_with(
            "An agent process is already running", 20
        )
        fed_back = provider.chat.await_args_list[1].args[0][-1]["content"]
        assert fed_back.endswith("An agent process is already running")

    async def test_failed_run_error_used_as_summary(self) -> None:
        supervisor = _make_supervisor()
        supervisor.execute = AsyncMock(
            return_value=ExecutionResult(success=False, summary=None, error="exit 1")
        )
        loop, _, bridge = _make_loop(
            _make_provider("[EXECUTE]x[/EXECUTE]", "oh no"), supervisor
        )
        await loop.run("go")
        bridge.send_assistant_response.assert_awaited_once_with("exit 1", 20)

    async def test_backend_failure_posted_and_stops(self) -> None:
        loop, supervisor, bridge = _make_loop(_make_provider(RuntimeError("timeout")))

        rounds = await loop.run("hi")

        assert rounds == 1
        supervisor.execute.assert_not_awaited()
        posted = bridge.send_orchestrator_message.await_args.args[0]
        assert "request failed" in posted

    async def test_rounds_journaled(self, tmp_path: Path) -> None:
        journal = JournalRecorder(tmp_path / "journal")
        provider = _make_provider("[EXECUTE]a[/EXECUTE]", "done")
        loop, _, _ = _make_loop(provider, journal=journal)

        await loop.run("go")
        journal.close()

        rounds = [
            json.loads(line)
            for line in journal.path.read_text().splitlines()
            if json.loads(line)["type"] == "orchestration_round"
        ]
        assert [(r["round"], r["command"]) for r in rounds] == [(1, "a"), (2, None)]


@pytest.mark.parametrize("max_rounds", [1, 3])
async def test_custom_round_cap(max_rounds: int) -> None:
    provider = _make_provider(*["[EXECUTE]x[/EXECUTE]"] * 5)
    backend = ReasoningBackend(provider, "m")
    supervisor = _make_supervisor()
    loop = OrchestrationLoop(backend, supervisor, _make_bridge(), max_rounds=max_rounds)

    assert await loop.run("go") == max_rounds
    assert supervisor.execute.await_count == max_rounds
