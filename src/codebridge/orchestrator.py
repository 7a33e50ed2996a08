"""Reasoning-backend orchestration of the coding agent.

A free-form chat message goes to a reasoning model first.  The model may
answer directly or ask for agent work by embedding one
``[EXECUTE]...[/EXECUTE]`` block; the agent's summary is then fed back to
the model, for a bounded number of rounds.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from codebridge.agent.helpers import record_error, redact_secrets
from codebridge.agent.providers import LLMProvider
from codebridge.agent.supervisor import (
    ExecuteOptions,
    ProcessSupervisor,
    SupervisorError,
)
from codebridge.chat.telegram import TelegramBridge
from codebridge.journal.models import OrchestrationRoundEvent
from codebridge.journal.recorder import JournalRecorder

logger = logging.getLogger(__name__)

#: Conversation entries kept (system prompt excluded).
MAX_HISTORY = 30

#: Hard cap on reasoning rounds per chat message.
MAX_ROUNDS = 5

#: Prefix of the message that hands an agent summary back to the model.
CODE_RESULT_PREFIX = "[Claude Code result]"

SYSTEM_PROMPT = """\
You are a coding-task orchestrator. The user describes what they need in \
natural language. You should:

1. Understand the user's intent.
2. If code work is needed (reading files, changing code, running commands, \
...), output the instruction for Claude Code in this format:
   [EXECUTE]a natural-language instruction describing what Claude Code \
should do[/EXECUTE]
3. For simple questions that need no code work, answer directly without an \
[EXECUTE] tag.
4. Include at most one [EXECUTE] block per reply.
5. You may add analysis and explanation before or after the [EXECUTE] block.
6. When you receive a Claude Code result, analyse it and decide whether more \
work is needed.

Note: the content of [EXECUTE] is passed to the Claude Code CLI, a \
programming AI that understands natural language, so describe the task in \
words rather than writing shell commands."""

_EXECUTE_RE = re.compile(r"\[EXECUTE\](.*?)\[/EXECUTE\]", re.IGNORECASE | re.DOTALL)


def extract_command(text: str) -> str | None:
    """Return the trimmed body of the first ``[EXECUTE]`` block, if non-empty."""
    match = _EXECUTE_RE.search(text)
    if match is None:
        return None
    command = match.group(1).strip()
    return command or None


@dataclass
class OrchestratorReply:
    """One reasoning-backend answer."""

    reply: str
    command: str | None = None


class ReasoningBackend:
    """Rolling conversation with the reasoning model.

    Failures never raise: they come back as the reply text with no command.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        label: str = "MiniMax M2.5",
        max_history: int = MAX_HISTORY,
        journal: JournalRecorder | None = None,
    ) -> None:
        self._provider = provider
        self._model = model
        self._label = label
        self._max_history = max_history
        self._journal = journal
        self._messages: list[dict[str, Any]] = []

    @property
    def label(self) -> str:
        return self._label

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._messages)

    async def chat(self, message: str) -> OrchestratorReply:
        """Send *message* with the rolling history and parse the reply."""
        self._append("user", message)
        request = [{"role": "system", "content": SYSTEM_PROMPT}, *self._messages]

        try:
            response = await self._provider.chat(request, self._model)
        except Exception as exc:
            error_msg = redact_secrets(f"{self._label} request failed: {exc}")
            record_error(self._journal, error_msg, context="reasoning", logger=logger)
            return OrchestratorReply(reply=error_msg)

        reply = (response.content or "").strip()
        if not reply:
            return OrchestratorReply(reply=f"({self._label} returned empty response)")

        self._append("assistant", reply)
        return OrchestratorReply(reply=reply, command=extract_command(reply))

    def clear_history(self) -> None:
        self._messages = []

    def _append(self, role: str, content: str) -> None:
        self._messages.append({"role": role, "content": content})
        if len(self._messages) > self._max_history:
            self._messages = self._messages[-self._max_history :]


class OrchestrationLoop:
    """Drives up to ``max_rounds`` reasoning rounds for one chat message."""

    def __init__(
        self,
        backend: ReasoningBackend,
        supervisor: ProcessSupervisor,
        bridge: TelegramBridge,
        max_rounds: int = MAX_ROUNDS,
        cwd: Callable[[], str | None] = lambda: None,
        journal: JournalRecorder | None = None,
    ) -> None:
        self._backend = backend
        self._supervisor = supervisor
        self._bridge = bridge
        self._max_rounds = max_rounds
        self._cwd = cwd
        self._journal = journal

    @property
    def backend(self) -> ReasoningBackend:
        return self._backend

    async def run(self, message: str) -> int:
        """Handle one chat message.  Returns the number of rounds used."""
        if self._supervisor.is_busy:
            self._supervisor.abort()
            await self._bridge.send_status(
                "⏹ Previous task aborted, handling the new message…"
            )

        pending = message
        rounds = 0
        while rounds < self._max_rounds:
            rounds += 1
            result = await self._backend.chat(pending)
            if self._journal is not None:
                self._journal.record(
                    OrchestrationRoundEvent(round=rounds, command=result.command)
                )
            await self._bridge.send_orchestrator_message(result.reply)

            if result.command is None:
                return rounds

            self._supervisor.notify_remote_command(
                f"[{self._backend.label}→Code] {result.command}"
            )
            command_msg_id = await self._bridge.send_user_command(result.command)
            await self._bridge.send_status("⏳ Running, please wait…")

            summary = await self._execute(result.command)
            await self._bridge.send_assistant_response(summary, command_msg_id)
            pending = f"{CODE_RESULT_PREFIX}\n{summary}"

        logger.info("Orchestration stopped after %d rounds", rounds)
        await self._bridge.send_status(
            "⚠️ Orchestration round limit reached, stopping."
        )
        return rounds

    async def _execute(self, command: str) -> str:
        options = ExecuteOptions(
            cwd=self._cwd(),
            source_is_bridge=True,
            collect_output=True,
        )
        try:
            result = await self._supervisor.execute(command, options)
        except SupervisorError as exc:
            logger.warning("Orchestrated run rejected: %s", exc)
            return str(exc)
        return result.summary or result.error or "No output"
