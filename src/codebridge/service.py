"""CodeModeService — wires the supervisor, chat bridge and orchestrator together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable
from pathlib import Path

from codebridge.agent.providers import LLMProvider, create_provider
from codebridge.agent.supervisor import (
    ExecuteOptions,
    ExecutionResult,
    ProcessSupervisor,
    SupervisorError,
    SupervisorListener,
    probe_agent_version,
)
from codebridge.chat.telegram import TelegramBridge
from codebridge.config.models import BridgeConfig, ReasoningConfig, TelegramConfig
from codebridge.journal.recorder import JournalRecorder
from codebridge.orchestrator import OrchestrationLoop, ReasoningBackend
from codebridge.state import TokenStore

logger = logging.getLogger(__name__)

#: Seconds allowed for ``<agent> --version``.
_STATUS_TIMEOUT = 10.0

BridgeFactory = Callable[..., TelegramBridge]
ProviderFactory = Callable[[str, str | None, str | None], tuple[LLMProvider, str]]


class CodeModeService:
    """Host-facing operations of the code bridge.

    One supervisor lives for the whole service; the chat bridge and the
    orchestrator come and go with :meth:`enable_bridge` /
    :meth:`disable_bridge`.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        listener: SupervisorListener | None = None,
        journal: JournalRecorder | None = None,
        bridge_factory: BridgeFactory = TelegramBridge,
        provider_factory: ProviderFactory = create_provider,
    ) -> None:
        self._config = config
        self._journal = journal
        self._bridge_factory = bridge_factory
        self._provider_factory = provider_factory

        self._token_store = TokenStore(Path(config.state_dir))
        self._supervisor = ProcessSupervisor(
            self._token_store,
            listener=listener,
            journal=journal,
            executable=config.agent.executable,
            default_cwd=config.agent.cwd,
            max_turns=config.agent.max_turns,
        )
        self._working_directory: str | None = config.agent.cwd

        self._bridge: TelegramBridge | None = None
        self._orchestrator: OrchestrationLoop | None = None
        self._orchestration_task: asyncio.Task[int] | None = None

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def bridge(self) -> TelegramBridge | None:
        return self._bridge

    @property
    def orchestrator(self) -> OrchestrationLoop | None:
        return self._orchestrator

    @property
    def orchestration_task(self) -> asyncio.Task[int] | None:
        return self._orchestration_task

    @property
    def working_directory(self) -> str | None:
        """Directory used for chat-initiated runs (last one chosen locally)."""
        return self._working_directory

    @property
    def session_id(self) -> str | None:
        return self._supervisor.continuation_token

    # ------------------------------------------------------------------ #
    # Local operations
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        prompt: str,
        cwd: str | None = None,
        max_turns: int | None = None,
    ) -> ExecutionResult:
        """Run the agent on behalf of the local user.

        Raises:
            SupervisorError: Busy, bad working directory, or spawn failure.
        """
        if cwd:
            self._working_directory = cwd
        options = ExecuteOptions(cwd=cwd or self._working_directory, max_turns=max_turns)
        return await self._supervisor.execute(prompt, options)

    async def run_to_completion(
        self,
        prompt: str,
        cwd: str | None = None,
        max_turns: int | None = None,
    ) -> ExecutionResult:
        """Like :meth:`execute` but waits for the run and returns its summary."""
        if cwd:
            self._working_directory = cwd
        options = ExecuteOptions(
            cwd=cwd or self._working_directory,
            max_turns=max_turns,
            collect_output=True,
        )
        return await self._supervisor.execute(prompt, options)

    async def abort(self) -> int | None:
        """Abort the live run.  Returns its pid, or ``None`` if idle."""
        pid = self._supervisor.abort()
        if pid is not None and self._bridge is not None and self._bridge.is_enabled:
            await self._bridge.send_status("⏹ Execution aborted")
        return pid

    async def cli_status(self) -> tuple[bool, str | None]:
        """Check the agent CLI with ``--version``: ``(installed, version)``."""
        return await probe_agent_version(
            self._config.agent.executable, timeout=_STATUS_TIMEOUT
        )

    def reset_session(self) -> None:
        """Start the next run in a fresh agent conversation."""
        self._supervisor.clear_continuation_token()
        if self._orchestrator is not None:
            self._orchestrator.backend.clear_history()

    # ------------------------------------------------------------------ #
    # Chat bridge
    # ------------------------------------------------------------------ #

    async def enable_bridge(
        self,
        bot_token: str,
        chat_id: str,
        cwd: str | None = None,
    ) -> str | None:
        """Connect the chat bridge and start handling messages.

        Returns the bot username.

        Raises:
            BridgeInitError: Verification failed; no bridge is left running.
        """
        await self.disable_bridge(announce=False)
        if cwd:
            self._working_directory = cwd

        telegram = self._config.telegram or TelegramConfig(chat_id=chat_id)
        reasoning = self._config.reasoning or ReasoningConfig()
        bridge = self._bridge_factory(
            poll_interval=telegram.poll_interval,
            progress_interval=telegram.progress_interval,
            request_timeout=telegram.request_timeout,
            reasoning_label=reasoning.label,
            journal=self._journal,
        )
        username = await bridge.init(bot_token, chat_id)
        self._bridge = bridge
        self._supervisor.bridge = bridge

        self._orchestrator = self._build_orchestrator(reasoning, bridge)
        await bridge.start_polling(
            self.handle_command,
            self.handle_chat if self._orchestrator is not None else None,
        )

        status = (
            "🟢 Code Mode bridge connected\n"
            f"Working directory: {self._working_directory or '(default)'}"
        )
        if self._orchestrator is not None:
            status += (
                f"\n\n✅ {reasoning.label} orchestration enabled\n"
                "• /code <instruction> → run Claude Code directly\n"
                f"• plain message → {reasoning.label} plans and runs it"
            )
        else:
            status += (
                f"\n\n⚠️ {reasoning.label} is not configured, only /code commands work.\n"
                f"Set {reasoning.api_key_env} to enable chat orchestration."
            )
        await bridge.send_status(status)
        return username

    def _build_orchestrator(
        self, reasoning: ReasoningConfig, bridge: TelegramBridge
    ) -> OrchestrationLoop | None:
        api_key = os.environ.get(reasoning.api_key_env)
        if not api_key:
            logger.warning(
                "%s not set, chat orchestration disabled", reasoning.api_key_env
            )
            return None
        try:
            provider, model = self._provider_factory(
                reasoning.model, api_key, reasoning.base_url
            )
        except ValueError as exc:
            logger.warning("Reasoning backend unavailable: %s", exc)
            return None
        backend = ReasoningBackend(
            provider,
            model,
            label=reasoning.label,
            max_history=reasoning.max_history,
            journal=self._journal,
        )
        return OrchestrationLoop(
            backend,
            self._supervisor,
            bridge,
            max_rounds=reasoning.max_rounds,
            cwd=lambda: self._working_directory,
            journal=self._journal,
        )

    async def disable_bridge(self, announce: bool = True) -> None:
        """Say goodbye in the chat, stop polling and drop the orchestrator."""
        await self._cancel_orchestration()
        if self._orchestrator is not None:
            self._orchestrator.backend.clear_history()
            self._orchestrator = None

        bridge = self._bridge
        if bridge is None:
            return
        if announce and bridge.is_enabled:
            await bridge.send_status("🔴 Code Mode bridge disconnected")
        await bridge.close()
        self._bridge = None
        self._supervisor.bridge = None

    async def handle_command(self, command: str) -> None:
        """``/code`` path: run *command* directly, preempting a live run."""
        bridge = self._bridge
        if bridge is None:
            return
        self._supervisor.notify_remote_command(command)
        await self._cancel_orchestration()
        if self._supervisor.is_busy:
            self._supervisor.abort()
            await bridge.send_status("⏹ Previous task aborted, running the new command…")

        message_id = await bridge.send_user_command(command)
        await bridge.send_status("⏳ Running, please wait…")

        options = ExecuteOptions(
            cwd=self._working_directory,
            source_is_bridge=True,
            reply_to=message_id,
        )
        try:
            await self._supervisor.execute(command, options)
        except SupervisorError as exc:
            logger.warning("Chat command rejected: %s", exc)
            await bridge.send_status(f"Error: {exc}")

    async def handle_chat(self, text: str) -> None:
        """Plain-message path: hand *text* to a fresh orchestration run."""
        if self._orchestrator is None:
            return
        self._supervisor.notify_remote_command(
            f"[{self._orchestrator.backend.label}] {text}"
        )
        await self._cancel_orchestration()
        task = asyncio.create_task(self._orchestrator.run(text), name="orchestration")
        task.add_done_callback(_log_orchestration_failure)
        self._orchestration_task = task

    async def _cancel_orchestration(self) -> None:
        task = self._orchestration_task
        self._orchestration_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        """Disconnect the bridge and stop any live run."""
        await self.disable_bridge()
        self._supervisor.abort()
        await self._supervisor.wait_idle()


def _log_orchestration_failure(task: asyncio.Task[int]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Orchestration failed: %s", exc, exc_info=exc)
