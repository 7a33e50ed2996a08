"""Process supervisor — runs the coding-agent CLI, one invocation at a time."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import re
import shlex
import subprocess
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

import click

from codebridge.agent.helpers import format_stderr_preview, record_error
from codebridge.agent.progress import ProgressRenderer
from codebridge.agent.stream_events import (
    decode_payload,
    describe_event,
    extract_summary,
    is_session_expired,
    parse_line,
    payload_reports_expired_session,
)
from codebridge.chat.telegram import TelegramBridge
from codebridge.constants import COMMAND_PREFIX, DEFAULT_MAX_TURNS
from codebridge.journal.models import (
    InvocationEndEvent,
    InvocationStartEvent,
    SessionExpiredEvent,
    StreamEventRecord,
)
from codebridge.journal.recorder import JournalRecorder
from codebridge.state import TokenStore

logger = logging.getLogger(__name__)

#: Maximum bytes per JSONL line from subprocess stdout (1 MB).
_MAX_LINE_BYTES = 1_048_576

#: Max V8 heap size (MB) for the Node.js agent CLI.
#: Prevents a single run from OOM-killing the entire process tree.
_NODE_HEAP_LIMIT_MB = 2048

#: Seconds to wait after SIGTERM before escalating to SIGKILL.
_SIGTERM_WAIT = 3.0

#: Executable name used when no install location matches.
AGENT_BINARY = "claude"

_COMMAND_PREFIX_RE = re.compile(rf"^{re.escape(COMMAND_PREFIX)}\s", re.IGNORECASE)


class SupervisorError(Exception):
    """An execute request was rejected before any process ran."""


class BusyError(SupervisorError):
    """Another invocation is already running."""


class InvalidWorkingDirectoryError(SupervisorError):
    """The requested working directory does not exist."""


class SpawnFailureError(SupervisorError):
    """The agent executable could not be started."""


class InvocationStatus(enum.Enum):
    RUNNING = "running"
    EXITED = "exited"
    ERRORED = "errored"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ExecuteOptions:
    """Per-request knobs for :meth:`ProcessSupervisor.execute`."""

    cwd: str | None = None
    max_turns: int | None = None
    #: Run without ``--resume`` even if a continuation token is stored.
    skip_continuation: bool = False
    #: The prompt came from the chat, so it is not echoed back there.
    source_is_bridge: bool = False
    #: Wait for the run and return its summary instead of posting it to chat.
    collect_output: bool = False
    #: Chat message the final answer is threaded under.
    reply_to: int | None = None


@dataclass
class ExecutionResult:
    """Outcome of an execute request."""

    success: bool
    pid: int | None = None
    summary: str | None = None
    error: str | None = None
    exit_code: int | None = None
    signal: int | None = None
    aborted: bool = False


@dataclass
class Invocation:
    """One run of the agent process."""

    generation: int
    prompt: str
    cwd: str
    max_turns: int
    continuation_token: str | None
    options: ExecuteOptions
    pid: int | None = None
    status: InvocationStatus = InvocationStatus.RUNNING
    session_expired: bool = False
    reply_to: int | None = None
    buffer: list[str] = field(default_factory=list)
    renderer: ProgressRenderer | None = None
    process: asyncio.subprocess.Process | None = None
    result: asyncio.Future[ExecutionResult] | None = None

    @property
    def resumed(self) -> bool:
        return self.continuation_token is not None

    @property
    def raw_output(self) -> str:
        return "".join(self.buffer)


class InvocationSlot:
    """Holds at most one live ``Invocation``.

    Every acquire bumps a generation counter, so a reader that outlived an
    abort can tell it no longer owns the slot.
    """

    def __init__(self) -> None:
        self._current: Invocation | None = None
        self._generation = 0

    @property
    def current(self) -> Invocation | None:
        return self._current

    @property
    def generation(self) -> int:
        return self._generation

    def acquire(
        self,
        prompt: str,
        cwd: str,
        max_turns: int,
        continuation_token: str | None,
        options: ExecuteOptions,
    ) -> Invocation:
        """Claim the slot for a new invocation.

        Raises:
            BusyError: The slot is taken.
        """
        if self._current is not None:
            msg = "An agent process is already running"
            raise BusyError(msg)
        self._generation += 1
        self._current = Invocation(
            generation=self._generation,
            prompt=prompt,
            cwd=cwd,
            max_turns=max_turns,
            continuation_token=continuation_token,
            options=options,
        )
        return self._current

    def release(self, invocation: Invocation) -> bool:
        """Free the slot if *invocation* still holds it."""
        if self.is_current(invocation):
            self._current = None
            return True
        return False

    def is_current(self, invocation: Invocation) -> bool:
        return (
            self._current is invocation
            and invocation.generation == self._generation
        )


class SupervisorListener(Protocol):
    """Host UI observer; receives raw output verbatim and lifecycle notices."""

    def on_output(self, stream: str, data: str, pid: int | None) -> None: ...

    def on_exit(self, exit_code: int | None, signal: int | None, pid: int | None) -> None: ...

    def on_error(self, message: str, pid: int | None) -> None: ...

    def on_continuation_token(self, token: str | None) -> None: ...

    def on_remote_command(self, text: str) -> None: ...


# ------------------------------------------------------------------ #
# Invocation building blocks
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class AgentExecutable:
    """Where the agent CLI lives and whether it must go through a shell."""

    path: str
    via_shell: bool = False


def _candidate_paths() -> list[Path]:
    home = Path.home()
    if sys.platform == "win32":
        return [
            home / ".local" / "bin" / "claude.exe",
            home / "AppData" / "Roaming" / "npm" / "claude.cmd",
            home / "AppData" / "Roaming" / "npm" / "claude",
        ]
    return [
        home / ".local" / "bin" / "claude",
        Path("/usr/local/bin/claude"),
        home / ".npm-global" / "bin" / "claude",
    ]


def resolve_agent_executable(explicit: str | None = None) -> AgentExecutable:
    """Find the agent CLI.

    An explicit path wins.  Otherwise the known install locations are
    checked in order; if none exists the bare name is run through a shell
    so the user's shell PATH gets a chance to find it.
    """
    if explicit:
        return AgentExecutable(path=explicit)
    for candidate in _candidate_paths():
        if candidate.is_file():
            return AgentExecutable(path=str(candidate))
    return AgentExecutable(path=AGENT_BINARY, via_shell=True)


def build_agent_env() -> dict[str, str]:
    """Process environment with ``~/.local/bin`` on PATH and a Node heap cap."""
    env = dict(os.environ)
    local_bin = str(Path.home() / ".local" / "bin")
    path = env.get("PATH", "")
    if local_bin not in path.split(os.pathsep):
        env["PATH"] = f"{local_bin}{os.pathsep}{path}" if path else local_bin

    node_opts = env.get("NODE_OPTIONS", "")
    if "--max-old-space-size" not in node_opts:
        separator = " " if node_opts else ""
        heap_flag = f"--max-old-space-size={_NODE_HEAP_LIMIT_MB}"
        env["NODE_OPTIONS"] = f"{node_opts}{separator}{heap_flag}"
    return env


def build_agent_args(
    prompt: str,
    max_turns: int,
    continuation_token: str | None = None,
) -> list[str]:
    """Arguments for one non-interactive, auto-approving agent run."""
    args = [
        "-p",
        prompt,
        "--output-format",
        "stream-json",
        "--verbose",
        "--max-turns",
        str(max_turns),
        "--dangerously-skip-permissions",
    ]
    if continuation_token:
        args.extend(["--resume", continuation_token])
    return args


def strip_command_prefix(prompt: str) -> str:
    """Drop a leading ``/code`` so the agent does not see the chat command."""
    if _COMMAND_PREFIX_RE.match(prompt):
        return prompt[len(COMMAND_PREFIX) + 1 :].strip()
    return prompt


def _shell_command(executable: str, args: list[str]) -> str:
    if sys.platform == "win32":
        return subprocess.list2cmdline([executable, *args])
    # exec keeps the agent's pid equal to the one we signal on abort.
    return "exec " + shlex.join([executable, *args])


async def _spawn(
    executable: AgentExecutable,
    args: list[str],
    cwd: str,
    env: dict[str, str],
) -> asyncio.subprocess.Process:
    if executable.via_shell:
        return await asyncio.create_subprocess_shell(
            _shell_command(executable.path, args),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_MAX_LINE_BYTES,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
    return await asyncio.create_subprocess_exec(
        executable.path,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=_MAX_LINE_BYTES,
        cwd=cwd,
        env=env,
        start_new_session=True,
    )


async def probe_agent_version(
    explicit: str | None = None,
    timeout: float = 10.0,
) -> tuple[bool, str | None]:
    """Run ``<agent> --version``; returns ``(installed, version)``."""
    executable = resolve_agent_executable(explicit)
    try:
        proc = await _spawn(executable, ["--version"], os.getcwd(), build_agent_env())
    except OSError as exc:
        logger.info("Agent CLI not available: %s", exc)
        return False, None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return False, None

    if proc.returncode != 0:
        return False, None
    version = stdout.decode(errors="replace").strip()
    return True, version or None


def _terminate(proc: asyncio.subprocess.Process) -> None:
    if sys.platform == "win32":
        # Kill the whole tree; the CLI spawns helpers of its own.
        subprocess.Popen(
            ["taskkill", "/PID", str(proc.pid), "/T", "/F"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()


async def _stop_process(proc: asyncio.subprocess.Process) -> None:
    """Terminate *proc* and wait for it, escalating to SIGKILL if it lingers."""
    if proc.returncode is not None:
        return
    _terminate(proc)
    try:
        await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_WAIT)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


def _aborted_result(
    invocation: Invocation, exit_code: int | None = None, signal: int | None = None
) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        pid=invocation.pid,
        error="Execution aborted",
        exit_code=exit_code,
        signal=signal,
        aborted=True,
    )


# ------------------------------------------------------------------ #
# Supervisor
# ------------------------------------------------------------------ #


class ProcessSupervisor:
    """Runs the agent CLI and reports its progress and answer.

    Only one invocation can be live; :meth:`execute` raises ``BusyError``
    otherwise.  When a chat bridge is attached and enabled, progress is
    rendered into its live panel and the final answer is posted there.
    """

    def __init__(
        self,
        token_store: TokenStore,
        bridge: TelegramBridge | None = None,
        listener: SupervisorListener | None = None,
        journal: JournalRecorder | None = None,
        executable: str | None = None,
        default_cwd: str | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
    ) -> None:
        self._token_store = token_store
        self._bridge = bridge
        self._listener = listener
        self._journal = journal
        self._executable = executable
        self._default_cwd = default_cwd
        self._max_turns = max_turns

        self._slot = InvocationSlot()
        self._continuation_token = token_store.load()
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def is_busy(self) -> bool:
        return self._slot.current is not None

    @property
    def current(self) -> Invocation | None:
        return self._slot.current

    @property
    def continuation_token(self) -> str | None:
        return self._continuation_token

    @property
    def bridge(self) -> TelegramBridge | None:
        return self._bridge

    @bridge.setter
    def bridge(self, bridge: TelegramBridge | None) -> None:
        self._bridge = bridge

    def clear_continuation_token(self) -> None:
        """Forget the stored token so the next run starts a new conversation."""
        self._set_continuation_token(None)

    def notify_remote_command(self, text: str) -> None:
        """Tell the host UI about work requested from the chat."""
        if self._listener is not None:
            self._listener.on_remote_command(text)

    def _set_continuation_token(self, token: str | None) -> None:
        self._continuation_token = token
        if token is None:
            self._token_store.clear()
        else:
            self._token_store.save(token)
        if self._listener is not None:
            self._listener.on_continuation_token(token)

    def _bridge_enabled(self) -> bool:
        return self._bridge is not None and self._bridge.is_enabled

    # ------------------------------------------------------------------ #
    # Execute
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        prompt: str,
        options: ExecuteOptions | None = None,
    ) -> ExecutionResult:
        """Start one agent run.

        Returns as soon as the process is spawned, with its pid, unless
        ``options.collect_output`` is set; then the call waits for the run
        and returns its summary.

        Raises:
            BusyError: Another invocation is live.
            InvalidWorkingDirectoryError: ``cwd`` does not exist.
            SpawnFailureError: The executable could not be started.
        """
        options = options or ExecuteOptions()
        if self.is_busy:
            msg = "An agent process is already running"
            raise BusyError(msg)

        cwd = options.cwd or self._default_cwd or os.getcwd()
        if not Path(cwd).is_dir():
            msg = f"Working directory does not exist: {cwd}"
            raise InvalidWorkingDirectoryError(msg)

        prompt = strip_command_prefix(prompt)
        max_turns = options.max_turns or self._max_turns
        token = None if options.skip_continuation else self._continuation_token

        invocation = self._slot.acquire(prompt, cwd, max_turns, token, options)
        invocation.result = asyncio.get_running_loop().create_future()

        reply_to = options.reply_to
        if (
            self._bridge_enabled()
            and not options.source_is_bridge
            and not options.collect_output
            and reply_to is None
        ):
            assert self._bridge is not None
            reply_to = await self._bridge.send_user_command(prompt)
            if not self._slot.is_current(invocation):
                # Aborted while the command was being posted; nothing to spawn.
                result = _aborted_result(invocation)
                self._resolve(invocation, result)
                return result
        invocation.reply_to = reply_to

        executable = resolve_agent_executable(self._executable)
        args = build_agent_args(prompt, max_turns, token)
        try:
            proc = await _spawn(executable, args, cwd, build_agent_env())
        except FileNotFoundError as exc:
            self._slot.release(invocation)
            invocation.status = InvocationStatus.ERRORED
            error_msg = (
                f"Agent CLI not found at {executable.path!r}. "
                "Install: npm install -g @anthropic-ai/claude-code"
            )
            record_error(self._journal, error_msg, logger=logger)
            raise SpawnFailureError(error_msg) from exc
        except OSError as exc:
            self._slot.release(invocation)
            invocation.status = InvocationStatus.ERRORED
            error_msg = f"Failed to spawn agent CLI: {exc}"
            record_error(self._journal, error_msg, logger=logger)
            raise SpawnFailureError(error_msg) from exc

        invocation.pid = proc.pid
        invocation.process = proc
        logger.info(
            "Spawned agent pid=%s cwd=%s resume=%s", proc.pid, cwd, token is not None
        )
        if self._journal is not None:
            self._journal.record(
                InvocationStartEvent(
                    pid=proc.pid, prompt=prompt, cwd=cwd, resumed=token is not None
                )
            )

        if self._bridge_enabled():
            assert self._bridge is not None
            invocation.renderer = ProgressRenderer(self._bridge)

        self._track(
            asyncio.create_task(
                self._supervise(invocation, proc), name=f"agent-{proc.pid}"
            )
        )

        if options.collect_output:
            return await invocation.result
        return ExecutionResult(success=True, pid=proc.pid)

    # ------------------------------------------------------------------ #
    # Abort
    # ------------------------------------------------------------------ #

    def abort(self) -> int | None:
        """Terminate the live invocation.

        Frees the slot immediately without waiting for the process to exit.
        Returns the terminated pid, or ``None`` if nothing was running.
        """
        invocation = self._slot.current
        if invocation is None:
            return None

        invocation.status = InvocationStatus.ABORTED
        self._slot.release(invocation)
        proc_pid = invocation.pid
        if invocation.process is not None:
            _terminate(invocation.process)
        logger.info("Aborted agent pid=%s", proc_pid)

        if invocation.renderer is not None:
            invocation.renderer.close()
            self._track(
                asyncio.create_task(invocation.renderer.finish(), name="progress-finish")
            )
        if self._journal is not None:
            self._journal.record(InvocationEndEvent(pid=proc_pid, status="aborted"))
        return proc_pid

    # ------------------------------------------------------------------ #
    # Supervision
    # ------------------------------------------------------------------ #

    async def _supervise(
        self, invocation: Invocation, proc: asyncio.subprocess.Process
    ) -> None:
        stderr_task = asyncio.create_task(self._read_stderr(invocation, proc))
        try:
            await self._read_stdout(invocation, proc)
            stderr_text = await stderr_task
            returncode = await proc.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        except Exception as exc:
            stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)
            await _stop_process(proc)
            await self._handle_error(invocation, str(exc))
            return

        await self._handle_exit(invocation, returncode, stderr_text)

    async def _read_stdout(
        self, invocation: Invocation, proc: asyncio.subprocess.Process
    ) -> None:
        if proc.stdout is None:
            return
        while True:
            try:
                line_bytes = await proc.stdout.readline()
            except ValueError:
                # Line exceeded StreamReader buffer limit, skip it.
                logger.warning("agent stdout line exceeded buffer limit, skipping")
                continue
            if not line_bytes:
                break
            self._on_stdout_line(invocation, line_bytes.decode(errors="replace"))

    def _on_stdout_line(self, invocation: Invocation, text: str) -> None:
        invocation.buffer.append(text)
        if not self._slot.is_current(invocation):
            # Aborted; nothing shared may change any more.
            return

        if self._listener is not None:
            self._listener.on_output("stdout", text, invocation.pid)

        payload = parse_line(text)
        if payload is None:
            return

        session_id = payload.get("session_id")
        if (
            self._continuation_token is None
            and isinstance(session_id, str)
            and session_id
        ):
            logger.info("Captured continuation token %s", session_id)
            self._set_continuation_token(session_id)

        if invocation.resumed and payload_reports_expired_session(payload):
            invocation.session_expired = True

        event = decode_payload(payload)
        if event is None:
            return
        if invocation.renderer is not None:
            invocation.renderer.on_event(event)
        if self._journal is not None:
            self._journal.record(
                StreamEventRecord(
                    pid=invocation.pid, kind=event.kind, summary=describe_event(event)
                )
            )

    async def _read_stderr(
        self, invocation: Invocation, proc: asyncio.subprocess.Process
    ) -> str:
        if proc.stderr is None:
            return ""
        chunks: list[str] = []
        while True:
            try:
                line_bytes = await proc.stderr.readline()
            except ValueError:
                continue
            if not line_bytes:
                break
            text = line_bytes.decode(errors="replace")
            chunks.append(text)
            if not self._slot.is_current(invocation):
                continue
            if invocation.resumed and is_session_expired(text):
                invocation.session_expired = True
            if self._listener is not None:
                self._listener.on_output("stderr", text, invocation.pid)
        return "".join(chunks)

    async def _handle_exit(
        self, invocation: Invocation, returncode: int, stderr_text: str
    ) -> None:
        exit_code: int | None = returncode
        signal: int | None = None
        if returncode < 0:
            exit_code, signal = None, -returncode

        if invocation.status is InvocationStatus.ABORTED:
            self._resolve(invocation, _aborted_result(invocation, exit_code, signal))
            return

        if invocation.session_expired and invocation.continuation_token is not None:
            await self._retry_without_continuation(invocation, exit_code, signal)
            return

        invocation.status = InvocationStatus.EXITED
        if invocation.renderer is not None:
            await invocation.renderer.finish()
        if not self._slot.release(invocation):
            # Aborted while the progress panel was being cleared.
            self._resolve(invocation, _aborted_result(invocation, exit_code, signal))
            return

        if self._journal is not None:
            self._journal.record(
                InvocationEndEvent(
                    pid=invocation.pid,
                    status="exited",
                    exit_code=exit_code,
                    signal=signal,
                )
            )
        if self._listener is not None:
            self._listener.on_exit(exit_code, signal, invocation.pid)

        summary = extract_summary(invocation.raw_output, exit_code, signal)
        error: str | None = None
        if returncode != 0:
            outcome = (
                f"killed by signal {signal}"
                if signal is not None
                else f"exited with code {returncode}"
            )
            stderr_preview = format_stderr_preview(stderr_text.strip())
            error = f"Agent {outcome}."
            if stderr_preview:
                error += f" Stderr:\n  {stderr_preview}"
            record_error(
                self._journal,
                f"Agent CLI {outcome}: {stderr_text[:2048]}",
                logger=logger,
            )

        if self._bridge_enabled() and not invocation.options.collect_output:
            assert self._bridge is not None
            await self._bridge.send_assistant_response(summary, invocation.reply_to)

        self._resolve(
            invocation,
            ExecutionResult(
                success=returncode == 0,
                pid=invocation.pid,
                summary=summary,
                error=error,
                exit_code=exit_code,
                signal=signal,
            ),
        )

    async def _retry_without_continuation(
        self, invocation: Invocation, exit_code: int | None, signal: int | None
    ) -> None:
        token = invocation.continuation_token
        logger.info("Continuation token %s expired, retrying without it", token)
        if self._journal is not None and token is not None:
            self._journal.record(SessionExpiredEvent(token=token))

        self._set_continuation_token(None)
        if invocation.renderer is not None:
            await invocation.renderer.finish()
        if not self._slot.release(invocation):
            # Aborted during cleanup: the retry must not reclaim the slot.
            self._resolve(invocation, _aborted_result(invocation, exit_code, signal))
            return
        if self._journal is not None:
            self._journal.record(
                InvocationEndEvent(pid=invocation.pid, status="retried")
            )

        retry_options = replace(
            invocation.options,
            cwd=invocation.cwd,
            max_turns=invocation.max_turns,
            skip_continuation=True,
            reply_to=invocation.reply_to,
        )
        try:
            result = await self.execute(invocation.prompt, retry_options)
        except SupervisorError as exc:
            result = ExecutionResult(success=False, error=str(exc))
            if self._bridge_enabled() and not invocation.options.collect_output:
                assert self._bridge is not None
                await self._bridge.send_status(f"Error: {exc}")
        self._resolve(invocation, result)

    async def _handle_error(self, invocation: Invocation, message: str) -> None:
        if invocation.status is InvocationStatus.ABORTED:
            self._resolve(
                invocation,
                ExecutionResult(
                    success=False, pid=invocation.pid, error=message, aborted=True
                ),
            )
            return

        invocation.status = InvocationStatus.ERRORED
        if invocation.renderer is not None:
            await invocation.renderer.finish()
        if not self._slot.release(invocation):
            self._resolve(
                invocation,
                ExecutionResult(
                    success=False, pid=invocation.pid, error=message, aborted=True
                ),
            )
            return

        record_error(self._journal, message, logger=logger)
        if self._journal is not None:
            self._journal.record(
                InvocationEndEvent(pid=invocation.pid, status="errored")
            )
        if self._listener is not None:
            self._listener.on_error(message, invocation.pid)
        click.echo(f"Agent run failed: {message}", err=True)

        if self._bridge_enabled() and not invocation.options.collect_output:
            assert self._bridge is not None
            await self._bridge.send_status(f"Error: {message}")

        self._resolve(
            invocation,
            ExecutionResult(success=False, pid=invocation.pid, error=message),
        )

    # ------------------------------------------------------------------ #
    # Plumbing
    # ------------------------------------------------------------------ #

    @staticmethod
    def _resolve(invocation: Invocation, result: ExecutionResult) -> None:
        if invocation.result is not None and not invocation.result.done():
            invocation.result.set_result(result)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for every supervision and cleanup task started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

