"""Telegram chat bridge — mirrors agent runs into a group and takes orders.

Inbound messages from the configured chat are routed by prefix:

* ``/code <instruction>`` → ``on_command`` (direct agent execution)
* other ``/commands``     → ignored (they belong to other bots)
* anything else           → ``on_chat`` (reasoning-backend orchestration)

Outbound traffic is HTML-formatted and split to fit the 4096-unit limit.
A single "progress panel" message is edited in place while a run is live
and deleted once the final answer is posted.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from typing import Any

from codebridge.chat.poller import PollLoop
from codebridge.constants import COMMAND_PREFIX, TELEGRAM_MAX_LENGTH, MessageHandler
from codebridge.journal.models import ChatInboundEvent
from codebridge.journal.recorder import JournalRecorder

logger = logging.getLogger(__name__)

#: Telegram Bot API base URL.
TG_API = "https://api.telegram.org/bot"

#: Room kept in every chunk for the "\n… (i/N)" continuation label.
_CONT_RESERVE = 16

#: Header of the live progress panel.
_PROGRESS_HEADER = "⚙️ <b>Claude Code running…</b>"

_PARTIAL_ENTITY_RE = re.compile(r"&[a-zA-Z#0-9]*$")


class ChatBridgeError(Exception):
    """Base class for chat transport failures."""


class BridgeInitError(ChatBridgeError):
    """Credentials or target chat could not be verified."""


class TransportError(ChatBridgeError):
    """A single Bot API call failed at the network/HTTP level."""


class BridgeState(enum.Enum):
    DISABLED = "disabled"
    VERIFYING = "verifying"
    ENABLED = "enabled"


# ------------------------------------------------------------------ #
# Formatting helpers
# ------------------------------------------------------------------ #


def escape_html(text: str) -> str:
    """Escape the three characters Telegram's HTML mode cares about."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def tg_len(text: str) -> int:
    """Length as Telegram counts it (UTF-16 code units)."""
    return len(text.encode("utf-16-le")) // 2


def _take_units(text: str, budget: int) -> tuple[str, str]:
    """Split *text* after at most *budget* UTF-16 units (never mid-character)."""
    used = 0
    for index, char in enumerate(text):
        width = 2 if ord(char) > 0xFFFF else 1
        if used + width > budget:
            if index == 0:
                # A single astral char wider than the budget still has to go somewhere.
                return text[:1], text[1:]
            return text[:index], text[index:]
        used += width
    return text, ""


def split_for_telegram(
    escaped_body: str,
    header_prefix: str,
    wrap_open: str = "",
    wrap_close: str = "",
) -> list[str]:
    """Split an already-escaped body into messages that fit the size limit.

    The first message carries *header_prefix*; when more than one message
    is needed each gets a ``… (i/N)`` continuation label.  Every chunk is
    wrapped in *wrap_open*/*wrap_close* so markup stays balanced.  Lines are
    packed greedily; a line longer than a whole chunk is cut mid-line
    (never inside an HTML entity).  Chunk bodies keep their trailing
    newlines, so concatenating them gives back *escaped_body* exactly.
    """
    single = f"{header_prefix}{wrap_open}{escaped_body}{wrap_close}"
    if tg_len(single) <= TELEGRAM_MAX_LENGTH:
        return [single]

    overhead = tg_len(header_prefix) + tg_len(wrap_open) + tg_len(wrap_close)
    budget = TELEGRAM_MAX_LENGTH - overhead - _CONT_RESERVE

    lines = escaped_body.split("\n")
    segments = [line + "\n" for line in lines[:-1]]
    if lines[-1]:
        segments.append(lines[-1])

    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    def flush() -> None:
        nonlocal current, current_len
        if current:
            chunks.append("".join(current))
        current = []
        current_len = 0

    for segment in segments:
        seg_len = tg_len(segment)
        if seg_len > budget:
            flush()
            rest = segment
            while rest:
                piece, rest = _take_units(rest, budget)
                partial = _PARTIAL_ENTITY_RE.search(piece)
                if rest and partial is not None and partial.start() > 0:
                    # Never end a chunk inside an entity like ``&lt;``.
                    cut = partial.start()
                    piece, rest = piece[:cut], piece[cut:] + rest
                chunks.append(piece)
            continue
        if current_len + seg_len > budget:
            flush()
        current.append(segment)
        current_len += seg_len
    flush()

    if len(chunks) <= 1:
        body = chunks[0] if chunks else escaped_body
        return [f"{header_prefix}{wrap_open}{body}{wrap_close}"]

    total = len(chunks)
    messages: list[str] = []
    for index, body in enumerate(chunks, start=1):
        prefix = header_prefix if index == 1 else ""
        messages.append(f"{prefix}{wrap_open}{body}{wrap_close}\n… ({index}/{total})")
    return messages


def truncate_html(html: str, limit: int = TELEGRAM_MAX_LENGTH) -> str:
    """Cut *html* to *limit* units with a trailing ``…``, never mid-entity."""
    if tg_len(html) <= limit:
        return html
    head, _ = _take_units(html, limit - 1)
    head = _PARTIAL_ENTITY_RE.sub("", head)
    return head + "…"


# ------------------------------------------------------------------ #
# Bot API client
# ------------------------------------------------------------------ #


class TelegramClient:
    """Minimal Bot API client; each call runs a blocking request in a thread."""

    def __init__(self, bot_token: str, timeout: float = 10.0) -> None:
        self._base = f"{TG_API}{bot_token}/"
        self._timeout = timeout

    async def call(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """POST *payload* as JSON to *method* and return the decoded reply.

        Bot API error replies (``ok: false``) are returned, not raised.

        Raises:
            TransportError: The request could not be completed.
        """
        url = self._base + method
        body = json.dumps(payload or {}).encode("utf-8")

        def _fetch() -> bytes:
            req = urllib.request.Request(
                url,
                data=body,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            try:
                with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                    raw: bytes = resp.read()
                    return raw
            except urllib.error.HTTPError as exc:
                # 4xx replies still carry a JSON body with a description.
                return exc.read()

        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(None, _fetch)
        except (urllib.error.URLError, OSError) as exc:
            msg = f"{method} failed: {exc}"
            raise TransportError(msg) from exc

        try:
            data = json.loads(raw.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            msg = f"{method} returned a non-JSON reply"
            raise TransportError(msg) from exc
        if not isinstance(data, dict):
            msg = f"{method} returned an unexpected reply"
            raise TransportError(msg)
        return data


# ------------------------------------------------------------------ #
# Bridge
# ------------------------------------------------------------------ #


class TelegramBridge:
    """Chat bridge bound to one bot and one group.

    Lifecycle: ``disabled → verifying → enabled → disabled``.  All send
    helpers are no-ops returning ``None`` unless the bridge is enabled.
    """

    def __init__(
        self,
        *,
        poll_interval: float = 3.0,
        progress_interval: float = 2.0,
        request_timeout: float = 10.0,
        reasoning_label: str = "MiniMax M2.5",
        clock: Callable[[], float] = time.monotonic,
        client_factory: Callable[[str, float], TelegramClient] = TelegramClient,
        journal: JournalRecorder | None = None,
    ) -> None:
        self._poll_interval = poll_interval
        self._progress_interval = progress_interval
        self._request_timeout = request_timeout
        self._reasoning_label = reasoning_label
        self._clock = clock
        self._client_factory = client_factory
        self._journal = journal

        self._state = BridgeState.DISABLED
        self._client: TelegramClient | None = None
        self._chat_id: str | None = None
        self._bot_user_id: int | None = None

        # Polling.
        self._last_update_id = 0
        self._poller: PollLoop | None = None
        self._on_command: MessageHandler | None = None
        self._on_chat: MessageHandler | None = None
        self._pending_tasks: set[asyncio.Task[None]] = set()

        # Live progress panel.
        self._progress_msg_id: int | None = None
        self._last_progress_edit: float | None = None
        self._progress_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_enabled(self) -> bool:
        return self._state is BridgeState.ENABLED

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def bot_user_id(self) -> int | None:
        return self._bot_user_id

    @property
    def last_update_id(self) -> int:
        """Highest update id seen so far (the poll cursor)."""
        return self._last_update_id

    @property
    def progress_message_id(self) -> int | None:
        return self._progress_msg_id

    @property
    def pending_tasks(self) -> set[asyncio.Task[None]]:
        """Handler tasks started by dispatch that have not finished yet."""
        return self._pending_tasks

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def init(self, bot_token: str, chat_id: str) -> str | None:
        """Verify the bot token and chat access, then enable the bridge.

        Returns the bot's username.

        Raises:
            BridgeInitError: Token rejected, chat unreachable, or network
                failure.  The bridge stays disabled.
        """
        if not bot_token:
            msg = (
                "Code Mode bot token is required. "
                "Create a dedicated bot via @BotFather."
            )
            raise BridgeInitError(msg)

        self._state = BridgeState.VERIFYING
        client = self._client_factory(bot_token, self._request_timeout)
        try:
            me = await client.call("getMe")
            if not me.get("ok"):
                msg = "Invalid bot token"
                raise BridgeInitError(msg)
            result = me.get("result") or {}
            bot_id = result.get("id")
            username = result.get("username")

            chat = await client.call(
                "sendChatAction", {"chat_id": chat_id, "action": "typing"}
            )
            if not chat.get("ok"):
                msg = f"Cannot access chat {chat_id}: {chat.get('description')}"
                raise BridgeInitError(msg)
        except TransportError as exc:
            self._state = BridgeState.DISABLED
            raise BridgeInitError(str(exc)) from exc
        except BridgeInitError:
            self._state = BridgeState.DISABLED
            raise

        self._client = client
        self._chat_id = str(chat_id)
        self._bot_user_id = bot_id if isinstance(bot_id, int) else None
        self._state = BridgeState.ENABLED
        logger.info("Telegram bridge enabled for chat %s as @%s", chat_id, username)
        return username if isinstance(username, str) else None

    async def start_polling(
        self,
        on_command: MessageHandler,
        on_chat: MessageHandler | None = None,
    ) -> None:
        """Catch up on pending updates once, then poll at a fixed interval.

        The catch-up fetch means a message sent just before connecting is
        still handled rather than skipped.
        """
        self._on_command = on_command
        self._on_chat = on_chat
        if self._poller is not None and self._poller.running:
            return

        await self.poll_once()
        self._poller = PollLoop(self._poll_interval, self.poll_once, name="telegram-poll")
        await self._poller.start()

    async def stop_polling(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None
        self._on_command = None
        self._on_chat = None

    async def close(self) -> None:
        """Stop polling and return to the disabled state."""
        await self.stop_polling()
        self._state = BridgeState.DISABLED
        self._client = None
        self._chat_id = None
        self._bot_user_id = None
        self._progress_msg_id = None
        self._last_progress_edit = None

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    async def poll_once(self) -> int:
        """Fetch updates past the cursor and dispatch them.

        Returns the number of messages handed to a handler.
        """
        if self._client is None or self._chat_id is None:
            return 0

        try:
            data = await self._client.call(
                "getUpdates",
                {
                    "offset": self._last_update_id + 1,
                    "timeout": 0,
                    "allowed_updates": ["message"],
                },
            )
        except TransportError as exc:
            logger.warning("Telegram poll failed: %s", exc)
            return 0
        if not data.get("ok"):
            logger.warning("Telegram poll rejected: %s", data.get("description"))
            return 0

        updates = data.get("result")
        if not isinstance(updates, list):
            return 0

        dispatched = 0
        for update in updates:
            if not isinstance(update, dict):
                continue
            update_id = update.get("update_id")
            if not isinstance(update_id, int) or update_id <= self._last_update_id:
                continue
            self._last_update_id = update_id

            message = update.get("message")
            if not isinstance(message, dict):
                continue
            text = message.get("text")
            if not isinstance(text, str) or not text:
                continue
            chat = message.get("chat") or {}
            if str(chat.get("id")) != self._chat_id:
                continue
            sender = message.get("from") or {}
            if self._bot_user_id is not None and sender.get("id") == self._bot_user_id:
                continue

            if self.dispatch_message(text.strip()) is not None:
                dispatched += 1
        return dispatched

    def dispatch_message(self, text: str) -> str | None:
        """Route *text* to a handler task.

        Returns ``"command"`` or ``"chat"`` for the route taken, ``None``
        when the message is ignored.
        """
        if not text:
            return None

        if text.startswith(f"{COMMAND_PREFIX} ") or text.startswith(f"{COMMAND_PREFIX}\n"):
            command = text[len(COMMAND_PREFIX) + 1 :].strip()
            if not command or self._on_command is None:
                return None
            self._spawn("command", self._on_command, command)
            return "command"

        # Commands meant for other bots (/start, /help, ...).
        if text.startswith("/"):
            return None

        if self._on_chat is None:
            return None
        self._spawn("chat", self._on_chat, text)
        return "chat"

    def _spawn(self, route: str, handler: MessageHandler, text: str) -> None:
        if self._journal is not None:
            self._journal.record(ChatInboundEvent(route=route, text=text))  # type: ignore[arg-type]
        task = asyncio.create_task(handler(text), name=f"telegram-{route}")
        self._pending_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Telegram handler %s failed: %s", task.get_name(), exc, exc_info=exc)

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    async def send_user_command(self, text: str) -> int | None:
        """Post an instruction as a command block."""
        return await self._send_chunked(
            escape_html(text), "👤 <b>Command</b>\n", "<pre>", "</pre>"
        )

    async def send_assistant_response(
        self, text: str, reply_to: int | None = None
    ) -> int | None:
        """Post the agent's answer, threading the first chunk under *reply_to*."""
        return await self._send_chunked(
            escape_html(text), "🤖 <b>Claude Code</b>\n", "<pre>", "</pre>", reply_to
        )

    async def send_orchestrator_message(
        self, text: str, reply_to: int | None = None
    ) -> int | None:
        """Post a reasoning-backend reply."""
        header = f"🧠 <b>{escape_html(self._reasoning_label)}</b>\n"
        return await self._send_chunked(escape_html(text), header, "", "", reply_to)

    async def send_status(self, text: str) -> int | None:
        """Post a short informational line."""
        return await self._send_chunked(escape_html(text), "ℹ️ ", "", "")

    async def _send_chunked(
        self,
        escaped: str,
        header: str,
        wrap_open: str,
        wrap_close: str,
        reply_to: int | None = None,
    ) -> int | None:
        if not self.is_enabled:
            return None
        first_id: int | None = None
        chunks = split_for_telegram(escaped, header, wrap_open, wrap_close)
        for index, chunk in enumerate(chunks):
            msg_id = await self._send_message(chunk, reply_to if index == 0 else None)
            if index == 0:
                first_id = msg_id
        return first_id

    # ------------------------------------------------------------------ #
    # Live progress
    # ------------------------------------------------------------------ #

    async def update_progress(self, lines: list[str], force: bool = False) -> int | None:
        """Create or edit the live progress panel.

        Edits closer together than the progress interval are skipped
        (returning the current panel id) unless *force* is set.  If the
        panel cannot be edited (e.g. it was deleted), a new one replaces it.
        """
        if not self.is_enabled:
            return None

        async with self._progress_lock:
            now = self._clock()
            if (
                not force
                and self._last_progress_edit is not None
                and now - self._last_progress_edit < self._progress_interval
            ):
                return self._progress_msg_id

            body = "\n".join(escape_html(line) for line in lines)
            html = truncate_html(f"{_PROGRESS_HEADER}\n\n{body}")

            if self._progress_msg_id is not None:
                if await self._edit_message(self._progress_msg_id, html):
                    self._last_progress_edit = now
                    return self._progress_msg_id
                logger.debug("Progress panel edit failed, posting a new one")

            msg_id = await self._send_message(html)
            if msg_id is not None:
                self._progress_msg_id = msg_id
                self._last_progress_edit = now
            return msg_id

    async def finish_progress(self) -> None:
        """Delete the progress panel so the final answer stands on its own."""
        async with self._progress_lock:
            if self._progress_msg_id is None:
                return
            msg_id = self._progress_msg_id
            self._progress_msg_id = None
            self._last_progress_edit = None
            await self._delete_message(msg_id)

    # ------------------------------------------------------------------ #
    # Bot API primitives
    # ------------------------------------------------------------------ #

    async def _send_message(self, html: str, reply_to: int | None = None) -> int | None:
        if self._client is None or self._chat_id is None:
            return None
        payload: dict[str, Any] = {
            "chat_id": self._chat_id,
            "text": html,
            "parse_mode": "HTML",
        }
        if reply_to:
            payload["reply_parameters"] = {"message_id": reply_to}
        try:
            data = await self._client.call("sendMessage", payload)
        except TransportError as exc:
            logger.warning("sendMessage error: %s", exc)
            return None
        result = data.get("result")
        if data.get("ok") and isinstance(result, dict):
            msg_id = result.get("message_id")
            return msg_id if isinstance(msg_id, int) else None
        logger.warning("sendMessage failed: %s", data.get("description"))
        return None

    async def _edit_message(self, message_id: int, html: str) -> bool:
        if self._client is None or self._chat_id is None:
            return False
        try:
            data = await self._client.call(
                "editMessageText",
                {
                    "chat_id": self._chat_id,
                    "message_id": message_id,
                    "text": html,
                    "parse_mode": "HTML",
                },
            )
        except TransportError as exc:
            logger.warning("editMessageText error: %s", exc)
            return False
        if data.get("ok"):
            return True
        description = str(data.get("description") or "")
        # Unchanged content is still a live panel.
        if "not modified" in description:
            return True
        logger.warning("editMessageText failed: %s", description)
        return False

    async def _delete_message(self, message_id: int) -> bool:
        if self._client is None or self._chat_id is None:
            return False
        try:
            data = await self._client.call(
                "deleteMessage",
                {"chat_id": self._chat_id, "message_id": message_id},
            )
        except TransportError as exc:
            logger.warning("deleteMessage error: %s", exc)
            return False
        if not data.get("ok"):
            logger.warning("deleteMessage failed: %s", data.get("description"))
            return False
        return True
