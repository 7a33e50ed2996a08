"""Shared constants and type aliases for the codebridge runtime."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

#: Prefix that routes a chat message straight to the coding agent.
COMMAND_PREFIX = "/code"

#: Hard per-message size limit of the chat transport (UTF-16 code units).
TELEGRAM_MAX_LENGTH = 4096

#: Default agent turn budget for one invocation.
DEFAULT_MAX_TURNS = 50

#: Callback type for chat message handlers.
MessageHandler = Callable[[str], Awaitable[None]]
