"""Chat transport bridge (Telegram) for remote control of the coding agent."""

from codebridge.chat.poller import PollLoop
from codebridge.chat.telegram import (
    BridgeInitError,
    BridgeState,
    ChatBridgeError,
    TelegramBridge,
    TelegramClient,
    TransportError,
    escape_html,
    split_for_telegram,
    tg_len,
    truncate_html,
)

__all__ = [
    "BridgeInitError",
    "BridgeState",
    "ChatBridgeError",
    "PollLoop",
    "TelegramBridge",
    "TelegramClient",
    "TransportError",
    "escape_html",
    "split_for_telegram",
    "tg_len",
    "truncate_html",
]
