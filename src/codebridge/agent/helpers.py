"""Shared helper functions for the supervisor, bridge and orchestrator."""

from __future__ import annotations

import logging
import re

from codebridge.journal.models import ErrorEvent
from codebridge.journal.recorder import JournalRecorder

_SECRET_PATTERNS = (
    re.compile(r"sk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"key-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"AIza[A-Za-z0-9_\-]{16,}"),
    re.compile(r"\d{6,}:[A-Za-z0-9_\-]{30,}"),
)


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def redact_secrets(text: str) -> str:
    """Mask API keys and bot tokens that leak into error text."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


def record_error(
    journal: JournalRecorder | None,
    error_msg: str,
    context: str = "subprocess",
    logger: logging.Logger | None = None,
) -> None:
    """Log and journal an error event in one call."""
    error_msg = redact_secrets(error_msg)
    if logger:
        logger.error("%s: %s", context, error_msg)
    if journal is not None:
        journal.record(ErrorEvent(error=error_msg, context=context))
