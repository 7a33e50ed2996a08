"""Persisted continuation token, so agent conversations survive restarts."""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"


class TokenStore:
    """Key-value file holding the agent's continuation token.

    The token lives in ``<state_dir>/state.json`` under ``session_id``.
    """

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / STATE_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> str | None:
        """Return the stored token, or None if absent or unreadable."""
        data = self._read()
        token = data.get("session_id")
        if isinstance(token, str) and token:
            return token
        return None

    def save(self, token: str) -> None:
        """Persist *token*, keeping any other keys already in the file."""
        data = self._read()
        data["session_id"] = token
        self._write(data)

    def clear(self) -> None:
        """Forget the stored token."""
        data = self._read()
        if data.pop("session_id", None) is None and not self._path.exists():
            return
        self._write(data)

    def _read(self) -> dict[str, object]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _write(self, data: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data), encoding="utf-8")
