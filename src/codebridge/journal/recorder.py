"""Journal recorder — append-only JSONL writer for bridge activity."""

from __future__ import annotations

import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from codebridge.journal.models import JournalEvent


class JournalRecorder:
    """Records journal events to an append-only JSONL file.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every event.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._closed = False
        self._journal_id = uuid.uuid4().hex[:12]

        journal_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        self._path = journal_dir / f"{date_str}_{self._journal_id}.jsonl"
        self._fh: IO[str] | None = self._path.open("a", encoding="utf-8")

    @property
    def journal_id(self) -> str:
        """Unique journal identifier (12-char hex)."""
        return self._journal_id

    @property
    def path(self) -> Path:
        """Path to the JSONL file."""
        return self._path

    @property
    def event_count(self) -> int:
        """Number of events recorded so far."""
        return self._seq

    def record(self, event: JournalEvent) -> None:
        """Stamp ``ts``/``seq`` on *event* and append it to the file.

        Silently drops events after the recorder has been closed.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            event.seq = self._seq
            event.ts = _iso_now()
            self._seq += 1
            self._fh.write(event.model_dump_json() + "\n")
            self._fh.flush()

    def close(self) -> None:
        """Close the file handle.  Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fh is not None and not self._fh.closed:
                self._fh.close()
            self._fh = None


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
