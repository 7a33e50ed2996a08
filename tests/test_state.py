"""Tests for the persisted continuation token."""

from __future__ import annotations

import json
from pathlib import Path

from codebridge.state import STATE_FILE_NAME, TokenStore


class TestTokenStore:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert TokenStore(tmp_path).load() is None

    def test_save_and_load(self, tmp_path: Path) -> None:
        TokenStore(tmp_path / "nested").save("sess-1")
        assert TokenStore(tmp_path / "nested").load() == "sess-1"

    def test_save_keeps_other_keys(self, tmp_path: Path) -> None:
        (tmp_path / STATE_FILE_NAME).write_text(json.dumps({"other": 1}), encoding="utf-8")
        TokenStore(tmp_path).save("s")
        data = json.loads((tmp_path / STATE_FILE_NAME).read_text(encoding="utf-8"))
        assert data == {"other": 1, "session_id": "s"}

    def test_clear(self, tmp_path: Path) -> None:
        store = TokenStore(tmp_path)
        store.save("s")
        store.clear()
        assert store.load() is None
        assert store.path.exists()

    def test_clear_without_file_creates_nothing(self, tmp_path: Path) -> None:
        store = TokenStore(tmp_path / "state")
        store.clear()
        assert not store.path.exists()

    def test_corrupt_file_ignored(self, tmp_path: Path) -> None:
        (tmp_path / STATE_FILE_NAME).write_text("{not json", encoding="utf-8")
        store = TokenStore(tmp_path)
        assert store.load() is None
        store.save("fresh")
        assert store.load() == "fresh"

    def test_non_string_token_ignored(self, tmp_path: Path) -> None:
        (tmp_path / STATE_FILE_NAME).write_text(json.dumps({"session_id": 5}), encoding="utf-8")
        assert TokenStore(tmp_path).load() is None
