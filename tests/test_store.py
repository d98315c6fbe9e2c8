"""Tests for the shared-state stores."""

from __future__ import annotations

import os
import threading

import pytest

from mergeguard.core.errors import StoreError
from mergeguard.core.store import (
    InMemoryLedgerStore,
    JsonlLedgerStore,
    atomic_write_text,
)


class TestAtomicWrite:
    def test_replaces_content_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "data.json"
        path.write_text("old")

        atomic_write_text(path, "new")

        assert path.read_text() == "new"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["data.json"]


class TestJsonlLedgerStore:
    """Tests for the file-backed ledger."""

    def test_missing_file_reads_empty(self, tmp_path):
        assert JsonlLedgerStore(tmp_path / "ledger.jsonl").read_lines() == []

    def test_append_and_read(self, tmp_path):
        store = JsonlLedgerStore(tmp_path / "ledger.jsonl")
        store.append_line('{"id": 1}')
        store.append_line('{"id": 2}')

        assert store.read_lines() == ['{"id": 1}', '{"id": 2}']
        assert (tmp_path / "ledger.jsonl").read_text() == '{"id": 1}\n{"id": 2}\n'

    def test_blank_lines_are_ignored(self, tmp_path):
        path = tmp_path / "ledger.jsonl"
        path.write_text('{"id": 1}\n\n   \n{"id": 2}')

        assert JsonlLedgerStore(path).read_lines() == ['{"id": 1}', '{"id": 2}']

    def test_embedded_newline_is_refused(self, tmp_path):
        store = JsonlLedgerStore(tmp_path / "ledger.jsonl")
        with pytest.raises(StoreError):
            store.append_line('{"a": 1}\n{"b": 2}')

    def test_replace_lines(self, tmp_path):
        store = JsonlLedgerStore(tmp_path / "ledger.jsonl")
        store.append_line("a")

        store.replace_lines(["b", "c"])

        assert store.read_lines() == ["b", "c"]

    def test_lock_is_reentrant(self, tmp_path):
        store = JsonlLedgerStore(tmp_path / "ledger.jsonl")
        with store.locked():
            store.append_line("a")
            assert store.read_lines() == ["a"]

    def test_lock_timeout_raises_store_error(self, tmp_path):
        path = tmp_path / "ledger.jsonl"
        holder = JsonlLedgerStore(path)
        waiter = JsonlLedgerStore(path, lock_timeout=0.1)
        acquired = threading.Event()
        release = threading.Event()

        def hold() -> None:
            with holder.locked():
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        acquired.wait(5)
        try:
            with pytest.raises(StoreError, match="Could not lock"):
                waiter.append_line("x")
        finally:
            release.set()
            thread.join()

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlinked_ledger_is_refused(self, tmp_path):
        target = tmp_path / "elsewhere.jsonl"
        target.write_text("")
        link = tmp_path / "ledger.jsonl"
        link.symlink_to(target)

        with pytest.raises(StoreError, match="symlink"):
            JsonlLedgerStore(link)

    def test_concurrent_appends_are_not_lost(self, tmp_path):
        path = tmp_path / "ledger.jsonl"

        def append_many(n: int) -> None:
            store = JsonlLedgerStore(path)
            for i in range(25):
                store.append_line(f'{{"writer": {n}, "i": {i}}}')

        threads = [threading.Thread(target=append_many, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(JsonlLedgerStore(path).read_lines()) == 100


class TestInMemoryLedgerStore:
    def test_read_returns_copy(self):
        store = InMemoryLedgerStore(["a"])
        store.read_lines().append("b")
        assert store.read_lines() == ["a"]
