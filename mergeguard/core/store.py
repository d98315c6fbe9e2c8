"""Shared-state stores for the merge ledger and the lease table.

Multiple worktree processes read and write the same files, so every
mutation runs under an exclusive filelock placed beside the data file and
every rewrite goes through a temp file + os.replace. The abstract stores
let callers swap the file strategy (or use the in-memory variants in tests)
without touching the ledger or lock algorithms.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Generator, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import ValidationError as PydanticValidationError

from mergeguard.core.errors import StoreError
from mergeguard.core.models import LockRecord

logger = logging.getLogger(__name__)


def _check_not_symlink(path: Path) -> None:
    # A symlinked state file or directory could redirect writes outside the repo
    if path.is_symlink():
        raise StoreError(f"SECURITY: {path} is a symlink; refusing to use it as shared state")


def atomic_write_text(path: Path, content: str) -> None:
    """Replace path with content so readers never observe a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        _unlink_quietly(tmp_name)
        raise


def _unlink_quietly(name: str) -> None:
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass


class _FileLocked:
    """Mixin holding the exclusive filelock for a data file."""

    LOCK_TIMEOUT: float = 30

    def __init__(self, path: Path, lock_timeout: float | None = None):
        self.path = Path(path)
        _check_not_symlink(self.path.parent)
        _check_not_symlink(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_name(self.path.name + ".lock")
        _check_not_symlink(lock_path)
        self._filelock = FileLock(
            str(lock_path),
            timeout=lock_timeout if lock_timeout is not None else self.LOCK_TIMEOUT,
        )

    @contextmanager
    def locked(self) -> Generator[None, None, None]:
        """Hold the exclusive lock. Re-entrant within one store instance."""
        try:
            self._filelock.acquire()
        except FileLockTimeout:
            logger.warning(f"Timed out after {self._filelock.timeout}s waiting for {self.path}")
            raise StoreError(
                f"Could not lock {self.path} within {self._filelock.timeout}s. "
                "Another process may be holding it."
            )
        try:
            yield
        finally:
            self._filelock.release()


# --- Ledger stores ---


class LedgerStore(ABC):
    """Append-only line log with a whole-log rewrite for status flips."""

    @abstractmethod
    def locked(self) -> AbstractContextManager[None]:
        """Context manager serializing read-modify-write sequences."""

    @abstractmethod
    def read_lines(self) -> list[str]:
        """All non-empty lines in append order."""

    @abstractmethod
    def append_line(self, line: str) -> None: ...

    @abstractmethod
    def replace_lines(self, lines: list[str]) -> None:
        """Atomically replace the whole log."""


class JsonlLedgerStore(_FileLocked, LedgerStore):
    """Newline-delimited JSON file, one record per line."""

    def read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        with self.locked():
            text = self.path.read_text(encoding="utf-8")
        return [line for line in text.split("\n") if line.strip()]

    def append_line(self, line: str) -> None:
        if "\n" in line:
            raise StoreError("Ledger lines must not contain newlines")
        with self.locked():
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())

    def replace_lines(self, lines: list[str]) -> None:
        with self.locked():
            atomic_write_text(self.path, "".join(line + "\n" for line in lines))


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger, used in tests and dry runs."""

    def __init__(self, lines: list[str] | None = None):
        self._lines = list(lines or [])
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Generator[None, None, None]:
        with self._lock:
            yield

    def read_lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def append_line(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def replace_lines(self, lines: list[str]) -> None:
        with self._lock:
            self._lines = list(lines)


# --- Lock stores ---


class LockStore(ABC):
    """Lease table keyed by resource name."""

    @abstractmethod
    def load(self) -> dict[str, LockRecord]:
        """Snapshot of the table (may include expired records)."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[dict[str, LockRecord]]:
        """Yield the mutable table; it is saved when the block exits cleanly."""


class JsonLockStore(_FileLocked, LockStore):
    """Lease table stored as a single JSON object."""

    def _read(self) -> dict[str, LockRecord]:
        if not self.path.exists():
            return {}
        # Never treat an unreadable table as empty
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            raise StoreError(f"Lock table {self.path} is corrupt: {e}") from e
        if not isinstance(raw, dict):
            raise StoreError(f"Lock table {self.path} is not a JSON object")

        table: dict[str, LockRecord] = {}
        for resource, data in raw.items():
            try:
                table[resource] = LockRecord.model_validate(data)
            except PydanticValidationError as e:
                raise StoreError(f"Malformed lock entry '{resource}' in {self.path}: {e}") from e
        return table

    def load(self) -> dict[str, LockRecord]:
        with self.locked():
            return self._read()

    @contextmanager
    def transaction(self) -> Iterator[dict[str, LockRecord]]:
        with self.locked():
            table = self._read()
            yield table
            payload = {
                resource: record.model_dump(mode="json", by_alias=True)
                for resource, record in table.items()
            }
            atomic_write_text(self.path, json.dumps(payload, indent=2, sort_keys=True) + "\n")


class InMemoryLockStore(LockStore):
    """Process-local lease table."""

    def __init__(self):
        self._table: dict[str, LockRecord] = {}
        self._lock = threading.RLock()

    def load(self) -> dict[str, LockRecord]:
        with self._lock:
            return dict(self._table)

    @contextmanager
    def transaction(self) -> Iterator[dict[str, LockRecord]]:
        with self._lock:
            table = dict(self._table)
            yield table
            self._table = table
