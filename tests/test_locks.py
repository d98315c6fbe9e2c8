"""Tests for ResourceLockManager leases.

Covers:
- Mutual exclusion between worktrees
- Re-entry refresh, expiry and reclaim
- Release semantics
- Cross-process safety of the file-backed lease table
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta

import pytest

from mergeguard.core.errors import StoreError
from mergeguard.core.locks import SCHEMA_RESOURCE, ResourceLockManager
from mergeguard.core.store import InMemoryLockStore, JsonLockStore


class FakeClock:
    """Manually advanced clock for lease expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(clock) -> ResourceLockManager:
    return ResourceLockManager(InMemoryLockStore(), ttl=timedelta(minutes=30), clock=clock)


# =============================================================================
# Acquisition Tests
# =============================================================================


class TestTryAcquire:
    """Tests for try_acquire."""

    def test_acquire_free_resource(self, manager, clock):
        result = manager.try_acquire("schema", "wt-a", "migrate")

        assert result.acquired
        assert result.holder is not None
        assert result.holder.worktree_id == "wt-a"
        assert result.holder.expires_at == clock.now + timedelta(minutes=30)
        assert result.message == "Lock acquired for migrate"

    def test_second_worktree_is_refused_with_holder(self, manager):
        manager.try_acquire("schema", "wt-a", "migrate")

        result = manager.try_acquire("schema", "wt-b", "edit")

        assert not result.acquired
        assert result.holder is not None
        assert result.holder.worktree_id == "wt-a"
        assert "locked by worktree 'wt-a' for migrate" in (result.message or "")

    def test_refused_attempt_leaves_record_unchanged(self, manager):
        first = manager.try_acquire("schema", "wt-a", "migrate").holder

        manager.try_acquire("schema", "wt-b", "edit")

        assert manager.query("schema") == first

    def test_reentry_refreshes_lease(self, manager, clock):
        manager.try_acquire("schema", "wt-a", "migrate")
        clock.advance(minutes=20)

        result = manager.try_acquire("schema", "wt-a", "migrate")

        assert result.acquired
        assert result.message == "Lock refreshed for migrate"
        assert result.holder is not None
        assert result.holder.expires_at == clock.now + timedelta(minutes=30)

    def test_expired_lease_is_reclaimed(self, manager, clock):
        manager.try_acquire("schema", "wt-a", "migrate")
        clock.advance(minutes=31)

        result = manager.try_acquire("schema", "wt-b", "edit")

        assert result.acquired
        assert manager.query("schema").worktree_id == "wt-b"

    def test_lease_expires_exactly_at_ttl(self, manager, clock):
        manager.try_acquire("schema", "wt-a")
        clock.advance(minutes=30)

        assert not manager.is_locked("schema")

    def test_custom_ttl(self, manager, clock):
        result = manager.try_acquire("schema", "wt-a", ttl=timedelta(seconds=5))
        assert result.holder.expires_at == clock.now + timedelta(seconds=5)

    def test_non_positive_ttl_is_refused(self, manager):
        result = manager.try_acquire("schema", "wt-a", ttl=timedelta(0))

        assert not result.acquired
        assert result.message == "Lease duration must be positive"
        assert not manager.is_locked("schema")

    @pytest.mark.parametrize("worktree_id", ["", "-rf", "../x", "a b"])
    def test_invalid_worktree_id_is_refused(self, manager, worktree_id):
        result = manager.try_acquire("schema", worktree_id)

        assert not result.acquired
        assert "worktree_id" in (result.message or "")

    def test_resources_are_independent(self, manager):
        assert manager.try_acquire("schema", "wt-a").acquired
        assert manager.try_acquire("package-lock", "wt-b").acquired


# =============================================================================
# Release and Query Tests
# =============================================================================


class TestReleaseAndQuery:
    """Tests for release, query and listing."""

    def test_release_by_holder(self, manager):
        manager.try_acquire("schema", "wt-a")

        assert manager.release("schema", "wt-a")
        assert not manager.is_locked("schema")

    def test_release_by_other_worktree_is_refused(self, manager):
        manager.try_acquire("schema", "wt-a")

        assert not manager.release("schema", "wt-b")
        assert manager.query("schema").worktree_id == "wt-a"

    def test_release_of_free_resource_succeeds(self, manager):
        assert manager.release("schema", "wt-a")

    def test_release_of_expired_lease_by_anyone(self, manager, clock):
        manager.try_acquire("schema", "wt-a")
        clock.advance(hours=1)

        assert manager.release("schema", "wt-b")

    def test_query_purges_expired_record(self, manager, clock):
        manager.try_acquire("schema", "wt-a")
        clock.advance(hours=1)

        assert manager.query("schema") is None
        assert "schema" not in manager.store.load()

    def test_locked_by_other(self, manager):
        manager.try_acquire(SCHEMA_RESOURCE, "wt-a")

        assert manager.locked_by_other(SCHEMA_RESOURCE, "wt-a") is None
        assert manager.locked_by_other(SCHEMA_RESOURCE, "wt-b").worktree_id == "wt-a"

    def test_list_locks_skips_expired(self, manager, clock):
        manager.try_acquire("b-res", "wt-a", ttl=timedelta(minutes=5))
        manager.try_acquire("a-res", "wt-b")
        clock.advance(minutes=10)

        assert [r.resource for r in manager.list_locks()] == ["a-res"]


# =============================================================================
# File-Backed Lease Table Tests
# =============================================================================


class TestJsonLockStore:
    """Tests for the shared lease table on disk."""

    def test_leases_visible_across_managers(self, tmp_path):
        path = tmp_path / ".mergeguard" / "locks.json"
        first = ResourceLockManager(JsonLockStore(path))
        second = ResourceLockManager(JsonLockStore(path))

        assert first.try_acquire("schema", "wt-a").acquired
        assert not second.try_acquire("schema", "wt-b").acquired

    def test_on_disk_format_uses_camel_case(self, tmp_path):
        path = tmp_path / "locks.json"
        ResourceLockManager(JsonLockStore(path)).try_acquire("schema", "wt-a", "migrate")

        data = json.loads(path.read_text())

        assert data["schema"]["worktreeId"] == "wt-a"
        assert data["schema"]["operation"] == "migrate"
        assert "expiresAt" in data["schema"]

    def test_corrupt_table_fails_closed(self, tmp_path):
        """A truncated table raises instead of letting another worktree in."""
        path = tmp_path / "locks.json"
        ResourceLockManager(JsonLockStore(path)).try_acquire("schema", "wt-a", "migrate")
        original = path.read_text()
        path.write_text(original[:-5])

        with pytest.raises(StoreError, match="corrupt"):
            ResourceLockManager(JsonLockStore(path)).try_acquire("schema", "wt-b")

        assert path.read_text() == original[:-5]

    @pytest.mark.parametrize(
        "content",
        ["[]", '{"schema": {"worktreeId": "wt-a"}}'],
        ids=["not-an-object", "malformed-entry"],
    )
    def test_unreadable_table_raises(self, tmp_path, content):
        path = tmp_path / "locks.json"
        path.write_text(content)

        with pytest.raises(StoreError):
            ResourceLockManager(JsonLockStore(path)).query("schema")

    @pytest.mark.slow
    def test_concurrent_acquire_has_single_winner(self, tmp_path):
        """Racing worktrees: exactly one lease is granted."""
        path = tmp_path / "locks.json"
        results: dict[str, bool] = {}
        barrier = threading.Barrier(8)

        def attempt(worktree_id: str) -> None:
            manager = ResourceLockManager(JsonLockStore(path))
            barrier.wait()
            results[worktree_id] = manager.try_acquire("schema", worktree_id).acquired

        threads = [threading.Thread(target=attempt, args=(f"wt-{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(results.values()) == 1
