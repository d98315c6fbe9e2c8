"""Time-boxed exclusive leases over named shared resources.

A lease expires on its own so a crashed agent cannot block other worktrees
forever. There is no heartbeat: a holder whose operation outlives the TTL
must call try_acquire again (re-entry refreshes the lease) or risk losing
exclusivity mid-operation.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from mergeguard.core.errors import ValidationError
from mergeguard.core.models import LockRecord, LockResult, utc_now
from mergeguard.core.store import LockStore
from mergeguard.core.validation import validate_identifier

logger = logging.getLogger(__name__)

# Reserved resource consulted by the path policy for the shared schema file
SCHEMA_RESOURCE = "schema"

# Migrations can be slow
DEFAULT_LOCK_TTL = timedelta(minutes=30)


class ResourceLockManager:
    """Non-blocking lease manager over a LockStore.

    USAGE:
        manager = ResourceLockManager(JsonLockStore(state_dir / "locks.json"))
        result = manager.try_acquire("schema", "wt-auth", "migrate")
        if not result.acquired:
            print(result.message)  # names the current holder
    """

    def __init__(
        self,
        store: LockStore,
        ttl: timedelta = DEFAULT_LOCK_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ttl = ttl
        self._clock = clock

    def try_acquire(
        self,
        resource: str,
        worktree_id: str,
        operation: str = "edit",
        ttl: timedelta | None = None,
    ) -> LockResult:
        """Grant a lease unless another worktree holds an unexpired one.

        Returns the existing holder's record unchanged on contention.
        """
        try:
            validate_identifier(resource, "resource")
            validate_identifier(worktree_id, "worktree_id")
        except ValidationError as e:
            return LockResult(acquired=False, message=str(e))

        lease = self.ttl if ttl is None else ttl
        if lease <= timedelta(0):
            return LockResult(acquired=False, message="Lease duration must be positive")

        with self.store.transaction() as table:
            now = self._clock()
            existing = table.get(resource)

            if existing is not None and existing.is_expired(now):
                logger.info(
                    f"Lease on '{resource}' held by '{existing.worktree_id}' expired at "
                    f"{existing.expires_at.isoformat()}; reclaiming"
                )
                existing = None

            if existing is not None and existing.worktree_id != worktree_id:
                return LockResult(
                    acquired=False,
                    holder=existing,
                    message=(
                        f"Resource '{resource}' locked by worktree '{existing.worktree_id}' "
                        f"for {existing.operation} since {existing.acquired_at.isoformat()}"
                    ),
                )

            record = LockRecord(
                resource=resource,
                worktree_id=worktree_id,
                operation=operation,
                acquired_at=now,
                expires_at=now + lease,
            )
            table[resource] = record

        action = "refreshed" if existing is not None else "acquired"
        logger.info(f"Lease on '{resource}' {action} by '{worktree_id}' for {operation}")
        return LockResult(acquired=True, holder=record, message=f"Lock {action} for {operation}")

    def release(self, resource: str, worktree_id: str) -> bool:
        """Drop the caller's own lease.

        Returns True if the resource is now free of the caller's lease (including
        when nothing was held), False if another worktree holds it.
        """
        with self.store.transaction() as table:
            existing = table.get(resource)
            if existing is None:
                return True
            if existing.is_expired(self._clock()):
                del table[resource]
                return True
            if existing.worktree_id != worktree_id:
                logger.warning(
                    f"'{worktree_id}' tried to release '{resource}' "
                    f"held by '{existing.worktree_id}'"
                )
                return False
            del table[resource]

        logger.info(f"Lease on '{resource}' released by '{worktree_id}'")
        return True

    def query(self, resource: str) -> LockRecord | None:
        """Current unexpired holder of resource, purging an expired record."""
        record = self.store.load().get(resource)
        if record is None:
            return None
        if not record.is_expired(self._clock()):
            return record

        with self.store.transaction() as table:
            current = table.get(resource)
            if current is not None and current.is_expired(self._clock()):
                del table[resource]
                return None
            return current

    def is_locked(self, resource: str) -> bool:
        return self.query(resource) is not None

    def locked_by_other(self, resource: str, worktree_id: str) -> LockRecord | None:
        """Holder of resource if it is someone other than worktree_id."""
        holder = self.query(resource)
        if holder is None or holder.worktree_id == worktree_id:
            return None
        return holder

    def list_locks(self) -> list[LockRecord]:
        now = self._clock()
        return sorted(
            (r for r in self.store.load().values() if not r.is_expired(now)),
            key=lambda r: r.resource,
        )
