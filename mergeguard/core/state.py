"""SQLite state for human-escalation requests, with an append-only event log.

The events table is the audit trail of every escalation decision.
hitl_requests is the queryable projection. Status transitions are applied
with a conditional UPDATE in the same transaction as their event, so two
processes resolving the same request cannot both succeed.
"""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from mergeguard.core.models import (
    HITLContext,
    HITLReason,
    HITLRequest,
    HITLStatus,
    NotificationResult,
    utc_now,
)


class EventType(str, Enum):
    """Types of events in the event log."""

    HITL_REQUESTED = "hitl_requested"
    HITL_APPROVED = "hitl_approved"
    HITL_REJECTED = "hitl_rejected"
    HITL_NOTIFIED = "hitl_notified"


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and Paths."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    subject_id: str
    event_type: EventType
    actor: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class Database:
    """SQLite database holding escalation requests and their event log."""

    SCHEMA = """
    -- Event log (immutable, source of truth for the audit trail)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        subject_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        actor TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Escalation requests (projection)
    CREATE TABLE IF NOT EXISTS hitl_requests (
        id TEXT PRIMARY KEY,
        worktree_id TEXT,
        reason TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        context JSON,
        status TEXT NOT NULL CHECK(status IN ('pending', 'approved', 'rejected')),
        created_at TIMESTAMP NOT NULL,
        resolved_at TIMESTAMP,
        resolved_by TEXT,
        resolution TEXT,
        notifications JSON
    );

    CREATE INDEX IF NOT EXISTS idx_events_subject ON events(subject_id);
    CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    CREATE INDEX IF NOT EXISTS idx_hitl_status ON hitl_requests(status);
    """

    def __init__(self, db_path: str | Path = ".mergeguard/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode so readers never block writers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection context with a 30-second busy timeout.

        Commits on clean exit, rolls back on any exception.
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Event log ---

    def _insert_event(self, conn: sqlite3.Connection, event: Event) -> int:
        cursor = conn.execute(
            """
            INSERT INTO events (subject_id, event_type, actor, payload, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.subject_id,
                event.event_type.value,
                event.actor,
                _safe_json_dumps(event.payload),
                event.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    def append_event(self, event: Event) -> int:
        with self._connect() as conn:
            return self._insert_event(conn, event)

    def get_events(
        self, subject_id: str | None = None, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Events in insertion order, optionally filtered by subject and type."""
        query = "SELECT * FROM events WHERE 1 = 1"
        params: list[Any] = []
        if subject_id is not None:
            query += " AND subject_id = ?"
            params.append(subject_id)
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            query += f" AND event_type IN ({placeholders})"
            params.extend(et.value for et in event_types)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            subject_id=row["subject_id"],
            event_type=EventType(row["event_type"]),
            actor=row["actor"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    # --- Escalation requests ---

    def create_hitl_request(self, request: HITLRequest) -> None:
        """Persist a new request and its creation event atomically."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO hitl_requests (id, worktree_id, reason, title, description,
                                           context, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    request.worktree_id,
                    request.reason.value,
                    request.title,
                    request.description,
                    _safe_json_dumps(request.context),
                    request.status.value,
                    request.created_at.isoformat(),
                ),
            )
            self._insert_event(
                conn,
                Event(
                    subject_id=request.id,
                    event_type=EventType.HITL_REQUESTED,
                    actor=request.worktree_id,
                    payload={
                        "reason": request.reason.value,
                        "title": request.title,
                        "files": request.context.files,
                    },
                    timestamp=request.created_at,
                ),
            )

    def resolve_hitl_request(
        self,
        request_id: str,
        status: HITLStatus,
        resolved_by: str,
        resolution: str | None = None,
    ) -> bool:
        """Move a pending request to a terminal status.

        Returns False if the request does not exist or is already resolved.
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot resolve a request to {status.value}")

        resolved_at = utc_now()
        event_type = (
            EventType.HITL_APPROVED if status is HITLStatus.APPROVED else EventType.HITL_REJECTED
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE hitl_requests
                SET status = ?, resolved_at = ?, resolved_by = ?, resolution = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    resolved_at.isoformat(),
                    resolved_by,
                    resolution,
                    request_id,
                    HITLStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                return False
            self._insert_event(
                conn,
                Event(
                    subject_id=request_id,
                    event_type=event_type,
                    actor=resolved_by,
                    payload={"resolution": resolution},
                    timestamp=resolved_at,
                ),
            )
        return True

    def update_hitl_notifications(self, request_id: str, result: NotificationResult) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE hitl_requests SET notifications = ? WHERE id = ?",
                (_safe_json_dumps(result), request_id),
            )
            self._insert_event(
                conn,
                Event(
                    subject_id=request_id,
                    event_type=EventType.HITL_NOTIFIED,
                    payload=result.model_dump(),
                ),
            )

    def get_hitl_request(self, request_id: str) -> HITLRequest | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM hitl_requests WHERE id = ?", (request_id,)
            ).fetchone()
        return self._row_to_hitl_request(row) if row else None

    def list_hitl_requests(self, status: HITLStatus | None = None) -> list[HITLRequest]:
        with self._connect() as conn:
            if status is not None:
                rows = conn.execute(
                    "SELECT * FROM hitl_requests WHERE status = ? ORDER BY created_at, id",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM hitl_requests ORDER BY created_at, id"
                ).fetchall()
        return [self._row_to_hitl_request(row) for row in rows]

    def _row_to_hitl_request(self, row: sqlite3.Row) -> HITLRequest:
        return HITLRequest(
            id=row["id"],
            worktree_id=row["worktree_id"],
            reason=HITLReason(row["reason"]),
            title=row["title"],
            description=row["description"] or "",
            context=(
                HITLContext.model_validate_json(row["context"])
                if row["context"]
                else HITLContext()
            ),
            status=HITLStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None,
            resolved_by=row["resolved_by"],
            resolution=row["resolution"],
            notifications=(
                NotificationResult.model_validate_json(row["notifications"])
                if row["notifications"]
                else None
            ),
        )
