"""Human-in-the-loop escalation for decisions automation should not make.

USAGE:
    bridge = EscalationBridge(db, notifier=NotificationDispatcher(config))
    request = bridge.request_human_decision(
        reason=HITLReason.MERGE_CONFLICT,
        title="Merge conflicts require review",
        description="...",
        context=HITLContext(files=["src/app.ts"]),
    )
    # later, from a CLI or webhook handler:
    bridge.approve(request.id, actor="alice", notes="kept ours")

request_human_decision persists the request before anything else and never
waits for a human. Notification fan-out happens afterwards and cannot undo
the request.
"""

import logging
import re
import secrets
import time
from typing import Any

from mergeguard.core.errors import ValidationError
from mergeguard.core.models import (
    ApprovalCheck,
    DecisionResult,
    HITLContext,
    HITLReason,
    HITLRequest,
    HITLStatus,
    NotificationResult,
)
from mergeguard.core.notifications import NotificationDispatcher
from mergeguard.core.state import Database
from mergeguard.core.validation import validate_identifier

logger = logging.getLogger(__name__)


def _new_request_id() -> str:
    return f"hitl-{int(time.time() * 1000)}-{secrets.token_hex(2)}"


class EscalationBridge:
    """Creates, lists and resolves HITL requests."""

    def __init__(self, db: Database, notifier: NotificationDispatcher | None = None):
        self.db = db
        self.notifier = notifier

    def request_human_decision(
        self,
        reason: HITLReason | str,
        title: str,
        description: str = "",
        context: HITLContext | dict[str, Any] | None = None,
        worktree_id: str | None = None,
    ) -> HITLRequest:
        """Persist a pending request and start notification fan-out.

        Returns as soon as the request is durable.
        """
        if worktree_id is not None:
            validate_identifier(worktree_id, "worktree_id")
        if not title.strip():
            raise ValidationError("title is required", "title", title)
        if isinstance(context, dict):
            context = HITLContext.model_validate(context)

        request = HITLRequest(
            id=_new_request_id(),
            worktree_id=worktree_id,
            reason=HITLReason(reason),
            title=title,
            description=description,
            context=context or HITLContext(),
        )
        self.db.create_hitl_request(request)
        logger.info(
            f"HITL request {request.id} created ({request.reason.value}): {request.title}"
        )

        if self.notifier is not None:
            self.notifier.dispatch(request, on_done=self._record_notifications(request.id))
        return request

    def _record_notifications(self, request_id: str):
        def record(result: NotificationResult) -> None:
            self.db.update_hitl_notifications(request_id, result)

        return record

    def _resolve(
        self, request_id: str, status: HITLStatus, actor: str, notes: str | None
    ) -> DecisionResult:
        if not actor or not actor.strip():
            return DecisionResult(success=False, message="Resolver identity is required")

        existing = self.db.get_hitl_request(request_id)
        if existing is None:
            return DecisionResult(success=False, message=f"HITL request not found: {request_id}")
        if existing.status.is_terminal:
            return DecisionResult(
                success=False,
                message=f"HITL request {request_id} already {existing.status.value}",
                request=existing,
            )

        if not self.db.resolve_hitl_request(request_id, status, actor, notes):
            # Lost a race with another resolver between the read and the update
            current = self.db.get_hitl_request(request_id)
            state = current.status.value if current else "missing"
            return DecisionResult(
                success=False,
                message=f"HITL request {request_id} already {state}",
                request=current,
            )

        logger.info(f"HITL request {request_id} {status.value} by {actor}")
        return DecisionResult(
            success=True,
            message=f"HITL request {request_id} {status.value}",
            request=self.db.get_hitl_request(request_id),
        )

    def approve(self, request_id: str, actor: str, notes: str | None = None) -> DecisionResult:
        return self._resolve(request_id, HITLStatus.APPROVED, actor, notes)

    def reject(self, request_id: str, actor: str, notes: str | None = None) -> DecisionResult:
        return self._resolve(request_id, HITLStatus.REJECTED, actor, notes)

    def get_request(self, request_id: str) -> HITLRequest | None:
        return self.db.get_hitl_request(request_id)

    def get_pending_requests(self) -> list[HITLRequest]:
        return self.db.list_hitl_requests(HITLStatus.PENDING)

    def get_all_requests(self) -> list[HITLRequest]:
        return self.db.list_hitl_requests()


_DESTRUCTIVE_SQL = re.compile(r"\bDROP\b|\bALTER\b.*\bDROP\b|\bALTER\b.*\bTYPE\b", re.I | re.S)
_DELETE_FROM = re.compile(r"\bDELETE\s+FROM\b", re.I)
_WHERE = re.compile(r"\bWHERE\b", re.I)


def _major(version: str) -> int | None:
    match = re.match(r"\s*[~^v=]*(\d+)", version)
    return int(match.group(1)) if match else None


def needs_human_approval(operation_type: str, details: dict[str, Any]) -> ApprovalCheck:
    """Decide whether an operation must be routed to a human first."""
    match operation_type:
        case "schema_change":
            if _DESTRUCTIVE_SQL.search(str(details.get("sql", ""))):
                return ApprovalCheck(
                    needed=True,
                    reason=HITLReason.SCHEMA_DESTRUCTIVE,
                    message="Destructive schema change detected (DROP/ALTER TYPE)",
                )
        case "dependency_update":
            before = str(details.get("from", ""))
            after = str(details.get("to", ""))
            from_major, to_major = _major(before), _major(after)
            if from_major is not None and to_major is not None and to_major > from_major:
                return ApprovalCheck(
                    needed=True,
                    reason=HITLReason.DEPENDENCY_MAJOR,
                    message=f"Major version bump: {before} → {after}",
                )
        case "database_query":
            query = str(details.get("query", ""))
            if _DELETE_FROM.search(query) and not _WHERE.search(query):
                return ApprovalCheck(
                    needed=True,
                    reason=HITLReason.DATA_DELETION,
                    message="DELETE without WHERE clause detected",
                )
        case "security_change":
            return ApprovalCheck(
                needed=True,
                reason=HITLReason.SECURITY_CHANGE,
                message="Security-related change requires review",
            )
        case "cost_check":
            try:
                current = float(details.get("current", 0))
                threshold = float(details.get("threshold", 0))
            except (TypeError, ValueError):
                return ApprovalCheck(needed=False, message="Cost values are not numeric")
            if current > threshold:
                return ApprovalCheck(
                    needed=True,
                    reason=HITLReason.COST_THRESHOLD,
                    message=f"Cost threshold exceeded: {current:g} > {threshold:g}",
                )

    return ApprovalCheck(needed=False)
