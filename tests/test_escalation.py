"""Tests for the human-escalation bridge.

This module tests EscalationBridge which provides:
- Durable request creation before any notification
- Single terminal transition per request
- Notification fan-out that cannot undo a request
- needs_human_approval policy checks
"""

from __future__ import annotations

from concurrent.futures import Future
from unittest.mock import Mock

import pytest

from mergeguard.core.errors import ValidationError
from mergeguard.core.escalation import EscalationBridge, needs_human_approval
from mergeguard.core.models import (
    HITLContext,
    HITLOption,
    HITLReason,
    HITLStatus,
    NotificationResult,
)
from mergeguard.core.state import EventType

# =============================================================================
# Request Creation Tests
# =============================================================================


class TestRequestHumanDecision:
    """Tests for request_human_decision."""

    def test_creates_pending_request(self, bridge, test_db):
        request = bridge.request_human_decision(
            reason=HITLReason.MERGE_CONFLICT,
            title="Merge conflicts require review: 1 file(s)",
            description="src/a.ts",
            context=HITLContext(
                files=["src/a.ts"], options=[HITLOption(id="ours", label="Keep ours")]
            ),
            worktree_id="wt-1",
        )

        assert request.id.startswith("hitl-")
        assert request.status == HITLStatus.PENDING
        stored = test_db.get_hitl_request(request.id)
        assert stored is not None
        assert stored.context.files == ["src/a.ts"]
        assert stored.context.options[0].label == "Keep ours"
        assert stored.worktree_id == "wt-1"

    def test_records_creation_event(self, bridge, test_db):
        request = bridge.request_human_decision("security_change", "Rotate keys")

        events = test_db.get_events(request.id)

        assert [e.event_type for e in events] == [EventType.HITL_REQUESTED]
        assert events[0].payload["reason"] == "security_change"

    def test_accepts_dict_context(self, bridge):
        request = bridge.request_human_decision(
            "architecture_fork", "Pick a queue", context={"files": ["a.py"], "diff": "+x"}
        )
        assert request.context.diff == "+x"

    def test_rejects_unknown_reason(self, bridge):
        with pytest.raises(ValueError):
            bridge.request_human_decision("coffee_break", "Need coffee")

    def test_rejects_empty_title(self, bridge):
        with pytest.raises(ValidationError):
            bridge.request_human_decision("merge_conflict", "   ")

    def test_rejects_invalid_worktree_id(self, bridge):
        with pytest.raises(ValidationError):
            bridge.request_human_decision("merge_conflict", "x", worktree_id="../../etc")

    def test_request_persisted_before_notification(self, test_db):
        """The notifier sees a request that is already durable."""
        seen: list[bool] = []
        notifier = Mock()

        def dispatch(request, on_done=None):
            seen.append(test_db.get_hitl_request(request.id) is not None)
            return Future()

        notifier.dispatch.side_effect = dispatch
        bridge = EscalationBridge(test_db, notifier=notifier)

        bridge.request_human_decision("merge_conflict", "Review")

        assert seen == [True]

    def test_notification_results_are_recorded(self, test_db):
        notifier = Mock()

        def dispatch(request, on_done=None):
            on_done(NotificationResult(slack=True))
            return Future()

        notifier.dispatch.side_effect = dispatch
        bridge = EscalationBridge(test_db, notifier=notifier)

        request = bridge.request_human_decision("merge_conflict", "Review")

        stored = test_db.get_hitl_request(request.id)
        assert stored.notifications == NotificationResult(slack=True)
        assert EventType.HITL_NOTIFIED in [e.event_type for e in test_db.get_events(request.id)]


# =============================================================================
# Decision Tests
# =============================================================================


class TestDecisions:
    """Tests for approve and reject."""

    def test_approve(self, bridge, test_db):
        request = bridge.request_human_decision("merge_conflict", "Review")

        result = bridge.approve(request.id, "alice", notes="kept ours")

        assert result.success
        assert result.message == f"HITL request {request.id} approved"
        assert result.request.status == HITLStatus.APPROVED
        assert result.request.resolved_by == "alice"
        assert result.request.resolution == "kept ours"
        assert result.request.resolved_at is not None
        events = [e.event_type for e in test_db.get_events(request.id)]
        assert events == [EventType.HITL_REQUESTED, EventType.HITL_APPROVED]

    def test_reject(self, bridge):
        request = bridge.request_human_decision("merge_conflict", "Review")

        result = bridge.reject(request.id, "bob")

        assert result.success
        assert result.request.status == HITLStatus.REJECTED

    def test_unknown_request(self, bridge):
        result = bridge.approve("hitl-missing", "alice")
        assert not result.success
        assert result.message == "HITL request not found: hitl-missing"

    def test_second_decision_is_refused(self, bridge):
        """A request resolves at most once; the first decision stands."""
        request = bridge.request_human_decision("merge_conflict", "Review")
        bridge.approve(request.id, "alice")

        result = bridge.reject(request.id, "bob")

        assert not result.success
        assert result.message == f"HITL request {request.id} already approved"
        assert bridge.get_request(request.id).resolved_by == "alice"

    def test_actor_is_required(self, bridge):
        request = bridge.request_human_decision("merge_conflict", "Review")

        result = bridge.approve(request.id, "  ")

        assert not result.success
        assert result.message == "Resolver identity is required"
        assert bridge.get_request(request.id).status == HITLStatus.PENDING

    def test_lost_race_is_reported(self, bridge, test_db, monkeypatch):
        """If another process resolves between read and update, we lose cleanly."""
        request = bridge.request_human_decision("merge_conflict", "Review")
        original = test_db.resolve_hitl_request

        def resolve_after_rival(request_id, status, resolved_by, resolution=None):
            original(request_id, HITLStatus.REJECTED, "rival")
            return original(request_id, status, resolved_by, resolution)

        monkeypatch.setattr(test_db, "resolve_hitl_request", resolve_after_rival)

        result = bridge.approve(request.id, "alice")

        assert not result.success
        assert result.message == f"HITL request {request.id} already rejected"
        assert bridge.get_request(request.id).resolved_by == "rival"

    def test_pending_and_all_listings(self, bridge):
        first = bridge.request_human_decision("merge_conflict", "One")
        second = bridge.request_human_decision("merge_conflict", "Two")
        bridge.approve(first.id, "alice")

        assert [r.id for r in bridge.get_pending_requests()] == [second.id]
        assert {r.id for r in bridge.get_all_requests()} == {first.id, second.id}


# =============================================================================
# Approval Policy Tests
# =============================================================================


class TestNeedsHumanApproval:
    """Tests for needs_human_approval."""

    @pytest.mark.parametrize(
        "sql",
        [
            "DROP TABLE users",
            "ALTER TABLE users DROP COLUMN email",
            "alter table users alter column age type bigint",
        ],
    )
    def test_destructive_schema_change(self, sql):
        check = needs_human_approval("schema_change", {"sql": sql})
        assert check.needed
        assert check.reason == HITLReason.SCHEMA_DESTRUCTIVE

    def test_additive_schema_change(self):
        check = needs_human_approval("schema_change", {"sql": "ALTER TABLE users ADD COLUMN x int"})
        assert not check.needed

    def test_major_dependency_bump(self):
        check = needs_human_approval("dependency_update", {"from": "^4.2.1", "to": "5.0.0"})
        assert check.needed
        assert check.reason == HITLReason.DEPENDENCY_MAJOR

    def test_minor_dependency_bump(self):
        check = needs_human_approval("dependency_update", {"from": "4.2.1", "to": "4.3.0"})
        assert not check.needed

    def test_delete_without_where(self):
        check = needs_human_approval("database_query", {"query": "DELETE FROM sessions"})
        assert check.needed
        assert check.reason == HITLReason.DATA_DELETION
        assert not needs_human_approval(
            "database_query", {"query": "DELETE FROM sessions WHERE expired = 1"}
        ).needed

    def test_security_change_always_needs_approval(self):
        assert needs_human_approval("security_change", {}).needed

    def test_cost_threshold(self):
        assert needs_human_approval("cost_check", {"current": 12.5, "threshold": 10}).needed
        assert not needs_human_approval("cost_check", {"current": 5, "threshold": 10}).needed
        assert not needs_human_approval("cost_check", {"current": "lots"}).needed

    def test_unknown_operation(self):
        assert not needs_human_approval("format_code", {}).needed
