"""Core modules for the mergeguard coordination layer."""

from mergeguard.core.conflicts import ConflictResolver, analyze_content
from mergeguard.core.escalation import EscalationBridge, needs_human_approval
from mergeguard.core.ledger import MergeLedger
from mergeguard.core.locks import ResourceLockManager
from mergeguard.core.models import (
    AccessDecision,
    ConflictAnalysis,
    ConflictType,
    HITLReason,
    HITLRequest,
    HITLStatus,
    LockRecord,
    MergeRecord,
    Operation,
    ResolutionResult,
)
from mergeguard.core.path_guard import PathGuard
from mergeguard.core.state import Database, Event, EventType

__all__ = [
    "AccessDecision",
    "ConflictAnalysis",
    "ConflictResolver",
    "ConflictType",
    "Database",
    "EscalationBridge",
    "Event",
    "EventType",
    "HITLReason",
    "HITLRequest",
    "HITLStatus",
    "LockRecord",
    "MergeLedger",
    "MergeRecord",
    "Operation",
    "PathGuard",
    "ResolutionResult",
    "ResourceLockManager",
    "analyze_content",
    "needs_human_approval",
]
