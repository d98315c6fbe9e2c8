"""Data models for the mergeguard coordination core.

Uses Pydantic for schema-enforced records. Records that are persisted to
shared files (merge ledger, lock table) keep camelCase field names on disk
so ledgers written by other tools stay readable.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Operation(str, Enum):
    """File operation a worktree attempts."""

    READ = "read"
    WRITE = "write"
    EDIT = "edit"

    @property
    def mutates(self) -> bool:
        return self in (Operation.WRITE, Operation.EDIT)


# --- Conflict Resolution Models ---


class ConflictType(str, Enum):
    """Classification of a conflicted file, ordered by severity."""

    FORMATTING = "formatting"
    CONTENT = "content"
    IMPORT = "import"
    PLACEMENT = "placement"
    LOGIC = "logic"

    @property
    def severity(self) -> int:
        return _CONFLICT_SEVERITY[self]


_CONFLICT_SEVERITY = {
    ConflictType.FORMATTING: 0,
    ConflictType.CONTENT: 1,
    ConflictType.IMPORT: 2,
    ConflictType.PLACEMENT: 3,
    ConflictType.LOGIC: 4,
}


class ConflictMarker(BaseModel):
    """One <<<<<<< / ======= / >>>>>>> block.

    Line numbers are 0-based and point at the opening and closing marker lines.
    """

    model_config = ConfigDict(frozen=True)

    start_line: int
    end_line: int
    ours: str
    theirs: str
    ancestor: str | None = None
    ours_label: str = ""
    theirs_label: str = ""


class ConflictAnalysis(BaseModel):
    """Classification of one conflicted file."""

    model_config = ConfigDict(frozen=True)

    file: str
    conflicts: list[ConflictMarker] = Field(default_factory=list)
    conflict_type: ConflictType
    auto_resolvable: bool
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_resolution: str | None = None
    reason: str


class ResolutionResult(BaseModel):
    """Outcome of one resolution pass over a batch of files."""

    resolved: list[str] = Field(default_factory=list)
    escalated: list[str] = Field(default_factory=list)
    hitl_request_id: str | None = None


# --- Lock Models ---


class LockRecord(BaseModel):
    """Exclusive lease on a named resource."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    resource: str
    worktree_id: str
    operation: str
    acquired_at: datetime
    expires_at: datetime

    @field_validator("acquired_at", "expires_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utc_now())


class LockResult(BaseModel):
    """Result of a lease acquisition attempt."""

    acquired: bool
    holder: LockRecord | None = None
    message: str


# --- Path Policy Models ---


class ProtectedPattern(BaseModel):
    """A glob rule restricting some operations on matching paths."""

    pattern: str
    operations: list[Operation]
    message: str | None = None


class AccessDecision(BaseModel):
    """Allow/deny answer for one attempted file operation."""

    allowed: bool
    message: str | None = None


# --- Merge Ledger Models ---


class MergeStatus(str, Enum):
    """Lifecycle of a ledger entry."""

    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


class MergeRecord(BaseModel):
    """One completed (or rolled-back) merge."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    worktree_id: str
    branch: str
    target_branch: str
    pre_merge_commit: str
    post_merge_commit: str
    merged_by: str = "unknown"
    status: MergeStatus = MergeStatus.COMPLETED
    rollback_commit: str | None = None
    rollback_timestamp: datetime | None = None
    rollback_reason: str | None = None

    @field_validator("timestamp", "rollback_timestamp")
    @classmethod
    def ensure_utc(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class RollbackResult(BaseModel):
    """Outcome of a rollback attempt."""

    success: bool
    message: str
    new_commit: str | None = None


# --- Human Escalation Models ---


class HITLReason(str, Enum):
    """Why a decision was deferred to a human."""

    SCHEMA_DESTRUCTIVE = "schema_destructive"
    DEPENDENCY_MAJOR = "dependency_major"
    SECURITY_CHANGE = "security_change"
    DATA_DELETION = "data_deletion"
    MERGE_CONFLICT = "merge_conflict"
    COST_THRESHOLD = "cost_threshold"
    LOOP_DETECTED = "loop_detected"
    TEST_FAILURE_AMBIGUOUS = "test_failure_ambiguous"
    ARCHITECTURE_FORK = "architecture_fork"


class HITLStatus(str, Enum):
    """Status of a human decision request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not HITLStatus.PENDING


class HITLOption(BaseModel):
    """A labeled choice offered to the human."""

    id: str
    label: str
    description: str = ""


class HITLContext(BaseModel):
    """Material attached to a request so the human can decide."""

    files: list[str] = Field(default_factory=list)
    diff: str | None = None
    options: list[HITLOption] = Field(default_factory=list)


class NotificationResult(BaseModel):
    """Per-channel delivery flags for one request."""

    slack: bool = False
    discord: bool = False
    email: bool = False


class HITLRequest(BaseModel):
    """A decision that needs a human."""

    id: str
    worktree_id: str | None = None
    reason: HITLReason
    title: str
    description: str = ""
    context: HITLContext = Field(default_factory=HITLContext)
    status: HITLStatus = HITLStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    notifications: NotificationResult | None = None


class DecisionResult(BaseModel):
    """Outcome of approving or rejecting a request."""

    success: bool
    message: str
    request: HITLRequest | None = None


class ApprovalCheck(BaseModel):
    """Whether an operation should be routed to a human first."""

    needed: bool
    reason: HITLReason | None = None
    message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
