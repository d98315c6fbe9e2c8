"""Append-only ledger of merges with a git-backed rollback path.

Each completed merge is one JSON line in .mergeguard/merge-ledger.jsonl.
Lines are only ever appended, except that a rollback rewrites the log once
to flip its record to rolled_back. The rollback's read, git operation and
rewrite all happen under the store's exclusive lock, and the ledger is left
untouched if git fails.
"""

import logging
import secrets
import time
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from mergeguard.core.config import STATE_DIR_NAME
from mergeguard.core.errors import GitError, GitNotFoundError, StoreError
from mergeguard.core.git import GitClient, SubprocessGitClient
from mergeguard.core.models import MergeRecord, MergeStatus, RollbackResult, utc_now
from mergeguard.core.store import JsonlLedgerStore, LedgerStore
from mergeguard.core.validation import is_valid_git_ref, validate_git_ref, validate_identifier

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "merge-ledger.jsonl"


def _new_merge_id() -> str:
    return f"merge-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _parse_line(line: str) -> MergeRecord | None:
    try:
        return MergeRecord.model_validate_json(line)
    except PydanticValidationError as e:
        logger.warning(f"Skipping malformed ledger line: {e.error_count()} error(s)")
        return None


class MergeLedger:
    """Records merges and rolls them back.

    USAGE:
        ledger = MergeLedger(repo_path)
        record = ledger.record_merge("wt-1", "feature/x", "main", pre, post)
        result = ledger.rollback_merge(record.id, reason="broke the build")
    """

    def __init__(
        self,
        repo_path: Path,
        git: GitClient | None = None,
        store: LedgerStore | None = None,
    ):
        self.repo_path = Path(repo_path).absolute()
        self.git = git or SubprocessGitClient(self.repo_path)
        self.store = store or JsonlLedgerStore(self.repo_path / STATE_DIR_NAME / LEDGER_FILENAME)

    def record_merge(
        self,
        worktree_id: str,
        branch: str,
        target_branch: str,
        pre_merge_commit: str,
        post_merge_commit: str,
        merged_by: str | None = None,
    ) -> MergeRecord:
        """Append a completed merge.

        Raises:
            ValidationError: If an identifier, branch or commit is malformed.
            StoreError: If the ledger cannot be locked or written.
        """
        validate_identifier(worktree_id, "worktree_id")
        validate_git_ref(branch, "branch", kind="branch")
        validate_git_ref(target_branch, "target_branch", kind="branch")
        validate_git_ref(pre_merge_commit, "pre_merge_commit", kind="hash")
        validate_git_ref(post_merge_commit, "post_merge_commit", kind="hash")

        record = MergeRecord(
            id=_new_merge_id(),
            worktree_id=worktree_id,
            branch=branch,
            target_branch=target_branch,
            pre_merge_commit=pre_merge_commit,
            post_merge_commit=post_merge_commit,
            merged_by=merged_by or "unknown",
        )
        self.store.append_line(record.to_json_line())
        logger.info(
            f"Recorded merge {record.id}: {branch} -> {target_branch} "
            f"({pre_merge_commit[:8]}..{post_merge_commit[:8]}) by {record.merged_by}"
        )
        return record

    def _read_records(self) -> list[MergeRecord]:
        records = []
        for line in self.store.read_lines():
            record = _parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def get_merge_history(
        self, limit: int | None = None, branch: str | None = None
    ) -> list[MergeRecord]:
        """Records newest first, optionally filtered to merges from or into branch."""
        records = self._read_records()
        if branch is not None:
            records = [r for r in records if branch in (r.branch, r.target_branch)]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        if limit is not None:
            records = records[: max(limit, 0)]
        return records

    def get_last_merge(self, branch: str | None = None) -> MergeRecord | None:
        history = self.get_merge_history(limit=1, branch=branch)
        return history[0] if history else None

    def rollback_merge(self, merge_id: str, reason: str | None = None) -> RollbackResult:
        """Undo a recorded merge in git and mark its record rolled_back.

        Resets hard to the pre-merge commit when HEAD is still the merge
        commit, otherwise reverts the merge so later commits survive.
        """
        try:
            with self.store.locked():
                return self._rollback_locked(merge_id, reason)
        except StoreError as e:
            logger.warning(f"Rollback of {merge_id} failed: {e}")
            return RollbackResult(success=False, message=f"Rollback failed: {e}")

    def _rollback_locked(self, merge_id: str, reason: str | None) -> RollbackResult:
        lines = self.store.read_lines()
        parsed = [_parse_line(line) for line in lines]
        if not any(parsed):
            return RollbackResult(success=False, message="No merge history found")

        index = -1
        target: MergeRecord | None = None
        for i, record in enumerate(parsed):
            if record is not None and record.id == merge_id:
                index, target = i, record
        if target is None:
            return RollbackResult(success=False, message=f"Merge record not found: {merge_id}")

        if target.status is MergeStatus.ROLLED_BACK:
            return RollbackResult(success=False, message="Merge already rolled back")
        if not is_valid_git_ref(target.pre_merge_commit, kind="hash"):
            return RollbackResult(success=False, message="Invalid pre-merge commit hash")
        if not is_valid_git_ref(target.post_merge_commit, kind="hash"):
            return RollbackResult(success=False, message="Invalid post-merge commit hash")

        try:
            if self.git.resolve_ref(target.pre_merge_commit) is None:
                return RollbackResult(
                    success=False,
                    message=f"Pre-merge commit no longer exists: {target.pre_merge_commit}",
                )

            head = self.git.head()
            if head == self.git.resolve_ref(target.post_merge_commit):
                logger.info(f"HEAD is merge commit of {merge_id}; resetting to pre-merge commit")
                self.git.reset_hard(target.pre_merge_commit)
            else:
                logger.info(f"HEAD moved past {merge_id}; reverting merge commit")
                try:
                    self.git.revert_merge(target.post_merge_commit)
                except GitError:
                    self._abort_revert(merge_id)
                    raise
            new_commit = self.git.head()
        except (GitError, GitNotFoundError) as e:
            logger.warning(f"Rollback of {merge_id} failed: {e}")
            return RollbackResult(success=False, message=f"Rollback failed: {e}")

        updated = target.model_copy(
            update={
                "status": MergeStatus.ROLLED_BACK,
                "rollback_commit": new_commit,
                "rollback_timestamp": utc_now(),
                "rollback_reason": reason,
            }
        )
        new_lines = list(lines)
        new_lines[index] = updated.to_json_line()
        try:
            self.store.replace_lines(new_lines)
        except StoreError as e:
            logger.error(f"git rolled back {merge_id} but the ledger could not be updated: {e}")
            return RollbackResult(
                success=False,
                message=f"Rollback failed: git rolled back but ledger was not updated: {e}",
                new_commit=new_commit,
            )

        logger.info(f"Rolled back merge {merge_id} (new HEAD {new_commit[:8]})")
        return RollbackResult(
            success=True, message=f"Rolled back merge {merge_id}", new_commit=new_commit
        )

    def _abort_revert(self, merge_id: str) -> None:
        """Best effort: leave no half-finished revert (REVERT_HEAD, markers) behind."""
        try:
            self.git.abort_revert()
        except (GitError, GitNotFoundError) as e:
            logger.warning(f"Could not abort failed revert of {merge_id}: {e}")
        else:
            logger.info(f"Aborted failed revert of {merge_id}")


def format_merge_history(records: list[MergeRecord]) -> str:
    """Multi-line summary for terminal display."""
    if not records:
        return "No merge history found"

    output = "Merge History:\n\n"
    for record in records:
        status = "ROLLED BACK" if record.status is MergeStatus.ROLLED_BACK else "COMPLETED"
        output += f"{status} {record.id}\n"
        output += f"  Branch: {record.branch} → {record.target_branch}\n"
        output += f"  Time: {record.timestamp.isoformat(timespec='seconds')}\n"
        output += f"  By: {record.merged_by}\n"
        output += (
            f"  Commits: {record.pre_merge_commit[:8]} → {record.post_merge_commit[:8]}\n"
        )
        if record.rollback_commit:
            rollback_time = (
                record.rollback_timestamp.isoformat(timespec="seconds")
                if record.rollback_timestamp
                else "unknown"
            )
            output += f"  Rollback: {record.rollback_commit[:8]} at {rollback_time}\n"
            if record.rollback_reason:
                output += f"  Reason: {record.rollback_reason}\n"
        output += "\n"
    return output
