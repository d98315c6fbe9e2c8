# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the mergeguard test suite.

This module provides foundational fixtures used across all test modules:
- Temporary repositories, with and without real git
- A repository stopped in the middle of a conflicted merge
- Test databases with the escalation event log
- An in-memory GitClient so the core can be tested without shelling out

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from mergeguard.core.errors import GitError
from mergeguard.core.escalation import EscalationBridge
from mergeguard.core.locks import ResourceLockManager
from mergeguard.core.state import Database
from mergeguard.core.store import InMemoryLockStore


def _git(repo: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args], cwd=repo, check=check, capture_output=True, text=True
    )


# =============================================================================
# Fake Git
# =============================================================================


class FakeGitClient:
    """In-memory GitClient.

    Commits are plain 40-char hex strings; resolve_ref accepts any unique
    prefix of a known commit. reset_hard moves HEAD, revert_merge creates a
    new commit on top of HEAD.
    """

    def __init__(
        self,
        conflicted: list[str] | None = None,
        commits: list[str] | None = None,
        head: str | None = None,
    ):
        self.conflicted = list(conflicted or [])
        self.commits = list(commits or [])
        self.head_commit = head or (self.commits[-1] if self.commits else "0" * 40)
        self.staged: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.fail_stage: set[str] = set()
        self.fail_revert = False
        self.fail_abort = False

    def conflicted_files(self) -> list[str]:
        return list(self.conflicted)

    def stage(self, path: str) -> None:
        if path in self.fail_stage:
            raise GitError(["add", "--", path], 128, "fatal: unable to stage")
        self.staged.append(path)
        self.calls.append(("stage", path))

    def resolve_ref(self, ref: str) -> str | None:
        matches = [c for c in self.commits if c.startswith(ref)]
        return matches[0] if len(matches) == 1 else None

    def head(self) -> str:
        return self.head_commit

    def reset_hard(self, ref: str) -> None:
        self.calls.append(("reset_hard", ref))
        resolved = self.resolve_ref(ref)
        if resolved is None:
            raise GitError(["reset", "--hard", ref], 128, f"fatal: bad revision '{ref}'")
        self.head_commit = resolved

    def revert_merge(self, ref: str) -> None:
        self.calls.append(("revert_merge", ref))
        if self.fail_revert:
            raise GitError(["revert", "-m", "1", "--no-edit", ref], 1, "error: could not revert")
        new_commit = f"{len(self.commits) + 1:040x}"
        self.commits.append(new_commit)
        self.head_commit = new_commit

    def abort_revert(self) -> None:
        self.calls.append(("abort_revert", ""))
        if self.fail_abort:
            raise GitError(["revert", "--abort"], 128, "error: no revert in progress")


PRE_COMMIT = "a" * 40
POST_COMMIT = "b" * 40
LATER_COMMIT = "c" * 40


@pytest.fixture
def fake_git() -> FakeGitClient:
    """FakeGitClient with a pre-merge, merge and later commit; HEAD at the merge."""
    return FakeGitClient(commits=[PRE_COMMIT, POST_COMMIT, LATER_COMMIT], head=POST_COMMIT)


# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary repository directory with a small TypeScript tree.

    Returns:
        Path to the temporary repository root.
    """
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "app.ts").write_text("import {x} from './x';\n\nexport const app = x;\n")
    (repo / "README.md").write_text("# Test Project\n")
    (repo / "schema.prisma").write_text("model User {\n  id Int @id\n}\n")
    return repo


@pytest.fixture
def repo_with_git(temp_repo: Path) -> Path:
    """Create a temporary repository with actual git initialization.

    WARNING: Runs actual git commands. Slower than temp_repo.
    Only use when you need real git operations (merges, resets, reverts).
    """
    if shutil.which("git") is None:
        pytest.skip("Git not available")

    try:
        _git(temp_repo, "init")
        _git(temp_repo, "config", "user.email", "test@example.com")
        _git(temp_repo, "config", "user.name", "Test User")
        _git(temp_repo, "config", "commit.gpgsign", "false")
        _git(temp_repo, "add", ".")
        _git(temp_repo, "commit", "-m", "Initial commit")
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")
    return temp_repo


def current_branch(repo: Path) -> str:
    return _git(repo, "rev-parse", "--abbrev-ref", "HEAD").stdout.strip()


def head_commit(repo: Path) -> str:
    return _git(repo, "rev-parse", "HEAD").stdout.strip()


@pytest.fixture
def conflicted_repo(repo_with_git: Path) -> Path:
    """Repository stopped in a merge with conflicts in two files.

    - src/app.ts: both branches changed the import line (import conflict)
    - src/config.ts: both branches changed the same constant (placement)
    """
    repo = repo_with_git
    base = current_branch(repo)
    (repo / "src" / "config.ts").write_text("export const retries = 1;\n")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "Add config")

    _git(repo, "checkout", "-b", "feature")
    (repo / "src" / "app.ts").write_text("import {b} from './b';\n\nexport const app = x;\n")
    (repo / "src" / "config.ts").write_text("export const retries = 3;\n")
    _git(repo, "commit", "-am", "Feature changes")

    _git(repo, "checkout", base)
    (repo / "src" / "app.ts").write_text("import {a} from './a';\n\nexport const app = x;\n")
    (repo / "src" / "config.ts").write_text("export const retries = 2;\n")
    _git(repo, "commit", "-am", "Base changes")

    result = _git(repo, "merge", "feature", check=False)
    assert result.returncode != 0, "merge was expected to conflict"
    return repo


@pytest.fixture
def merged_repo(repo_with_git: Path) -> tuple[Path, str, str]:
    """Repository with a clean non-fast-forward merge of 'feature'.

    Returns:
        (repo, pre_merge_commit, post_merge_commit)
    """
    repo = repo_with_git
    base = current_branch(repo)

    _git(repo, "checkout", "-b", "feature")
    (repo / "src" / "feature.ts").write_text("export const feature = true;\n")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "Add feature")

    _git(repo, "checkout", base)
    (repo / "README.md").write_text("# Test Project\n\nUpdated on base.\n")
    _git(repo, "commit", "-am", "Update readme")
    pre = head_commit(repo)

    _git(repo, "merge", "--no-ff", "--no-edit", "feature")
    post = head_commit(repo)
    return repo, pre, post


# =============================================================================
# Database and Coordination Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database with the escalation event log.

    Example:
        def test_request(test_db):
            bridge = EscalationBridge(test_db)
            bridge.request_human_decision("merge_conflict", "Review")
            assert len(test_db.list_hitl_requests()) == 1
    """
    return Database(tmp_path / "state" / "test.db")


@pytest.fixture
def bridge(test_db: Database) -> EscalationBridge:
    """EscalationBridge without notification channels."""
    return EscalationBridge(test_db)


@pytest.fixture
def lock_manager() -> ResourceLockManager:
    """Lock manager over a process-local lease table."""
    return ResourceLockManager(InMemoryLockStore())


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "git: marks tests requiring git")
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
