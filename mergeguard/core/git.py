"""Narrow git interface used by the conflict resolver and the merge ledger.

Git remains the source of truth. Every call passes an argument vector to
subprocess (never a shell string) and has a bounded timeout; a timeout is
reported as GitTimeoutError rather than hanging the caller.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from mergeguard.core.errors import GitError, GitNotFoundError, GitTimeoutError

logger = logging.getLogger(__name__)


class GitClient(Protocol):
    """Operations the core needs from git."""

    def conflicted_files(self) -> list[str]: ...

    def stage(self, path: str) -> None: ...

    def resolve_ref(self, ref: str) -> str | None: ...

    def head(self) -> str: ...

    def reset_hard(self, ref: str) -> None: ...

    def revert_merge(self, ref: str) -> None: ...

    def abort_revert(self) -> None: ...


class SubprocessGitClient:
    """GitClient backed by the git executable."""

    # Long enough for a revert on a large tree, short enough to surface hangs
    # on corrupted repos or busy filesystems.
    GIT_TIMEOUT = 120

    def __init__(self, repo_path: Path, timeout: float | None = None, git_binary: str = "git"):
        self.repo_path = Path(repo_path).absolute()
        self.timeout = timeout if timeout is not None else self.GIT_TIMEOUT
        self.git_binary = git_binary

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if shutil.which(self.git_binary) is None:
            raise GitNotFoundError(f"git executable not found: {self.git_binary}")
        try:
            result = subprocess.run(
                [self.git_binary, *args],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"git {' '.join(args)} timed out after {self.timeout}s")
            raise GitTimeoutError(args, self.timeout)
        if check and result.returncode != 0:
            raise GitError(args, result.returncode, result.stderr)
        return result

    def conflicted_files(self) -> list[str]:
        result = self._run(["diff", "--name-only", "--diff-filter=U"])
        return [line.strip() for line in result.stdout.split("\n") if line.strip()]

    def stage(self, path: str) -> None:
        # "--" stops git from reading a path that starts with "-" as an option
        self._run(["add", "--", path])

    def resolve_ref(self, ref: str) -> str | None:
        """Return the full commit SHA for ref, or None if it does not resolve."""
        result = self._run(
            ["rev-parse", "--verify", "--quiet", "--end-of-options", f"{ref}^{{commit}}"],
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def head(self) -> str:
        return self._run(["rev-parse", "HEAD"]).stdout.strip()

    def reset_hard(self, ref: str) -> None:
        self._run(["reset", "--hard", ref])

    def revert_merge(self, ref: str) -> None:
        self._run(["revert", "-m", "1", "--no-edit", ref])

    def abort_revert(self) -> None:
        self._run(["revert", "--abort"])
