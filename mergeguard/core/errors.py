"""Exception hierarchy for the mergeguard core.

Public operations report input errors and policy denials as result models.
These exceptions cover environment failures (git, storage, configuration)
and are caught at the component boundary that owns the recovery decision.
"""


class MergeGuardError(Exception):
    """Base class for all mergeguard errors."""

    pass


class GitError(MergeGuardError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"git {' '.join(self.git_args)} failed (exit {returncode}){detail}")


class GitTimeoutError(GitError):
    """A git subprocess exceeded its timeout."""

    def __init__(self, args: list[str], timeout: float):
        self.timeout = timeout
        super().__init__(args, -1, f"timed out after {timeout}s")


class GitNotFoundError(MergeGuardError):
    """The git executable is not available."""

    pass


class ValidationError(MergeGuardError):
    """Untrusted input failed validation."""

    def __init__(self, message: str, field: str, value: object = None):
        self.field = field
        self.value = value
        super().__init__(message)


class ConflictParseError(MergeGuardError):
    """Conflict markers in a file are malformed."""

    def __init__(self, message: str, line: int):
        self.line = line
        super().__init__(f"{message} (line {line + 1})")


class StoreError(MergeGuardError):
    """Shared state could not be read, locked or written."""

    pass


class ConfigError(MergeGuardError):
    """Configuration file is invalid."""

    pass
