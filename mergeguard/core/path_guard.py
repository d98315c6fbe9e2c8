"""Path access policy for file operations attempted by worktrees.

Evaluation order:
1. Built-in security-critical patterns (keys, env files, VCS internals, ...)
2. Caller-supplied ProtectedPatterns
3. The reserved schema resource: mutating it requires that no other
   worktree holds the schema lease

SECURITY: glob patterns are anchored. "*.key" matches "secret.key" but never
"not-a-key" or "file.key.bak"; "foo/*.ts" never matches "foo/bar.ts.bak".
"""

import functools
import logging
import re
from collections.abc import Iterable

from mergeguard.core.errors import StoreError
from mergeguard.core.locks import SCHEMA_RESOURCE, ResourceLockManager
from mergeguard.core.models import AccessDecision, Operation, ProtectedPattern

logger = logging.getLogger(__name__)

_ALL = [Operation.READ, Operation.WRITE, Operation.EDIT]
_MUTATING = [Operation.WRITE, Operation.EDIT]

DEFAULT_PROTECTED_PATTERNS: tuple[ProtectedPattern, ...] = (
    ProtectedPattern(pattern="*.key", operations=_ALL, message="Key files are protected"),
    ProtectedPattern(
        pattern="*.pem", operations=_ALL, message="PEM certificate files are protected"
    ),
    ProtectedPattern(pattern="*.p12", operations=_ALL, message="PKCS#12 bundles are protected"),
    ProtectedPattern(pattern="*.pfx", operations=_ALL, message="PKCS#12 bundles are protected"),
    ProtectedPattern(pattern="id_rsa*", operations=_ALL, message="SSH private keys are protected"),
    ProtectedPattern(
        pattern=".env*",
        operations=_MUTATING,
        message="Environment files are protected from modification",
    ),
    ProtectedPattern(
        pattern="**/.git/**", operations=_MUTATING, message="Git internals are protected"
    ),
    ProtectedPattern(
        pattern="**/node_modules/**",
        operations=_MUTATING,
        message="node_modules should not be modified directly",
    ),
    ProtectedPattern(
        pattern="**/.mergeguard/**",
        operations=_MUTATING,
        message="Coordination state is managed by mergeguard",
    ),
)

DEFAULT_SCHEMA_PATHS: tuple[str, ...] = ("schema.prisma",)


@functools.lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Convert a glob to an anchored regex.

    "*" matches within one segment, "?" one non-separator character, and
    "**" any number of segments including zero ("**/x" matches "x",
    "a/**" matches "a" and everything below it).
    """
    parts: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == n:
            parts.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def matches_pattern(path: str, pattern: str) -> bool:
    """True if the whole path matches the glob pattern."""
    return glob_to_regex(pattern).match(path) is not None


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def is_path_protected(
    path: str,
    operation: Operation,
    patterns: Iterable[ProtectedPattern] = DEFAULT_PROTECTED_PATTERNS,
) -> tuple[bool, str | None]:
    """Check a path against patterns restricting this operation.

    Both the full normalized path and the bare filename are tried.

    Returns:
        (protected, message of the first matching pattern)
    """
    normalized = normalize_path(path)
    filename = normalized.rsplit("/", 1)[-1] or normalized

    for p in patterns:
        if operation not in p.operations:
            continue
        if matches_pattern(normalized, p.pattern) or matches_pattern(filename, p.pattern):
            return True, p.message
    return False, None


class PathGuard:
    """Allow/deny decisions for worktree file operations."""

    def __init__(
        self,
        lock_manager: ResourceLockManager | None = None,
        custom_patterns: Iterable[ProtectedPattern] = (),
        schema_paths: Iterable[str] = DEFAULT_SCHEMA_PATHS,
    ):
        self.lock_manager = lock_manager
        self.custom_patterns = list(custom_patterns)
        self.schema_paths = tuple(schema_paths)

    def is_schema_path(self, path: str) -> bool:
        normalized = normalize_path(path)
        filename = normalized.rsplit("/", 1)[-1]
        return any(
            matches_pattern(normalized, p) or matches_pattern(filename, p)
            for p in self.schema_paths
        )

    def check_access(
        self,
        path: str,
        operation: Operation | str,
        caller_id: str,
        extra_patterns: Iterable[ProtectedPattern] = (),
    ) -> AccessDecision:
        """Decide whether caller_id may perform operation on path."""
        try:
            op = Operation(operation)
        except ValueError:
            return AccessDecision(allowed=False, message=f"Unknown operation '{operation}'")

        if not path or not path.strip():
            return AccessDecision(allowed=False, message="Path is empty")
        if "\x00" in path:
            return AccessDecision(allowed=False, message="Path contains a NUL byte")

        protected, message = is_path_protected(path, op, DEFAULT_PROTECTED_PATTERNS)
        if not protected:
            protected, message = is_path_protected(
                path, op, [*self.custom_patterns, *extra_patterns]
            )
        if protected:
            logger.info(f"Denied {op.value} on '{path}' for '{caller_id}': {message}")
            return AccessDecision(
                allowed=False,
                message=message or f"Path '{path}' is protected for {op.value} operations",
            )

        if op.mutates and self.lock_manager is not None and self.is_schema_path(path):
            try:
                holder = self.lock_manager.locked_by_other(SCHEMA_RESOURCE, caller_id)
            except StoreError as e:
                logger.warning(f"Denied {op.value} on '{path}' for '{caller_id}': {e}")
                return AccessDecision(
                    allowed=False, message=f"Schema lock state is unavailable: {e}"
                )
            if holder is not None:
                logger.info(
                    f"Denied {op.value} on '{path}' for '{caller_id}': "
                    f"schema held by '{holder.worktree_id}'"
                )
                return AccessDecision(
                    allowed=False,
                    message=(
                        f"Schema locked by worktree '{holder.worktree_id}' for {holder.operation}. "
                        "Wait or request the lock with 'mergeguard lock acquire schema'."
                    ),
                )

        return AccessDecision(allowed=True)
