"""Validation of untrusted identifiers before they reach git or the filesystem.

Git is always invoked with an argument vector, so these checks are not
about shell quoting. They reject values that git would interpret as
options (leading ``-``), revision expressions, or path traversal.
"""

import re

from mergeguard.core.errors import ValidationError

SAFE_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
GIT_HASH_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")
GIT_BRANCH_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._/-]{0,254}$")
SHELL_METACHARACTERS = re.compile(r"[;&|`$(){}\[\]<>\\!#*?\"'\n\r\t ]")

REF_KINDS = ("hash", "branch", "any")


def validate_git_ref(value: object, field_name: str, kind: str = "any") -> str:
    """Validate a commit hash or branch name.

    Args:
        value: Candidate reference.
        field_name: Name used in error messages.
        kind: "hash", "branch" or "any".

    Returns:
        The validated reference.

    Raises:
        ValidationError: If the value is not an acceptable reference.
    """
    if kind not in REF_KINDS:
        raise ValueError(f"Unknown ref kind: {kind}")
    if value is None:
        raise ValidationError(f"{field_name} is required", field_name, value)
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field_name, value)
    if not value:
        raise ValidationError(f"{field_name} cannot be empty", field_name, value)
    if SHELL_METACHARACTERS.search(value):
        raise ValidationError(f"{field_name} contains shell metacharacters", field_name, value)

    is_hash = bool(GIT_HASH_PATTERN.match(value))
    is_branch = bool(GIT_BRANCH_PATTERN.match(value)) and ".." not in value and "//" not in value

    if kind == "hash" and not is_hash:
        raise ValidationError(
            f"{field_name} must be a valid git commit hash (7-40 hex characters)",
            field_name,
            value,
        )
    if kind == "branch" and not is_branch:
        raise ValidationError(f"{field_name} must be a valid git branch name", field_name, value)
    if kind == "any" and not (is_hash or is_branch):
        raise ValidationError(
            f"{field_name} must be a valid git reference (commit hash or branch name)",
            field_name,
            value,
        )
    return value


def validate_identifier(value: object, field_name: str) -> str:
    """Validate a worktree id, resource name or similar identifier."""
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field_name} is required", field_name, value)
    if not SAFE_IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"{field_name} must be alphanumeric with '.', '_' or '-' (max 64 chars)",
            field_name,
            value,
        )
    return value


def is_valid_git_ref(value: object, kind: str = "any") -> bool:
    try:
        validate_git_ref(value, "ref", kind)
    except ValidationError:
        return False
    return True
