"""mergeguard - coordination guardrails for parallel worktrees.

Resolves routine merge conflicts, leases shared resources, guards protected
paths, records merges for rollback and escalates what needs a human.
"""

__version__ = "0.1.0"
