"""CLI entry point for mergeguard.

Commands:
- mergeguard init: Create .mergeguard/ with a default config
- mergeguard check: Ask the path policy whether an operation is allowed
- mergeguard conflicts analyze|resolve: Classify and auto-resolve conflicts
- mergeguard lock acquire|release|status: Manage shared-resource leases
- mergeguard merge record|history|rollback: Merge ledger
- mergeguard hitl list|approve|reject: Human escalation queue
"""

from __future__ import annotations

import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from mergeguard import __version__
from mergeguard.core.config import GuardConfig, load_config, write_default_config
from mergeguard.core.conflicts import ConflictResolver, format_conflict_analysis
from mergeguard.core.errors import MergeGuardError
from mergeguard.core.escalation import EscalationBridge
from mergeguard.core.git import SubprocessGitClient
from mergeguard.core.ledger import LEDGER_FILENAME, MergeLedger, format_merge_history
from mergeguard.core.locks import ResourceLockManager
from mergeguard.core.models import HITLStatus, Operation
from mergeguard.core.notifications import NotificationDispatcher
from mergeguard.core.path_guard import PathGuard
from mergeguard.core.state import Database
from mergeguard.core.store import JsonlLedgerStore, JsonLockStore

console = Console()

LOCKS_FILENAME = "locks.json"
DB_FILENAME = "state.db"


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def _load_config(repo_path: Path) -> GuardConfig:
    try:
        return load_config(repo_path)
    except MergeGuardError as e:
        _fail(str(e))


def _lock_manager(repo_path: Path, config: GuardConfig) -> ResourceLockManager:
    store = JsonLockStore(config.state_path(repo_path) / LOCKS_FILENAME)
    return ResourceLockManager(store, ttl=timedelta(minutes=config.lock_ttl_minutes))


def _git(repo_path: Path, config: GuardConfig) -> SubprocessGitClient:
    return SubprocessGitClient(repo_path, timeout=config.git_timeout_seconds)


def _database(repo_path: Path, config: GuardConfig) -> Database:
    return Database(config.state_path(repo_path) / DB_FILENAME)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show decision logging")
def main(verbose: bool) -> None:
    """mergeguard - coordination guardrails for parallel worktrees.

    Auto-resolves routine merge conflicts, leases shared resources, guards
    protected paths and keeps a rollback-capable merge ledger.
    """
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@main.command()
def init() -> None:
    """Initialize mergeguard state for this repository."""
    repo_path = get_repo_path()
    config_path = write_default_config(repo_path)
    if config_path is None:
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config = _load_config(repo_path)
    _database(repo_path, config)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {escape(str(config.state_path(repo_path)))}\n"
            "- config.yaml: Guard configuration\n"
            "- state.db: Escalation requests and audit log",
            title="mergeguard Initialized",
        )
    )


@main.command()
@click.argument("path")
@click.option(
    "--op",
    "operation",
    type=click.Choice([op.value for op in Operation]),
    default=Operation.WRITE.value,
    show_default=True,
    help="Operation to check",
)
@click.option("--worktree", "-w", default="cli", show_default=True, help="Caller worktree ID")
def check(path: str, operation: str, worktree: str) -> None:
    """Check whether WORKTREE may perform OP on PATH.

    Example:
        mergeguard check .env --op write --worktree wt-auth
    """
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    guard = PathGuard(
        lock_manager=_lock_manager(repo_path, config),
        custom_patterns=config.protected_patterns,
        schema_paths=config.schema_paths,
    )
    try:
        decision = guard.check_access(path, operation, worktree)
    except MergeGuardError as e:
        _fail(str(e))

    if decision.allowed:
        console.print(f"[green]✓ Allowed:[/green] {operation} {escape(path)}")
    else:
        console.print(f"[red]✗ Denied:[/red] {escape(decision.message or '')}")
        sys.exit(1)


# --- Conflicts ---


@main.group()
def conflicts() -> None:
    """Classify and resolve merge conflicts."""


def _resolver(
    repo_path: Path,
    config: GuardConfig,
    bridge: EscalationBridge | None = None,
    worktree_id: str | None = None,
) -> ConflictResolver:
    return ConflictResolver(
        repo_path,
        git=_git(repo_path, config),
        bridge=bridge,
        threshold=config.auto_resolve_threshold,
        worktree_id=worktree_id,
    )


@conflicts.command("analyze")
@click.argument("files", nargs=-1)
def conflicts_analyze(files: tuple[str, ...]) -> None:
    """Show how each conflicted file would be handled (no changes made)."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    resolver = _resolver(repo_path, config)

    try:
        targets = list(files) or resolver.conflicted_files()
    except MergeGuardError as e:
        _fail(str(e))

    if not targets:
        console.print("[green]No conflicted files[/green]")
        return

    for file in targets:
        console.print(escape(format_conflict_analysis(resolver.analyze(file))))
        console.print()


@conflicts.command("resolve")
@click.argument("files", nargs=-1)
@click.option("--worktree", "-w", default=None, help="Worktree ID recorded on the escalation")
def conflicts_resolve(files: tuple[str, ...], worktree: str | None) -> None:
    """Auto-resolve safe conflicts and escalate the rest.

    Exits 1 if any file was escalated to a human.
    """
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    notifier = NotificationDispatcher(config.notifications)
    bridge = EscalationBridge(_database(repo_path, config), notifier=notifier)
    try:
        resolver = _resolver(repo_path, config, bridge, worktree)
        result = resolver.resolve_conflicts(list(files) or None)
    except MergeGuardError as e:
        _fail(str(e))
    finally:
        notifier.shutdown(wait=True)

    if not result.resolved and not result.escalated:
        console.print("[green]No conflicted files[/green]")
        return

    table = Table(title="Conflict Resolution")
    table.add_column("File", style="cyan")
    table.add_column("Outcome")
    for file in result.resolved:
        table.add_row(escape(file), "[green]auto-resolved[/green]")
    for file in result.escalated:
        table.add_row(escape(file), "[yellow]escalated[/yellow]")
    console.print(table)

    if result.escalated:
        if result.hitl_request_id:
            console.print(
                f"\nHITL request [bold]{escape(result.hitl_request_id)}[/bold] created. "
                "Approve or reject with 'mergeguard hitl'."
            )
        else:
            console.print("\n[yellow]No HITL request was recorded for the escalated files[/yellow]")
        sys.exit(1)


# --- Locks ---


@main.group()
def lock() -> None:
    """Manage leases on shared resources."""


@lock.command("acquire")
@click.argument("resource")
@click.option("--worktree", "-w", required=True, help="Worktree ID requesting the lease")
@click.option("--op", "operation", default="edit", show_default=True, help="Operation label")
@click.option("--ttl", type=float, default=None, help="Lease duration in minutes")
def lock_acquire(resource: str, worktree: str, operation: str, ttl: float | None) -> None:
    """Acquire (or refresh) the lease on RESOURCE."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    manager = _lock_manager(repo_path, config)
    lease = timedelta(minutes=ttl) if ttl is not None else None

    try:
        result = manager.try_acquire(resource, worktree, operation, ttl=lease)
    except MergeGuardError as e:
        _fail(str(e))

    if result.acquired:
        expires = result.holder.expires_at.isoformat(timespec="seconds") if result.holder else "-"
        message = escape(result.message or "Lock acquired")
        console.print(f"[green]✓ {message}[/green] (expires {expires})")
    else:
        console.print(f"[red]✗ {escape(result.message or 'Lock not acquired')}[/red]")
        sys.exit(1)


@lock.command("release")
@click.argument("resource")
@click.option("--worktree", "-w", required=True, help="Worktree ID holding the lease")
def lock_release(resource: str, worktree: str) -> None:
    """Release the lease on RESOURCE."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    manager = _lock_manager(repo_path, config)

    try:
        released = manager.release(resource, worktree)
    except MergeGuardError as e:
        _fail(str(e))

    if released:
        console.print(f"[green]✓ Released {escape(resource)}[/green]")
    else:
        holder = manager.query(resource)
        owner = holder.worktree_id if holder else "another worktree"
        console.print(f"[red]✗ {escape(resource)} is held by '{escape(owner)}'[/red]")
        sys.exit(1)


@lock.command("status")
@click.argument("resource", required=False)
def lock_status(resource: str | None) -> None:
    """Show active leases."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    manager = _lock_manager(repo_path, config)

    try:
        if resource:
            record = manager.query(resource)
            records = [record] if record else []
        else:
            records = manager.list_locks()
    except MergeGuardError as e:
        _fail(str(e))

    if not records:
        console.print("[dim]No active locks[/dim]")
        return

    table = Table(title="Active Locks")
    table.add_column("Resource", style="cyan")
    table.add_column("Worktree", style="green")
    table.add_column("Operation")
    table.add_column("Expires")
    for record in records:
        table.add_row(
            escape(record.resource),
            escape(record.worktree_id),
            escape(record.operation),
            record.expires_at.isoformat(timespec="seconds"),
        )
    console.print(table)


# --- Merge ledger ---


@main.group()
def merge() -> None:
    """Record, list and roll back merges."""


def _ledger(repo_path: Path, config: GuardConfig) -> MergeLedger:
    store = JsonlLedgerStore(config.state_path(repo_path) / LEDGER_FILENAME)
    return MergeLedger(repo_path, git=_git(repo_path, config), store=store)


@merge.command("record")
@click.option("--worktree", "-w", required=True, help="Worktree that performed the merge")
@click.option("--branch", "-b", required=True, help="Merged branch")
@click.option("--target", "-t", required=True, help="Target branch")
@click.option("--pre", "pre_commit", required=True, help="Commit before the merge")
@click.option("--post", "post_commit", required=True, help="Merge commit")
@click.option("--by", "merged_by", default=None, help="Who performed the merge")
def merge_record(
    worktree: str,
    branch: str,
    target: str,
    pre_commit: str,
    post_commit: str,
    merged_by: str | None,
) -> None:
    """Append a completed merge to the ledger."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)

    try:
        record = _ledger(repo_path, config).record_merge(
            worktree, branch, target, pre_commit, post_commit, merged_by
        )
    except MergeGuardError as e:
        _fail(str(e))

    console.print(f"[green]✓ Recorded merge[/green] {escape(record.id)}")


@merge.command("history")
@click.option("--limit", "-n", type=int, default=None, help="Show at most N merges")
@click.option("--branch", "-b", default=None, help="Only merges from or into this branch")
def merge_history(limit: int | None, branch: str | None) -> None:
    """Show merge history, newest first."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)

    try:
        records = _ledger(repo_path, config).get_merge_history(limit=limit, branch=branch)
    except MergeGuardError as e:
        _fail(str(e))

    console.print(escape(format_merge_history(records)))


@merge.command("rollback")
@click.argument("merge_id")
@click.option("--reason", "-r", default=None, help="Why the merge is rolled back")
def merge_rollback(merge_id: str, reason: str | None) -> None:
    """Roll back the merge MERGE_ID."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)

    result = _ledger(repo_path, config).rollback_merge(merge_id, reason=reason)
    if not result.success:
        _fail(result.message)

    console.print(
        Panel(
            f"[green]{escape(result.message)}[/green]\n"
            f"New HEAD: {escape(result.new_commit or '-')}",
            title="Rollback",
        )
    )


# --- Human escalation ---


@main.group()
def hitl() -> None:
    """List and decide human-escalation requests."""


@hitl.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include resolved requests")
def hitl_list(show_all: bool) -> None:
    """Show pending (or all) escalation requests."""
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    bridge = EscalationBridge(_database(repo_path, config))

    requests = bridge.get_all_requests() if show_all else bridge.get_pending_requests()
    if not requests:
        console.print("[dim]No escalation requests[/dim]")
        return

    status_color = {
        HITLStatus.PENDING: "yellow",
        HITLStatus.APPROVED: "green",
        HITLStatus.REJECTED: "red",
    }
    table = Table(title="Escalation Requests")
    table.add_column("ID", style="cyan")
    table.add_column("Reason")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Created")
    for request in requests:
        color = status_color[request.status]
        table.add_row(
            escape(request.id),
            request.reason.value,
            escape(request.title),
            f"[{color}]{request.status.value}[/{color}]",
            request.created_at.isoformat(timespec="seconds"),
        )
    console.print(table)


def _decide(request_id: str, actor: str, notes: str | None, approve: bool) -> None:
    repo_path = get_repo_path()
    config = _load_config(repo_path)
    bridge = EscalationBridge(_database(repo_path, config))

    if approve:
        result = bridge.approve(request_id, actor, notes)
    else:
        result = bridge.reject(request_id, actor, notes)

    if not result.success:
        _fail(result.message)
    console.print(f"[green]✓ {escape(result.message)}[/green]")


@hitl.command("approve")
@click.argument("request_id")
@click.option("--by", "actor", required=True, help="Who is approving")
@click.option("--notes", default=None, help="Resolution notes")
def hitl_approve(request_id: str, actor: str, notes: str | None) -> None:
    """Approve escalation request REQUEST_ID."""
    _decide(request_id, actor, notes, approve=True)


@hitl.command("reject")
@click.argument("request_id")
@click.option("--by", "actor", required=True, help="Who is rejecting")
@click.option("--notes", default=None, help="Resolution notes")
def hitl_reject(request_id: str, actor: str, notes: str | None) -> None:
    """Reject escalation request REQUEST_ID."""
    _decide(request_id, actor, notes, approve=False)


if __name__ == "__main__":
    main()
