"""CLI module for database <-> repository schema sync.

Usage:
    db-reposync databases
    db-reposync init-repo db1
    db-reposync db-to-repo db1 --dry-run
    db-reposync repo-to-db db1 db2 --dry-run
    db-reposync repo-to-db db1 --ref v1.2
    db-reposync status db1

Commands:
    databases   - List configured databases and whether they are onboarded
    init-repo   - Seed an empty repository subtree from a database
    db-to-repo  - Export database objects to the repository
    repo-to-db  - Apply the repository head to one or more databases
    status      - Show how a database compares with the repository
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from db_reposync.adapters.git import GitCommandError
from db_reposync.config.loader import load_config
from db_reposync.config.models import ReposyncConfig
from db_reposync.factory import build_orchestrator
from db_reposync.schema.models import (
    ObjectStatus,
    SyncError,
    SyncStatus,
    SyncSummary,
)
from db_reposync.schema.sync import (
    REQUEST_ERRORS,
    SyncOrchestrator,
    request_sync_db_to_repo,
    to_sync_error,
)

console = Console()

_STATUS_STYLES = {
    ObjectStatus.IN_SYNC: "dim",
    ObjectStatus.ADDED_IN_DB: "green",
    ObjectStatus.ADDED_IN_REPO: "cyan",
    ObjectStatus.REMOVED_IN_DB: "yellow",
    ObjectStatus.REMOVED_IN_REPO: "yellow",
    ObjectStatus.CONFLICTING: "bold red",
}

_RESULT_STYLES = {
    SyncStatus.SYNCED: "green",
    SyncStatus.SUCCESS_DRY_RUN: "cyan",
    SyncStatus.SKIPPED_NOT_ONBOARDED: "yellow",
    SyncStatus.SKIPPED_OUT_OF_SYNC: "yellow",
    SyncStatus.FAILED: "bold red",
}


# ============================================================================
# Helpers
# ============================================================================


def setup_logging(verbose: bool = False) -> None:
    """Route log records through rich; ``verbose`` switches to DEBUG."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # Reduce noise from libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aioodbc").setLevel(logging.WARNING)


def _load(args: argparse.Namespace) -> ReposyncConfig:
    return load_config(Path(args.config) if args.config else None)


async def _with_orchestrator(
    args: argparse.Namespace,
    action: Callable[[SyncOrchestrator], Awaitable[int]],
) -> int:
    """Build an orchestrator, run ``action``, and dispose of its engines."""
    orchestrator = build_orchestrator(_load(args))
    try:
        await asyncio.to_thread(orchestrator.store.fetch)
        return await action(orchestrator)
    finally:
        await orchestrator.introspector.close()


def _print_summary(summary: SyncSummary) -> None:
    if summary.changes:
        table = Table(title=f"Changes for {summary.db_name}", show_header=True, header_style="bold")
        table.add_column("Action", style="dim")
        table.add_column("Path")
        for change in summary.changes:
            action, _, path = change.partition(" ")
            table.add_row(action, path)
        console.print(table)

    if summary.outcomes:
        table = Table(title="Applied", show_header=True, header_style="bold")
        table.add_column("Path")
        table.add_column("Status")
        for outcome in summary.outcomes:
            table.add_row(outcome.path, outcome.status)
        console.print(table)

    if summary.dry_run:
        console.print("[bold yellow]DRY RUN[/bold yellow] - No changes made.")
    console.print(f"[bold green]v[/bold green] {summary.db_name}: {summary.message}")
    if summary.commit_id:
        console.print(f"  [dim]Commit:[/dim] {summary.commit_id[:12]}")


def _print_error(error: SyncError) -> None:
    label = "Invalid input" if error.bad_input else error.kind
    console.print(f"[bold red]x[/bold red] {label}: {error.message}")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_init_repo(args: argparse.Namespace) -> int:
    async def run(orchestrator: SyncOrchestrator) -> int:
        summary = await orchestrator.init_repo(args.database)
        _print_summary(summary)
        return 0

    return await _with_orchestrator(args, run)


async def _async_db_to_repo(args: argparse.Namespace) -> int:
    async def run(orchestrator: SyncOrchestrator) -> int:
        outcome = await request_sync_db_to_repo(orchestrator, args.database, args.dry_run)
        if isinstance(outcome, SyncError):
            _print_error(outcome)
            return 1
        _print_summary(outcome)
        return 0

    return await _with_orchestrator(args, run)


async def _async_repo_to_db(args: argparse.Namespace) -> int:
    async def run(orchestrator: SyncOrchestrator) -> int:
        results = await orchestrator.sync_repo_to_dbs(args.databases, args.dry_run, args.ref)

        table = Table(title="Repository -> Database", show_header=True, header_style="bold")
        table.add_column("Database")
        table.add_column("Status")
        table.add_column("Message", style="dim")
        for result in results:
            style = _RESULT_STYLES[result.status]
            table.add_row(result.db_name, f"[{style}]{result.status.value}[/{style}]", result.message)
        console.print(table)

        if args.dry_run or any(r.status is SyncStatus.SUCCESS_DRY_RUN for r in results):
            console.print("[bold yellow]DRY RUN[/bold yellow] - No changes made.")

        ok = {SyncStatus.SYNCED, SyncStatus.SUCCESS_DRY_RUN}
        return 0 if all(result.status in ok for result in results) else 1

    return await _with_orchestrator(args, run)


async def _async_status(args: argparse.Namespace) -> int:
    async def run(orchestrator: SyncOrchestrator) -> int:
        result = await orchestrator.inspect(args.database)

        table = Table(title=f"Status of {args.database}", show_header=True, header_style="bold")
        table.add_column("Object")
        table.add_column("Status")
        for ident, status in sorted(result.statuses.items(), key=lambda item: item[0].sort_key):
            style = _STATUS_STYLES[status]
            table.add_row(ident.path, f"[{style}]{status.value}[/{style}]")
        console.print(table)

        if result.has_conflicts:
            console.print(
                f"[bold red]x[/bold red] {len(result.conflicts)} conflicting object(s); "
                "export the database or reconcile manually before applying."
            )
            return 1
        console.print(f"[dim]{len(result.plan)} change(s) would be applied.[/dim]")
        return 0

    return await _with_orchestrator(args, run)


# ============================================================================
# Command wrappers
# ============================================================================


def _run_async(coro_fn: Callable[[argparse.Namespace], Awaitable[int]], args: argparse.Namespace) -> int:
    """Run an async command, reporting sync, configuration and git failures."""
    try:
        return asyncio.run(coro_fn(args))
    except REQUEST_ERRORS as e:
        _print_error(to_sync_error(e))
        return 1
    except (FileNotFoundError, ValueError, GitCommandError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1


def cmd_init_repo(args: argparse.Namespace) -> int:
    """Seed an empty repository subtree from a database."""
    return _run_async(_async_init_repo, args)


def cmd_db_to_repo(args: argparse.Namespace) -> int:
    """Export database objects to the repository."""
    return _run_async(_async_db_to_repo, args)


def cmd_repo_to_db(args: argparse.Namespace) -> int:
    """Apply the repository head to one or more databases."""
    return _run_async(_async_repo_to_db, args)


def cmd_status(args: argparse.Namespace) -> int:
    """Show how a database compares with the repository."""
    return _run_async(_async_status, args)


def cmd_databases(args: argparse.Namespace) -> int:
    """List configured databases from reposync.toml.

    Reads the TOML config and the repository markers -- no database calls.

    Returns:
        0 on success, 1 if the config cannot be loaded.
    """
    try:
        config = _load(args)
        orchestrator = build_orchestrator(config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    table = Table(title="Databases", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Database")
    table.add_column("Subtree", style="dim")
    table.add_column("Description")

    for name, profile in config.databases.items():
        try:
            onboarded = orchestrator.is_onboarded(name)
        except GitCommandError as e:
            console.print(f"[red]Error: {e}[/red]")
            return 1
        marker = "[bold green]*[/bold green]" if onboarded else " "
        table.add_row(marker, name, orchestrator.settings.subtree(name), profile.description)

    console.print(table)
    console.print("\n[bold green]*[/bold green] = onboarded (has a sync marker)")
    return 0


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-reposync",
        description="Bidirectional schema sync between SQL Server databases and git",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to reposync.toml (default: $DB_REPOSYNC_CONFIG or ./reposync.toml)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_databases = subparsers.add_parser("databases", help="List configured databases")
    p_databases.set_defaults(func=cmd_databases)

    p_init = subparsers.add_parser("init-repo", help="Seed an empty subtree from a database")
    p_init.add_argument("database", help="Database name")
    p_init.set_defaults(func=cmd_init_repo)

    p_export = subparsers.add_parser("db-to-repo", help="Export database objects to the repository")
    p_export.add_argument("database", help="Database name")
    p_export.add_argument("--dry-run", action="store_true", help="Show changes without committing")
    p_export.set_defaults(func=cmd_db_to_repo)

    p_apply = subparsers.add_parser("repo-to-db", help="Apply the repository to databases")
    p_apply.add_argument("databases", nargs="+", help="Database names")
    p_apply.add_argument("--dry-run", action="store_true", help="Show changes without applying")
    p_apply.add_argument(
        "--ref", default=None, help="Revision to apply (default: branch head; others are dry-run)"
    )
    p_apply.set_defaults(func=cmd_repo_to_db)

    p_status = subparsers.add_parser("status", help="Compare a database with the repository")
    p_status.add_argument("database", help="Database name")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
