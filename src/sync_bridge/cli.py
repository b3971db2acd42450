"""
Sync Bridge CLI - Command Line Interface.

Operator tooling for the sync queue and entity map.

Commands:
    run        Drain the job queue once
    status     Show queue statistics
    jobs       List jobs by status or module
    retry      Manually re-enqueue dead jobs
    cancel     Remove a pending job
    cleanup    Purge old done and dead jobs
    reconcile  Find mappings whose remote record vanished
    config     Manage configuration
"""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Callable, Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from sync_bridge import __version__
from sync_bridge.config import Settings, load_settings
from sync_bridge.connectors.remote import RemoteError, create_remote_client
from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from sync_bridge.core.context import SyncContext
from sync_bridge.core.engine import SyncEngine
from sync_bridge.core.errors import ConfigurationError
from sync_bridge.core.queue import JobQueue, JobStatus
from sync_bridge.core.reconciler import Reconciler
from sync_bridge.core.registry import ModuleRegistry
from sync_bridge.utils.display import (
    print_error,
    print_info,
    print_jobs,
    print_queue_stats,
    print_reconcile_report,
    print_settings,
    print_success,
    print_summary,
    print_warning,
)
from sync_bridge.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="sync-bridge",
    help="Durable bidirectional sync between a local application and a remote business API.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

RegistryFactory = Callable[[Settings], ModuleRegistry]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]sync-bridge[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Sync Bridge - queue-driven sync between a local app and a remote business API."""
    pass


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
    dir_okay=False,
)

DatabaseOption = typer.Option(
    None,
    "--database",
    "-d",
    help="Path to the queue database (overrides config).",
)


# =============================================================================
# RUN Command
# =============================================================================
@app.command()
def run(
    factory: str = typer.Option(
        ...,
        "--factory",
        "-f",
        help="Registry factory as 'package.module:callable', called with the settings.",
    ),
    module_id: Optional[str] = typer.Option(
        None,
        "--module",
        "-m",
        help="Only process jobs of this module.",
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="List due jobs without processing them.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Drain the job queue once.

    Example:
        sync-bridge run --factory myapp.sync:build_registry
    """
    settings = _build_settings(config_file, database=database, dry_run=dry_run)

    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Set SYNC_BRIDGE_REMOTE__* variables or use --config.")
        raise typer.Exit(1)

    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )

    registry = _build_registry(factory, settings)

    if module_id is not None and module_id not in registry:
        print_error(f"Unknown module '{module_id}'")
        raise typer.Exit(1)

    with (
        create_remote_client(settings) as remote,
        SQLiteDatabase(settings.queue.database_path) as db,
    ):
        ctx = SyncContext.from_settings(settings, registry, remote=remote, db=db)
        breaker = (
            CircuitBreaker(db, settings.breaker, clock=ctx.clock)
            if settings.breaker.enabled
            else None
        )
        module_breaker = (
            ModuleCircuitBreaker(db, settings.breaker, clock=ctx.clock)
            if settings.breaker.module_enabled
            else None
        )
        engine = SyncEngine(ctx, breaker=breaker, module_breaker=module_breaker)
        stats = engine.run(module_id=module_id)

    if stats.breaker_open and not stats.claimed:
        print_warning("Circuit breaker is open; remote system is being given time to recover.")
        raise typer.Exit(2)

    if stats.dry_run:
        print_warning("DRY RUN - No jobs were claimed")
        if stats.due_jobs:
            print_jobs(stats.due_jobs, title="Due Jobs")
        else:
            print_info("No jobs are due.")
        return

    if not quiet:
        console.print()
        print_summary(stats)

    if stats.errors:
        console.print()
        print_warning(f"{len(stats.errors)} job(s) failed:")
        for err in stats.errors[:10]:
            print_error(f"  • {err}")
        if len(stats.errors) > 10:
            print_info(f"  ... and {len(stats.errors) - 10} more")

    if stats.dead > 0:
        print_warning(f"{stats.dead} job(s) dead-lettered. Inspect with: sync-bridge jobs --status dead")
        raise typer.Exit(1)

    if stats.breaker_open:
        print_warning("Circuit breaker opened during the run.")
    print_success("Dispatch run completed.")


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """Show queue statistics."""
    settings = _build_settings(config_file, database=database)
    with SQLiteDatabase(settings.queue.database_path) as db:
        stats = JobQueue(db, options=settings.queue).stats()
        breaker = CircuitBreaker(db, settings.breaker).state
        paused = ModuleCircuitBreaker(db, settings.breaker).open_modules()

    if stats.total == 0:
        print_info("Queue is empty.")
    else:
        print_queue_stats(stats)
    if settings.breaker.enabled:
        print_info(f"Circuit breaker: {breaker.value}")
    if paused:
        print_warning(f"Paused modules: {', '.join(paused)}")


# =============================================================================
# JOBS Command
# =============================================================================
@app.command()
def jobs(
    job_status: Optional[JobStatus] = typer.Option(
        None,
        "--status",
        "-s",
        help="Only list jobs with this status.",
    ),
    module_id: Optional[str] = typer.Option(
        None,
        "--module",
        "-m",
        help="Only list jobs of this module.",
    ),
    limit: int = typer.Option(
        50,
        "--limit",
        "-l",
        min=1,
        help="Maximum jobs to list.",
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """List jobs, newest first."""
    settings = _build_settings(config_file, database=database)
    with SQLiteDatabase(settings.queue.database_path) as db:
        found = JobQueue(db, options=settings.queue).list_jobs(
            status=job_status, module=module_id, limit=limit
        )

    if not found:
        print_info("No matching jobs.")
        return
    print_jobs(found)


# =============================================================================
# RETRY Command
# =============================================================================
@app.command()
def retry(
    job_id: Optional[int] = typer.Argument(
        None,
        help="Dead job to re-enqueue.",
    ),
    all_dead: bool = typer.Option(
        False,
        "--all",
        help="Re-enqueue every dead job.",
    ),
    module_id: Optional[str] = typer.Option(
        None,
        "--module",
        "-m",
        help="With --all, only jobs of this module.",
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """Manually re-enqueue dead jobs with a fresh attempt budget."""
    if job_id is None and not all_dead:
        print_error("Give a job id or --all.")
        raise typer.Exit(1)

    settings = _build_settings(config_file, database=database)
    with SQLiteDatabase(settings.queue.database_path) as db:
        queue = JobQueue(db, options=settings.queue)
        if all_dead:
            count = queue.requeue_dead(module=module_id)
            print_success(f"Re-enqueued {count} dead job(s).")
            return
        if not queue.requeue(job_id):
            print_error(f"Job {job_id} is not dead or does not exist.")
            raise typer.Exit(1)
    print_success(f"Job {job_id} re-enqueued.")


# =============================================================================
# CANCEL Command
# =============================================================================
@app.command()
def cancel(
    job_id: int = typer.Argument(..., help="Pending job to remove."),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """Remove a job that has not been claimed yet."""
    settings = _build_settings(config_file, database=database)
    with SQLiteDatabase(settings.queue.database_path) as db:
        cancelled = JobQueue(db, options=settings.queue).cancel(job_id)

    if not cancelled:
        print_error(f"Job {job_id} is not pending or does not exist.")
        raise typer.Exit(1)
    print_success(f"Job {job_id} cancelled.")


# =============================================================================
# CLEANUP Command
# =============================================================================
@app.command()
def cleanup(
    days: Optional[int] = typer.Option(
        None,
        "--days",
        min=1,
        help="Retention in days (defaults to queue.retention_days).",
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """Purge done and dead jobs older than the retention window."""
    settings = _build_settings(config_file, database=database)
    with SQLiteDatabase(settings.queue.database_path) as db:
        removed = JobQueue(db, options=settings.queue).purge(days)
    print_success(f"Purged {removed} job(s).")


# =============================================================================
# RECONCILE Command
# =============================================================================
@app.command()
def reconcile(
    module_id: str = typer.Argument(..., help="Module owning the entity type."),
    entity_type: str = typer.Argument(..., help="Entity type to check."),
    factory: str = typer.Option(
        ...,
        "--factory",
        "-f",
        help="Registry factory as 'package.module:callable', called with the settings.",
    ),
    fix: bool = typer.Option(
        False,
        "--fix",
        help="Delete orphaned mappings.",
    ),
    config_file: Optional[Path] = ConfigOption,
    database: Optional[Path] = DatabaseOption,
) -> None:
    """Find mappings whose remote record no longer exists."""
    settings = _build_settings(config_file, database=database)

    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        raise typer.Exit(1)

    setup_logging(level=settings.logging.level, format_style=settings.logging.format)

    registry = _build_registry(factory, settings)

    with (
        create_remote_client(settings) as remote,
        SQLiteDatabase(settings.queue.database_path) as db,
    ):
        ctx = SyncContext.from_settings(settings, registry, remote=remote, db=db)
        try:
            report = Reconciler(ctx).reconcile(module_id, entity_type, fix=fix)
        except (ConfigurationError, RemoteError) as e:
            print_error(str(e))
            raise typer.Exit(1)

    print_reconcile_report(report)
    if report.orphaned and not fix:
        print_info("Run again with --fix to remove orphaned mappings.")


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with default values.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Manage configuration."""
    if init:
        if output.exists():
            print_error(f"{output} already exists.")
            raise typer.Exit(1)
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = _build_settings(config_file)
        api_key = settings.remote.api_key.get_secret_value()
        print_settings([
            ("Remote URL", settings.remote.url),
            ("Remote Database", settings.remote.database),
            ("Remote User", settings.remote.username),
            ("API Key", "********" if api_key else ""),
            ("Queue Database", settings.queue.database_path),
            ("Batch Size", settings.queue.batch_size),
            ("Max Attempts", settings.queue.max_attempts),
            (
                "Backoff",
                f"{settings.queue.backoff_base_seconds:g}s base, "
                f"{settings.queue.backoff_max_seconds:g}s cap",
            ),
            ("Push Debounce", f"{settings.queue.push_debounce_seconds}s"),
            ("Circuit Breaker", "enabled" if settings.breaker.enabled else "disabled"),
            ("Disabled Modules", ", ".join(settings.sync.disabled_modules)),
        ])
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None = None,
    database: Path | None = None,
    dry_run: bool | None = None,
) -> Settings:
    """Build settings from config file and overrides."""
    try:
        settings = load_settings(config_file)
    except (ValueError, ValidationError) as e:
        print_error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    # Apply CLI overrides
    if database is not None:
        settings.queue.database_path = database
    if dry_run:
        settings.sync.dry_run = True

    return settings


def _load_factory(spec: str) -> RegistryFactory:
    """Import a registry factory given as 'package.module:callable'."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ImportError("expected 'package.module:callable'")
    target = importlib.import_module(module_name)
    factory = getattr(target, attr)
    if not callable(factory):
        raise TypeError(f"{spec} is not callable")
    return factory


def _build_registry(spec: str, settings: Settings) -> ModuleRegistry:
    """Call a registry factory and check what it returns."""
    try:
        registry = _load_factory(spec)(settings)
    except (ConfigurationError, ImportError, AttributeError, TypeError) as e:
        print_error(f"Cannot build module registry from '{spec}': {e}")
        raise typer.Exit(1)
    if not isinstance(registry, ModuleRegistry):
        print_error(f"'{spec}' did not return a ModuleRegistry")
        raise typer.Exit(1)
    return registry


if __name__ == "__main__":
    app()
