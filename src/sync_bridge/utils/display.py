"""
Rich Terminal Display Components.

Provides console UI for:
- Queue statistics tables
- Job listings
- Dispatch run summaries
- Status messages
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from sync_bridge.core.engine import DispatchStats
    from sync_bridge.core.queue import Job, QueueStats
    from sync_bridge.core.reconciler import ReconcileReport


console = Console()


def format_status(status: str) -> str:
    """Format job status with color."""
    colors = {
        "done": "[green]✓ done[/green]",
        "processing": "[yellow]⟳ processing[/yellow]",
        "dead": "[red]✗ dead[/red]",
        "pending": "[dim]pending[/dim]",
    }
    return colors.get(status, status)


def print_queue_stats(stats: "QueueStats") -> None:
    """Print job counts overall and per module."""
    table = Table(title="Queue Status", border_style="blue")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", justify="right")

    table.add_row(format_status("pending"), f"{stats.pending:,}")
    table.add_row("  due now", f"{stats.due:,}")
    table.add_row(format_status("processing"), f"{stats.processing:,}")
    table.add_row(format_status("done"), f"{stats.done:,}")
    table.add_row(format_status("dead"), f"{stats.dead:,}")
    table.add_row("[bold]Total[/bold]", f"[bold]{stats.total:,}[/bold]")
    console.print(table)

    if stats.by_module:
        console.print()
        modules = Table(title="Per Module", border_style="green")
        modules.add_column("Module")
        for status in ("pending", "processing", "done", "dead"):
            modules.add_column(status.capitalize(), justify="right")
        for module_id, counts in sorted(stats.by_module.items()):
            modules.add_row(
                module_id,
                *(str(counts.get(s, 0)) for s in ("pending", "processing", "done", "dead")),
            )
        console.print(modules)


def print_jobs(jobs: list["Job"], title: str = "Jobs") -> None:
    """Print a table of jobs."""
    table = Table(title=title, border_style="cyan")
    table.add_column("ID", justify="right")
    table.add_column("Module")
    table.add_column("Entity")
    table.add_column("Action")
    table.add_column("Dir")
    table.add_column("Local", justify="right")
    table.add_column("Remote", justify="right")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next Attempt")
    table.add_column("Last Error", overflow="fold")

    for job in jobs:
        table.add_row(
            str(job.id),
            job.module_id,
            job.entity_type,
            job.action.value,
            job.direction.value,
            "" if job.local_id is None else str(job.local_id),
            "" if job.remote_id is None else str(job.remote_id),
            format_status(job.status.value),
            str(job.attempt_count),
            job.next_attempt_at[:19],
            job.last_error or "",
        )

    console.print(table)


def print_summary(stats: "DispatchStats") -> None:
    """Print a summary table after a dispatch run."""
    table = Table(title="Dispatch Summary", border_style="green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Duration", f"{stats.duration_seconds:.1f}s")
    table.add_row("Batches", str(stats.batches))
    table.add_row("Claimed", f"{stats.claimed:,}")
    table.add_row("Succeeded", f"{stats.succeeded:,}")
    table.add_row("Retried", f"{stats.retried:,}")
    table.add_row("Dead", f"{stats.dead:,}")
    table.add_row("Skipped", f"{stats.skipped:,}")
    if stats.released:
        table.add_row("Released", f"{stats.released:,}")

    console.print(table)


def print_reconcile_report(report: "ReconcileReport") -> None:
    """Print orphaned mappings found by the reconciler."""
    title = f"{report.module_id}/{report.entity_type} -> {report.remote_model}"
    table = Table(title=title, border_style="yellow" if report.orphaned else "green")
    table.add_column("Local ID", justify="right")
    table.add_column("Remote ID", justify="right")
    table.add_column("Mapped At")

    for mapping in report.orphaned:
        table.add_row(str(mapping.local_id), str(mapping.remote_id), mapping.created_at[:19])

    console.print(table)
    console.print(
        f"Checked {report.checked:,} mapping(s): "
        f"{report.orphan_count:,} orphaned, {report.fixed:,} removed"
    )


def print_settings(rows: list[tuple[str, Any]]) -> None:
    """Print configuration key/value pairs."""
    table = Table(title="Current Configuration", border_style="cyan")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in rows:
        shown = "[dim]not set[/dim]" if value in (None, "") else str(value)
        table.add_row(key, shown)
    console.print(table)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
