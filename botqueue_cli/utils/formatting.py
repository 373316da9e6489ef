"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from botqueue.v1.infra.jobs.schemas import (
    JobRecord,
    QueueCounts,
    RepeatableRecord,
    from_epoch_ms,
)

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_time(epoch_ms: int | None) -> str:
    moment = from_epoch_ms(epoch_ms)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC") if moment else "—"


def create_counts_table(counts: list[QueueCounts]) -> Table:
    """Create a formatted table of per-state job counts"""
    table = Table(title="Queues", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan", no_wrap=True)
    for column in ("Waiting", "Delayed", "Active", "Retry", "Completed", "Failed"):
        table.add_column(column, justify="right")

    for queue in counts:
        table.add_row(
            queue.queue_name,
            str(queue.waiting),
            str(queue.delayed),
            f"[yellow]{queue.active}[/yellow]",
            str(queue.retry_pending),
            f"[green]{queue.completed}[/green]",
            f"[red]{queue.failed}[/red]" if queue.failed else "0",
        )

    return table


def create_jobs_table(jobs: list[JobRecord], title: str = "Jobs") -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("State", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Run At", justify="left")
    table.add_column("Last Error", justify="left", style="red")

    for job in jobs:
        table.add_row(
            str(job.id),
            job.type,
            job.state.value,
            f"{job.attempts_made}/{job.max_attempts}",
            format_time(job.run_at_ms),
            _truncate(job.last_error),
        )

    return table


def create_repeatables_table(repeatables: list[RepeatableRecord]) -> Table:
    """Create a formatted table of recurring job registrations"""
    table = Table(title="Scheduled Jobs", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan")
    table.add_column("Name", justify="left", style="magenta")
    table.add_column("Schedule", justify="left", style="yellow")
    table.add_column("Next Run", justify="left", style="green")

    for repeatable in repeatables:
        schedule = (
            f"cron {repeatable.cron} ({repeatable.timezone})"
            if repeatable.cron
            else f"every {_format_interval(repeatable.every_ms)}"
        )
        table.add_row(
            repeatable.queue_name,
            repeatable.name,
            schedule,
            format_time(repeatable.next_run_at_ms),
        )

    return table


def _format_interval(every_ms: int | None) -> str:
    if not every_ms:
        return "—"
    seconds = every_ms // 1000
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def _truncate(value: Any, width: int = 40) -> str:
    if not value:
        return "—"
    text = str(value)
    return text if len(text) <= width else text[: width - 3] + "..."
