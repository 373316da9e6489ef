"""Queue Commands - Inspect, clean and retry jobs"""

import typer
from rich.console import Console

from botqueue.v1.core.exceptions import BotQueueException
from botqueue.v1.infra.jobs.models import JobState

from ..utils.formatting import (
    create_counts_table,
    create_jobs_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from ..utils.jobs import run_with_job_system

console = Console()
app = typer.Typer(name="queues", help="Queue inspection and maintenance commands")


@app.command("stats")
def show_stats(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Only this queue"),
    state: JobState | None = typer.Option(
        None, "--state", "-s", help="List the queue's jobs in this state"
    ),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum jobs to list"),
):
    """📊 Show job counts per queue"""

    async def operation(system):
        queues = [system.get_queue(queue)] if queue else list(system.queues.values())
        counts = [await q.stats() for q in queues]
        jobs = await queues[0].list_jobs(state=state, limit=limit) if queue else []
        return counts, jobs

    try:
        counts, jobs = run_with_job_system(operation)
    except BotQueueException as e:
        print_error(f"Failed to read queue stats: {e.message}")
        raise typer.Exit(1) from None

    console.print(create_counts_table(counts))
    if queue:
        if jobs:
            console.print(create_jobs_table(jobs, title=f"{queue} jobs"))
        else:
            print_info("No matching jobs")


@app.command("clean")
def clean(
    completed_hours: int = typer.Option(
        24, "--completed-hours", help="Keep completed jobs younger than this"
    ),
    failed_days: int = typer.Option(
        7, "--failed-days", help="Keep failed jobs younger than this"
    ),
):
    """🧹 Delete old completed and failed jobs"""

    async def operation(system):
        return {
            name: await q.clean(
                completed_grace_ms=completed_hours * 3600 * 1000,
                failed_grace_ms=failed_days * 24 * 3600 * 1000,
            )
            for name, q in system.queues.items()
        }

    try:
        removed = run_with_job_system(operation)
    except BotQueueException as e:
        print_error(f"Failed to clean queues: {e.message}")
        raise typer.Exit(1) from None

    for name, count in removed.items():
        print_success(f"{name}: removed {count} job(s)")


@app.command("retry")
def retry(
    queue: str = typer.Argument(..., help="Queue name"),
    job_id: int = typer.Argument(..., help="ID of a failed job"),
):
    """🔁 Re-queue a failed job"""

    async def operation(system):
        return await system.get_queue(queue).retry_failed(job_id)

    try:
        job = run_with_job_system(operation)
    except BotQueueException as e:
        print_error(f"Failed to retry job: {e.message}")
        raise typer.Exit(1) from None

    if job is None:
        print_warning(f"No failed job {job_id} in {queue}")
        raise typer.Exit(1)

    print_success(f"Job {job_id} re-queued on {queue}")
