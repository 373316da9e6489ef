"""Schedule Commands - Recurring job registrations"""

import typer
from rich.console import Console

from botqueue.v1.core.exceptions import BotQueueException

from ..utils.formatting import (
    create_repeatables_table,
    print_error,
    print_info,
    print_success,
)
from ..utils.jobs import run_with_job_system

console = Console()
app = typer.Typer(name="schedules", help="Recurring job commands")


@app.command("init")
def init_schedules():
    """📅 (Re)register every recurring job"""

    async def operation(system):
        return await system.scheduler.initialize_scheduled_jobs()

    try:
        registered = run_with_job_system(operation)
    except BotQueueException as e:
        print_error(f"Failed to initialize scheduled jobs: {e.message}")
        raise typer.Exit(1) from None

    print_success(f"Registered {len(registered)} recurring job(s)")
    console.print(create_repeatables_table(registered))


@app.command("list")
def list_schedules():
    """📋 Show recurring job registrations"""

    async def operation(system):
        repeatables = []
        for q in system.queues.values():
            repeatables.extend(await q.list_repeating())
        return repeatables

    try:
        repeatables = run_with_job_system(operation)
    except BotQueueException as e:
        print_error(f"Failed to list scheduled jobs: {e.message}")
        raise typer.Exit(1) from None

    if not repeatables:
        print_info("No recurring jobs registered. Run: botqueue schedules init")
        return

    console.print(create_repeatables_table(repeatables))
