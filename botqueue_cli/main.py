"""Bot Queue CLI - Main Entry Point"""

import asyncio
import signal

import typer
from rich.console import Console
from rich.panel import Panel

from botqueue.config.logging import get_logger, setup_logging

from .commands import queues, schedules
from .utils.formatting import print_error, print_info, print_warning
from .utils.jobs import open_job_system

console = Console()
logger = get_logger(__name__)

app = typer.Typer(
    name="botqueue",
    help="📬 Bot Queue - Background jobs and scheduling CLI",
    rich_markup_mode="rich",
)

app.add_typer(queues.app, name="queues")
app.add_typer(schedules.app, name="schedules")


@app.command()
def worker(
    init_schedules: bool = typer.Option(
        False, "--init-schedules", help="Register recurring jobs before starting"
    ),
):
    """⚙️ Run the job dispatchers until interrupted"""
    setup_logging()

    async def run() -> None:
        async with open_job_system() as system:
            if not system.dispatchers:
                print_warning(
                    "No handlers configured. Set FOLLOW_UP_OPERATIONS or "
                    "REPORT_OPERATIONS to a 'package.module:factory' import string."
                )
                raise typer.Exit(1)

            if init_schedules:
                await system.scheduler.initialize_scheduled_jobs()

            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)

            tasks = system.start_workers()
            print_info(
                "Dispatching "
                + ", ".join(d.queue.name for d in system.dispatchers)
                + " (Ctrl+C to stop)"
            )
            await asyncio.wait(
                [asyncio.create_task(stop.wait()), *tasks],
                return_when=asyncio.FIRST_COMPLETED,
            )
            logger.info("Shutting down workers")

    try:
        asyncio.run(run())
    except typer.Exit:
        raise
    except Exception as e:
        print_error(f"Worker stopped: {e}")
        raise typer.Exit(1) from None


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"📬 [bold cyan]Bot Queue CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Type: [yellow]Command Line Interface[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    📬 Bot Queue CLI

    Run job dispatchers, register recurring jobs and inspect the queues.
    """
    if version:
        from . import __version__

        console.print(f"Bot Queue CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
