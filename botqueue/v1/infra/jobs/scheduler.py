"""
Scheduling operations built on top of the job queues.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from botqueue.config.logging import get_logger
from botqueue.v1.core.exceptions import ValidationError
from botqueue.v1.infra.jobs.handlers import REPORT_TYPES
from botqueue.v1.infra.jobs.queues import JobQueue
from botqueue.v1.infra.jobs.registry_init import (
    GENERATE_CUSTOM_REPORT,
    PROCESS_PENDING_FOLLOW_UPS,
    SEND_FOLLOW_UP,
    report_job_type,
)
from botqueue.v1.infra.jobs.schemas import (
    JobOptions,
    JobRecord,
    Recurrence,
    RepeatableRecord,
    system_clock,
    to_epoch_ms,
)

logger = get_logger(__name__)

# Daily at 01:00, Mondays at 02:00, the 1st of the month at 03:00
REPORT_CRON = {
    "daily": "0 1 * * *",
    "weekly": "0 2 * * mon",
    "monthly": "0 3 1 * *",
}


class JobScheduler:
    """One-shot, interval and cron scheduling for follow-ups and reports."""

    def __init__(
        self,
        deferred_tasks: JobQueue,
        scheduled_reports: JobQueue,
        clock: Callable[[], int] = system_clock,
        follow_up_interval_minutes: int = 15,
    ):
        self.deferred_tasks = deferred_tasks
        self.scheduled_reports = scheduled_reports
        self.clock = clock
        self.follow_up_interval_minutes = follow_up_interval_minutes

    def recurring_job_names(self) -> dict[str, JobQueue]:
        """Logical names of every recurring job owned by the scheduler."""
        names = {PROCESS_PENDING_FOLLOW_UPS: self.deferred_tasks}
        for report_type in REPORT_TYPES:
            names[report_job_type(report_type)] = self.scheduled_reports
        return names

    async def schedule_follow_up(
        self, follow_up_id: int, scheduled_time: datetime
    ) -> JobRecord:
        """Send a follow-up at ``scheduled_time``, or right away if it has passed."""
        delay_ms = max(0, to_epoch_ms(scheduled_time) - self.clock())

        job = await self.deferred_tasks.enqueue(
            SEND_FOLLOW_UP,
            {"follow_up_id": follow_up_id},
            JobOptions(delay_ms=delay_ms),
        )

        logger.info(
            "Scheduled follow-up job",
            job_id=job.id,
            follow_up_id=follow_up_id,
            scheduled_time=scheduled_time.isoformat(),
            delay_ms=delay_ms,
        )
        return job

    async def schedule_pending_follow_ups(
        self, interval_minutes: int | None = None
    ) -> RepeatableRecord:
        """Sweep pending follow-ups every ``interval_minutes``."""
        if interval_minutes is None:
            interval_minutes = self.follow_up_interval_minutes
        if interval_minutes <= 0:
            raise ValidationError(
                f"Interval must be a positive number of minutes, got {interval_minutes}"
            )

        return await self.deferred_tasks.schedule_repeating(
            PROCESS_PENDING_FOLLOW_UPS,
            {},
            Recurrence(every_ms=interval_minutes * 60_000),
        )

    async def schedule_report(self, report_type: str) -> RepeatableRecord:
        """Generate the ``daily``, ``weekly`` or ``monthly`` report on its cron."""
        cron = REPORT_CRON.get(report_type)
        if cron is None:
            raise ValidationError(f"Invalid report type: {report_type}")

        return await self.scheduled_reports.schedule_repeating(
            report_job_type(report_type), {}, Recurrence(cron=cron)
        )

    async def schedule_custom_report(
        self, options: dict[str, Any], run_at: datetime | None = None
    ) -> JobRecord:
        """Generate a one-off report with caller-supplied options."""
        if not options.get("report_type"):
            raise ValidationError("report_type is required for a custom report")

        delay_ms = max(0, to_epoch_ms(run_at) - self.clock()) if run_at else 0
        return await self.scheduled_reports.enqueue(
            GENERATE_CUSTOM_REPORT, dict(options), JobOptions(delay_ms=delay_ms)
        )

    async def initialize_scheduled_jobs(self) -> list[RepeatableRecord]:
        """
        (Re)register every recurring job.

        Existing registrations are removed first, so calling this on every
        process start never leaves duplicate schedules behind.
        """
        for name, queue in self.recurring_job_names().items():
            await queue.remove_repeating(name)

        registered = [await self.schedule_pending_follow_ups()]
        for report_type in REPORT_TYPES:
            registered.append(await self.schedule_report(report_type))

        logger.info(
            "All scheduled jobs initialized",
            jobs=[repeatable.key for repeatable in registered],
        )
        return registered
