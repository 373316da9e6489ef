"""
Named job queues and their default execution policies.
"""

from typing import Any

from botqueue.config.logging import get_logger
from botqueue.v1.core.exceptions import ServiceUnavailableError
from botqueue.v1.infra.jobs.models import JobState
from botqueue.v1.infra.jobs.schemas import (
    Backoff,
    BackoffKind,
    JobOptions,
    JobPolicy,
    JobRecord,
    QueueCounts,
    Recurrence,
    RepeatableRecord,
)
from botqueue.v1.infra.jobs.store import QueueStore

logger = get_logger(__name__)

DEFERRED_TASK_QUEUE = "deferred-tasks"
SCHEDULED_REPORT_QUEUE = "scheduled-reports"

DEFERRED_TASK_POLICY = JobPolicy(
    max_attempts=3,
    backoff=Backoff(kind=BackoffKind.EXPONENTIAL, delay_ms=1000),
    remove_on_complete=True,
    remove_on_fail=False,
)

SCHEDULED_REPORT_POLICY = JobPolicy(
    max_attempts=2,
    backoff=Backoff(kind=BackoffKind.FIXED, delay_ms=5000),
    remove_on_complete=True,
    remove_on_fail=False,
)


class JobQueue:
    """
    A named channel of jobs with its own default policy.

    Enqueue failures surface as ``ServiceUnavailableError`` and are never
    retried here; retries only apply to jobs the store already accepted.
    """

    def __init__(self, name: str, store: QueueStore, default_policy: JobPolicy):
        self.name = name
        self.store = store
        self.default_policy = default_policy

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> JobRecord:
        """Add a one-shot job, immediately due or after ``options.delay_ms``."""
        options = options or JobOptions()
        payload = payload or {}

        try:
            job = await self.store.add_job(
                self.name,
                job_type,
                payload,
                options.apply_to(self.default_policy),
                delay_ms=options.delay_ms,
            )
        except ServiceUnavailableError as e:
            logger.error(
                "Failed to add job to queue",
                queue=self.name,
                job_type=job_type,
                error=str(e),
            )
            raise ServiceUnavailableError(
                f"Unable to enqueue {job_type} job", details={"queue": self.name}
            ) from e

        logger.info(
            "Added job to queue",
            queue=self.name,
            job_id=job.id,
            job_type=job_type,
            delay_ms=max(0, options.delay_ms),
        )
        return job

    async def schedule_repeating(
        self,
        job_type: str,
        payload: dict[str, Any] | None,
        recurrence: Recurrence,
        name: str | None = None,
    ) -> RepeatableRecord:
        """
        Register a recurring job under a stable logical name.

        The name defaults to the job type. Registering the same name again
        replaces the previous schedule instead of adding a second one.
        """
        name = name or job_type

        try:
            repeatable = await self.store.upsert_repeatable(
                self.name,
                name,
                job_type,
                payload or {},
                self.default_policy,
                recurrence,
            )
        except ServiceUnavailableError as e:
            logger.error(
                "Failed to register repeating job",
                queue=self.name,
                name=name,
                error=str(e),
            )
            raise ServiceUnavailableError(
                f"Unable to schedule {job_type} job", details={"queue": self.name}
            ) from e

        logger.info(
            "Registered repeating job",
            queue=self.name,
            name=name,
            job_type=job_type,
            every_ms=recurrence.every_ms,
            cron=recurrence.cron,
            next_run_at=repeatable.next_run_at.isoformat(),
        )
        return repeatable

    async def remove_repeating(self, name: str) -> bool:
        removed = await self.store.remove_repeatable(self.name, name)
        if removed:
            logger.info("Removed repeating job", queue=self.name, name=name)
        return removed

    async def list_repeating(self) -> list[RepeatableRecord]:
        return await self.store.list_repeatables(self.name)

    async def get_job(self, job_id: int) -> JobRecord | None:
        return await self.store.get_job(job_id, queue_name=self.name)

    async def list_jobs(
        self, state: JobState | None = None, limit: int = 50
    ) -> list[JobRecord]:
        return await self.store.list_jobs(self.name, state=state, limit=limit)

    async def retry_failed(self, job_id: int) -> JobRecord | None:
        job = await self.store.retry_failed(self.name, job_id)
        if job:
            logger.info("Job retried", queue=self.name, job_id=job_id)
        return job

    async def stats(self) -> QueueCounts:
        return await self.store.counts(self.name)

    async def clean(self, completed_grace_ms: int, failed_grace_ms: int) -> int:
        """Drop completed and failed jobs older than their grace periods."""
        removed = await self.store.clean(
            self.name, completed_grace_ms, JobState.COMPLETED
        )
        removed += await self.store.clean(self.name, failed_grace_ms, JobState.FAILED)
        if removed:
            logger.info("Cleaned queue", queue=self.name, removed=removed)
        return removed
