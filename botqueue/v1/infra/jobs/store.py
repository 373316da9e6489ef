"""
Durable queue store backed by SQLAlchemy.

Every queue shares one store. The store is the only source of truth for job
state: dispatchers claim, complete and fail jobs exclusively through it, and
it applies each job's retry policy when an attempt fails.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from botqueue.config.logging import get_logger
from botqueue.infra.database import Database
from botqueue.v1.core.exceptions import (
    BotQueueException,
    ServiceUnavailableError,
    ValidationError,
)
from botqueue.v1.infra.jobs.models import (
    CLAIMABLE_STATES,
    JobState,
    QueuedJob,
    RepeatableJob,
)
from botqueue.v1.infra.jobs.schemas import (
    Backoff,
    FailureOutcome,
    JobPolicy,
    JobRecord,
    QueueCounts,
    Recurrence,
    RepeatableRecord,
    system_clock,
)

logger = get_logger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


def repeat_key(queue_name: str, name: str) -> str:
    return f"{queue_name}:{name}"


def next_cron_fire(cron: str, timezone: str, after_ms: int) -> int:
    """
    First fire time of ``cron`` strictly after ``after_ms``.

    Numeric day-of-week fields count from Monday as 0; prefer day names.
    """
    try:
        trigger = CronTrigger.from_crontab(cron, timezone=timezone)
    except ValueError as e:
        raise ValidationError(
            f"Invalid cron expression: {cron}", details={"error": str(e)}
        ) from e

    now = datetime.fromtimestamp((after_ms + 1) / 1000, ZoneInfo(timezone))
    fire_time = trigger.get_next_fire_time(None, now)
    if fire_time is None:
        raise ValidationError(f"Cron expression never fires: {cron}")
    return int(fire_time.timestamp() * 1000)


class QueueStore:
    """Persistent store of pending, delayed and repeating work items."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], int] = system_clock,
        timezone: str = "UTC",
    ):
        self.database = database
        self.clock = clock
        self.timezone = timezone

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session, translating connectivity failures."""
        try:
            async with self.database.SessionLocal() as session:
                yield session
        except DBAPIError as e:
            if isinstance(e, (OperationalError, InterfaceError)) or e.connection_invalidated:
                raise ServiceUnavailableError(
                    "Queue store is unreachable", details={"error": str(e)}
                ) from e
            raise
        except OSError as e:
            raise ServiceUnavailableError(
                "Queue store is unreachable", details={"error": str(e)}
            ) from e

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    # Jobs

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        policy: JobPolicy,
        delay_ms: int = 0,
        repeat_key: str | None = None,
    ) -> JobRecord:
        """Persist a new job. Negative delays run as soon as possible."""
        now = self.clock()
        delay_ms = max(0, delay_ms)

        job = QueuedJob(
            queue_name=queue_name,
            type=job_type,
            payload=payload,
            state=(JobState.DELAYED if delay_ms > 0 else JobState.WAITING).value,
            run_at_ms=now + delay_ms,
            attempts_made=0,
            max_attempts=policy.max_attempts,
            backoff_kind=policy.backoff.kind.value,
            backoff_delay_ms=policy.backoff.delay_ms,
            remove_on_complete=policy.remove_on_complete,
            remove_on_fail=policy.remove_on_fail,
            repeat_key=repeat_key,
            created_at_ms=now,
        )

        async with self._session() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return JobRecord.model_validate(job)

    async def get_job(self, job_id: int, queue_name: str | None = None) -> JobRecord | None:
        query = select(QueuedJob).where(QueuedJob.id == job_id)
        if queue_name:
            query = query.where(QueuedJob.queue_name == queue_name)

        async with self._session() as session:
            job = (await session.execute(query)).scalar_one_or_none()
            return JobRecord.model_validate(job) if job else None

    async def list_jobs(
        self, queue_name: str, state: JobState | None = None, limit: int = 50
    ) -> list[JobRecord]:
        query = select(QueuedJob).where(QueuedJob.queue_name == queue_name)
        if state:
            query = query.where(QueuedJob.state == state.value)
        query = query.order_by(QueuedJob.id.desc()).limit(limit)

        async with self._session() as session:
            jobs = (await session.execute(query)).scalars().all()
            return [JobRecord.model_validate(job) for job in jobs]

    async def claim_next(
        self, queue_name: str, worker_id: str, lock_duration_ms: int
    ) -> JobRecord | None:
        """
        Move the next due job to ``active`` and count the attempt.

        Claiming is a conditional update on a claimable state, so the same job
        can never be handed to two workers at once.
        """
        now = self.clock()

        async with self._session() as session:
            candidate = await session.execute(
                select(QueuedJob.id)
                .where(
                    QueuedJob.queue_name == queue_name,
                    QueuedJob.state.in_(CLAIMABLE_STATES),
                    QueuedJob.run_at_ms <= now,
                )
                .order_by(QueuedJob.run_at_ms, QueuedJob.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job_id = candidate.scalar_one_or_none()
            if job_id is None:
                return None

            claimed = await session.execute(
                update(QueuedJob)
                .where(QueuedJob.id == job_id, QueuedJob.state.in_(CLAIMABLE_STATES))
                .values(
                    state=JobState.ACTIVE.value,
                    attempts_made=QueuedJob.attempts_made + 1,
                    locked_by=worker_id,
                    lock_expires_at_ms=now + lock_duration_ms,
                    processed_at_ms=now,
                )
            )
            await session.commit()

            if claimed.rowcount == 0:
                return None

            job = await session.get(QueuedJob, job_id)
            return JobRecord.model_validate(job)

    async def extend_locks(
        self, job_ids: list[int], worker_id: str, lock_duration_ms: int
    ) -> int:
        """Renew the locks this worker holds on its in-flight jobs."""
        if not job_ids:
            return 0

        async with self._session() as session:
            result = await session.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.id.in_(job_ids),
                    QueuedJob.locked_by == worker_id,
                    QueuedJob.state == JobState.ACTIVE.value,
                )
                .values(lock_expires_at_ms=self.clock() + lock_duration_ms)
            )
            await session.commit()
            return result.rowcount

    async def _owned_active_job(
        self, session: AsyncSession, job: JobRecord
    ) -> QueuedJob | None:
        row = await session.get(QueuedJob, job.id, with_for_update=True)
        if (
            row is None
            or row.state != JobState.ACTIVE.value
            or row.locked_by != job.locked_by
        ):
            logger.warning(
                "Job no longer owned by worker",
                job_id=job.id,
                queue=job.queue_name,
                worker_id=job.locked_by,
            )
            return None
        return row

    async def complete_job(
        self, job: JobRecord, result: dict[str, Any] | None = None
    ) -> bool:
        """Record success, pruning the job when its policy asks for it."""
        async with self._session() as session:
            row = await self._owned_active_job(session, job)
            if row is None:
                return False

            if row.remove_on_complete:
                await session.delete(row)
            else:
                row.state = JobState.COMPLETED.value
                row.result = result
                row.finished_at_ms = self.clock()
                row.locked_by = None
                row.lock_expires_at_ms = None

            await session.commit()
            return True

    async def fail_job(
        self, job: JobRecord, error: Exception, retryable: bool = True
    ) -> FailureOutcome | None:
        """
        Record a failed attempt and apply the job's retry policy.

        The job is scheduled again after its backoff delay while attempts
        remain. Otherwise it is exhausted and kept only if the policy retains
        failed jobs. Non-retryable failures exhaust on the spot.
        """
        now = self.clock()

        async with self._session() as session:
            row = await self._owned_active_job(session, job)
            if row is None:
                return None

            row.last_error = str(error)
            row.error_code = (
                error.error_code.value if isinstance(error, BotQueueException) else None
            )
            row.locked_by = None
            row.lock_expires_at_ms = None

            outcome = FailureOutcome(
                job_id=row.id,
                attempts_made=row.attempts_made,
                exhausted=not retryable or row.attempts_made >= row.max_attempts,
                retained=True,
            )

            if outcome.exhausted:
                if row.remove_on_fail:
                    await session.delete(row)
                    outcome.retained = False
                else:
                    row.state = JobState.FAILED.value
                    row.finished_at_ms = now
            else:
                backoff = Backoff(kind=row.backoff_kind, delay_ms=row.backoff_delay_ms)
                row.state = JobState.RETRY_PENDING.value
                row.run_at_ms = now + backoff.delay_for(row.attempts_made)
                outcome.next_run_at_ms = row.run_at_ms

            await session.commit()
            return outcome

    async def recover_stalled(self, queue_name: str) -> list[JobRecord]:
        """Return jobs whose worker stopped renewing its lock to the queue."""
        now = self.clock()

        async with self._session() as session:
            result = await session.execute(
                select(QueuedJob)
                .where(
                    QueuedJob.queue_name == queue_name,
                    QueuedJob.state == JobState.ACTIVE.value,
                    QueuedJob.lock_expires_at_ms < now,
                )
                .with_for_update(skip_locked=True)
            )
            stalled = result.scalars().all()

            recovered = []
            for row in stalled:
                row.locked_by = None
                row.lock_expires_at_ms = None
                if row.attempts_made >= row.max_attempts:
                    row.state = JobState.FAILED.value
                    row.last_error = STALLED_ERROR
                    row.finished_at_ms = now
                else:
                    row.state = JobState.WAITING.value
                    row.run_at_ms = now

                recovered.append(JobRecord.model_validate(row))
                # Same retention rule as an exhausted attempt in fail_job
                if row.state == JobState.FAILED.value and row.remove_on_fail:
                    await session.delete(row)

            await session.commit()
            return recovered

    async def retry_failed(self, queue_name: str, job_id: int) -> JobRecord | None:
        """Put an exhausted job back on the queue with a fresh attempt budget."""
        async with self._session() as session:
            result = await session.execute(
                update(QueuedJob)
                .where(
                    QueuedJob.id == job_id,
                    QueuedJob.queue_name == queue_name,
                    QueuedJob.state == JobState.FAILED.value,
                )
                .values(
                    state=JobState.WAITING.value,
                    attempts_made=0,
                    run_at_ms=self.clock(),
                    finished_at_ms=None,
                )
            )
            await session.commit()
            if result.rowcount == 0:
                return None

            job = await session.get(QueuedJob, job_id)
            return JobRecord.model_validate(job)

    async def counts(self, queue_name: str) -> QueueCounts:
        async with self._session() as session:
            result = await session.execute(
                select(QueuedJob.state, func.count(QueuedJob.id))
                .where(QueuedJob.queue_name == queue_name)
                .group_by(QueuedJob.state)
            )
            return QueueCounts(queue_name=queue_name, **dict(result.all()))

    async def clean(self, queue_name: str, grace_ms: int, state: JobState) -> int:
        """Delete finished jobs in ``state`` older than ``grace_ms``."""
        cutoff = self.clock() - grace_ms

        async with self._session() as session:
            result = await session.execute(
                delete(QueuedJob).where(
                    QueuedJob.queue_name == queue_name,
                    QueuedJob.state == state.value,
                    QueuedJob.finished_at_ms < cutoff,
                )
            )
            await session.commit()
            return result.rowcount

    # Repeating registrations

    def _first_fire(self, recurrence: Recurrence, now: int) -> int:
        if recurrence.every_ms is not None:
            return now + recurrence.every_ms
        return next_cron_fire(recurrence.cron, self.timezone, now)

    async def upsert_repeatable(
        self,
        queue_name: str,
        name: str,
        job_type: str,
        payload: dict[str, Any],
        policy: JobPolicy,
        recurrence: Recurrence,
    ) -> RepeatableRecord:
        """Register (or replace) the recurring schedule called ``name``."""
        now = self.clock()
        # Validates the cron expression before touching the store
        next_run_at_ms = self._first_fire(recurrence, now)
        key = repeat_key(queue_name, name)

        async with self._session() as session:
            await session.execute(delete(RepeatableJob).where(RepeatableJob.key == key))
            repeatable = RepeatableJob(
                key=key,
                queue_name=queue_name,
                name=name,
                type=job_type,
                payload=payload,
                every_ms=recurrence.every_ms,
                cron=recurrence.cron,
                timezone=self.timezone,
                next_run_at_ms=next_run_at_ms,
                max_attempts=policy.max_attempts,
                backoff_kind=policy.backoff.kind.value,
                backoff_delay_ms=policy.backoff.delay_ms,
                remove_on_complete=policy.remove_on_complete,
                remove_on_fail=policy.remove_on_fail,
                created_at_ms=now,
            )
            session.add(repeatable)
            await session.commit()
            return RepeatableRecord.model_validate(repeatable)

    async def remove_repeatable(self, queue_name: str, name: str) -> bool:
        """
        Deregister a recurring schedule.

        Fired instances that have not started yet are dropped with it;
        in-flight instances run to completion.
        """
        key = repeat_key(queue_name, name)

        async with self._session() as session:
            removed = await session.execute(
                delete(RepeatableJob).where(RepeatableJob.key == key)
            )
            await session.execute(
                delete(QueuedJob).where(
                    QueuedJob.repeat_key == key,
                    QueuedJob.state.in_(
                        [JobState.WAITING.value, JobState.DELAYED.value]
                    ),
                )
            )
            await session.commit()
            return removed.rowcount > 0

    async def list_repeatables(self, queue_name: str) -> list[RepeatableRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(RepeatableJob)
                .where(RepeatableJob.queue_name == queue_name)
                .order_by(RepeatableJob.name)
            )
            return [RepeatableRecord.model_validate(r) for r in result.scalars().all()]

    async def promote_due_repeatables(self, queue_name: str) -> list[JobRecord]:
        """Fire every registration that is due and advance it past now."""
        now = self.clock()

        async with self._session() as session:
            result = await session.execute(
                select(RepeatableJob)
                .where(
                    RepeatableJob.queue_name == queue_name,
                    RepeatableJob.next_run_at_ms <= now,
                )
                .with_for_update(skip_locked=True)
            )
            due = result.scalars().all()
            if not due:
                return []

            fired = []
            for repeatable in due:
                job = QueuedJob(
                    queue_name=queue_name,
                    type=repeatable.type,
                    payload=dict(repeatable.payload or {}),
                    state=JobState.WAITING.value,
                    run_at_ms=repeatable.next_run_at_ms,
                    attempts_made=0,
                    max_attempts=repeatable.max_attempts,
                    backoff_kind=repeatable.backoff_kind,
                    backoff_delay_ms=repeatable.backoff_delay_ms,
                    remove_on_complete=repeatable.remove_on_complete,
                    remove_on_fail=repeatable.remove_on_fail,
                    repeat_key=repeatable.key,
                    created_at_ms=now,
                )
                session.add(job)
                fired.append(job)

                # Missed firings are skipped rather than replayed
                if repeatable.every_ms:
                    missed = (now - repeatable.next_run_at_ms) // repeatable.every_ms + 1
                    repeatable.next_run_at_ms += missed * repeatable.every_ms
                else:
                    repeatable.next_run_at_ms = next_cron_fire(
                        repeatable.cron, repeatable.timezone, now
                    )

            await session.commit()
            for job in fired:
                await session.refresh(job)
            return [JobRecord.model_validate(job) for job in fired]
