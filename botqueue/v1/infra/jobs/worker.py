"""
Queue dispatcher with heartbeats, stalled job recovery and store reconnects.
"""

import asyncio
import os
import socket
from typing import Any, Protocol

from botqueue.config.logging import get_logger, job_log_context
from botqueue.config.settings import Settings
from botqueue.infra.database import reconnect_delay
from botqueue.v1.core.exceptions import ServiceUnavailableError, UnknownJobTypeError
from botqueue.v1.core.registries import JobRegistry
from botqueue.v1.infra.jobs.queues import JobQueue
from botqueue.v1.infra.jobs.schemas import FailureOutcome, JobRecord

logger = get_logger(__name__)


class JobObserver(Protocol):
    """Receives completion, failure and stall observations."""

    def completed(self, job: JobRecord, result: dict[str, Any] | None) -> None:
        ...

    def failed(
        self, job: JobRecord, error: Exception, outcome: FailureOutcome | None
    ) -> None:
        ...

    def stalled(self, job: JobRecord) -> None:
        ...


class LoggingJobObserver:
    """Reports job lifecycle events to the structured log."""

    def completed(self, job: JobRecord, result: dict[str, Any] | None) -> None:
        logger.info(
            "Job completed",
            queue=job.queue_name,
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts_made,
            result=result,
        )

    def failed(
        self, job: JobRecord, error: Exception, outcome: FailureOutcome | None
    ) -> None:
        logger.error(
            "Job failed",
            queue=job.queue_name,
            job_id=job.id,
            job_type=job.type,
            payload=job.payload,
            error=str(error),
            exception=error.__class__.__name__,
            attempts=job.attempts_made,
            max_attempts=job.max_attempts,
            exhausted=outcome.exhausted if outcome else None,
            next_run_at_ms=outcome.next_run_at_ms if outcome else None,
            exc_info=error,
        )

    def stalled(self, job: JobRecord) -> None:
        logger.warning(
            "Job stalled",
            queue=job.queue_name,
            job_id=job.id,
            job_type=job.type,
            payload=job.payload,
            state=job.state.value,
        )


class JobDispatcher:
    """
    Consumes one queue and routes each job to its handler by type.

    Features:
    - At most ``job_concurrency`` jobs in flight; a job is claimed by exactly
      one dispatcher at a time
    - Every handler failure is reported to the store, which applies the
      queue's retry policy
    - Unknown job types fail without retries
    - Lock heartbeats and recovery of jobs left behind by crashed workers
    - Linear, capped backoff while the store is unreachable
    - Periodic cleaning of old completed and failed jobs
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: JobRegistry,
        settings: Settings,
        observer: JobObserver | None = None,
    ):
        self.queue = queue
        self.store = queue.store
        self.handlers = handlers
        self.settings = settings
        self.observer = observer or LoggingJobObserver()
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{queue.name}-{id(self)}"
        self.running = False
        self.active_jobs: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._drained = asyncio.Event()
        self._claiming_done = asyncio.Event()
        self._claiming_done.set()
        self._reconnect_attempts = 0

    async def start(self) -> None:
        """Start the dispatcher main loop."""
        if self.running:
            raise RuntimeError("Dispatcher is already running")

        self.running = True
        self._stopping.clear()
        self._drained.clear()
        self._claiming_done.clear()
        logger.info(
            "Starting job dispatcher",
            queue=self.queue.name,
            worker_id=self.worker_id,
            concurrency=self.settings.job_concurrency,
            handlers=self.handlers.list(),
        )

        try:
            await asyncio.gather(
                self._worker_loop(),
                self._heartbeat_loop(),
                self._stalled_job_recovery_loop(),
                self._clean_loop(),
            )
        finally:
            self.running = False

    async def stop(self) -> None:
        """
        Stop claiming jobs and give in-flight jobs time to finish.

        Locks keep being renewed during the grace period. Jobs still running
        when it ends are cancelled and awaited; their locks then lapse and
        stalled recovery hands them back to the queue.
        """
        logger.info("Stopping job dispatcher", queue=self.queue.name, worker_id=self.worker_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.job_shutdown_timeout_s
        self.running = False
        self._stopping.set()

        try:
            # A claim already in flight may still start one more job
            await asyncio.wait_for(
                self._claiming_done.wait(),
                timeout=max(deadline - loop.time(), 0),
            )
        except TimeoutError:
            pass

        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        leftover = set(self._tasks)
        if leftover:
            logger.warning(
                "Cancelling in-flight jobs after shutdown timeout",
                queue=self.queue.name,
                worker_id=self.worker_id,
                active_jobs=sorted(self.active_jobs),
            )
            for task in leftover:
                task.cancel()
            await asyncio.gather(*leftover, return_exceptions=True)

        self._drained.set()

    async def process_next(self) -> bool:
        """
        Fire due repeating jobs, then claim and run the next due job.

        Returns False when nothing was due.
        """
        job = await self._claim()
        if job is None:
            return False
        await self._process_job(job)
        return True

    async def _claim(self) -> JobRecord | None:
        await self.store.promote_due_repeatables(self.queue.name)
        return await self.store.claim_next(
            self.queue.name, self.worker_id, self.settings.job_lock_duration_ms
        )

    async def _worker_loop(self) -> None:
        """Main loop that claims jobs while capacity is available."""
        poll_interval = self.settings.job_poll_interval_ms / 1000

        try:
            while self.running:
                try:
                    if len(self._tasks) >= self.settings.job_concurrency:
                        await asyncio.wait(
                            set(self._tasks), return_when=asyncio.FIRST_COMPLETED
                        )
                        continue

                    job = await self._claim()
                    self._reconnect_attempts = 0

                    if job is None:
                        await self._sleep(poll_interval)
                        continue

                    if not self.running:
                        # Stopped mid-claim: the lock lapses and stalled recovery requeues it
                        logger.info(
                            "Claimed job left for stalled recovery",
                            queue=self.queue.name,
                            job_id=job.id,
                        )
                        break

                    task = asyncio.create_task(self._process_job(job))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

                except ServiceUnavailableError as e:
                    await self._wait_for_store(e)
                except Exception:
                    logger.exception(
                        "Error in dispatcher loop",
                        queue=self.queue.name,
                        worker_id=self.worker_id,
                    )
                    await self._sleep(poll_interval)
        finally:
            self._claiming_done.set()

    async def _process_job(self, job: JobRecord) -> None:
        """Run a claimed job and record the outcome in the store."""
        self.active_jobs.add(job.id)

        with job_log_context(
            self.queue.name, self.worker_id, job.id, job.type, job.attempts_made
        ):
            try:
                logger.info("Processing job")
                try:
                    result = await self._run_handler(job)
                except Exception as e:
                    outcome = await self.store.fail_job(
                        job, e, retryable=not isinstance(e, UnknownJobTypeError)
                    )
                    self.observer.failed(job, e, outcome)
                else:
                    if await self.store.complete_job(job, result):
                        self.observer.completed(job, result)

            except ServiceUnavailableError as e:
                # The lock runs out and stalled recovery hands the job back
                logger.error("Could not record job outcome", error=str(e))

            finally:
                self.active_jobs.discard(job.id)

    async def _run_handler(self, job: JobRecord) -> dict[str, Any] | None:
        try:
            handler = self.handlers.get(job.type)
        except KeyError:
            raise UnknownJobTypeError(job.type, self.queue.name) from None

        return await handler.handle(job.payload)

    async def _wait_for_store(self, error: Exception) -> None:
        self._reconnect_attempts += 1
        delay = reconnect_delay(
            self._reconnect_attempts,
            self.settings.store_reconnect_step_ms,
            self.settings.store_reconnect_max_delay_ms,
        )
        logger.warning(
            "Queue store unreachable, retrying",
            queue=self.queue.name,
            attempt=self._reconnect_attempts,
            delay_ms=int(delay * 1000),
            error=str(error),
        )
        await self._sleep(delay)

    async def _sleep(self, seconds: float, wake: asyncio.Event | None = None) -> None:
        """Sleep, waking early when the dispatcher is stopped."""
        try:
            await asyncio.wait_for((wake or self._stopping).wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _heartbeat_loop(self) -> None:
        """Renew locks on in-flight jobs until they have all finished."""
        while not self._drained.is_set():
            try:
                await self.store.extend_locks(
                    list(self.active_jobs),
                    self.worker_id,
                    self.settings.job_lock_duration_ms,
                )
            except ServiceUnavailableError as e:
                logger.warning("Heartbeat skipped", queue=self.queue.name, error=str(e))
            except Exception:
                logger.exception("Error updating heartbeats", queue=self.queue.name)

            await self._sleep(self.settings.job_heartbeat_interval_s, wake=self._drained)

    async def _stalled_job_recovery_loop(self) -> None:
        """Recover jobs whose worker stopped heartbeating."""
        while self.running:
            try:
                for job in await self.store.recover_stalled(self.queue.name):
                    self.observer.stalled(job)
            except ServiceUnavailableError as e:
                logger.warning(
                    "Stalled job check skipped", queue=self.queue.name, error=str(e)
                )
            except Exception:
                logger.exception("Error in stalled job recovery", queue=self.queue.name)

            await self._sleep(self.settings.job_stalled_check_interval_s)

    async def _clean_loop(self) -> None:
        """Prune old completed and failed jobs."""
        while self.running:
            try:
                await self.queue.clean(
                    completed_grace_ms=self.settings.job_clean_completed_after_hours
                    * 3600
                    * 1000,
                    failed_grace_ms=self.settings.job_clean_failed_after_days
                    * 24
                    * 3600
                    * 1000,
                )
            except Exception:
                logger.exception("Failed to clean queue", queue=self.queue.name)

            await self._sleep(self.settings.job_clean_interval_s)
