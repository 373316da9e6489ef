"""
Construction and lifecycle of the job system.
"""

import asyncio
from collections.abc import Callable
from pkgutil import resolve_name

from botqueue.config.logging import get_logger
from botqueue.config.settings import Settings
from botqueue.infra.database import Database
from botqueue.v1.core.exceptions import NotFoundError
from botqueue.v1.core.registries import FollowUpOperations, ReportOperations
from botqueue.v1.infra.jobs.queues import (
    DEFERRED_TASK_POLICY,
    DEFERRED_TASK_QUEUE,
    SCHEDULED_REPORT_POLICY,
    SCHEDULED_REPORT_QUEUE,
    JobQueue,
)
from botqueue.v1.infra.jobs.registry_init import (
    build_follow_up_handlers,
    build_report_handlers,
)
from botqueue.v1.infra.jobs.scheduler import JobScheduler
from botqueue.v1.infra.jobs.schemas import system_clock
from botqueue.v1.infra.jobs.store import QueueStore
from botqueue.v1.infra.jobs.worker import JobDispatcher, JobObserver

logger = get_logger(__name__)


def load_collaborator(import_string: str | None):
    """Build a collaborator from a ``"package.module:factory"`` string."""
    if not import_string:
        return None
    factory = resolve_name(import_string)
    return factory() if callable(factory) else factory


class JobSystem:
    """
    Owns the store connection, both queues, the scheduler and the dispatchers.

    A dispatcher is only created for a queue whose handlers have their
    collaborator available; without one the queue can still be enqueued to
    and inspected.
    """

    def __init__(
        self,
        settings: Settings,
        follow_ups: FollowUpOperations | None = None,
        reports: ReportOperations | None = None,
        clock: Callable[[], int] = system_clock,
        observer: JobObserver | None = None,
    ):
        self.settings = settings
        self.database = Database(settings)
        self.store = QueueStore(
            self.database, clock=clock, timezone=settings.scheduler_timezone
        )
        self.deferred_tasks = JobQueue(
            DEFERRED_TASK_QUEUE, self.store, DEFERRED_TASK_POLICY
        )
        self.scheduled_reports = JobQueue(
            SCHEDULED_REPORT_QUEUE, self.store, SCHEDULED_REPORT_POLICY
        )
        self.scheduler = JobScheduler(
            self.deferred_tasks,
            self.scheduled_reports,
            clock=clock,
            follow_up_interval_minutes=settings.follow_up_interval_minutes,
        )

        self.dispatchers: list[JobDispatcher] = []
        if follow_ups is not None:
            self.dispatchers.append(
                JobDispatcher(
                    self.deferred_tasks,
                    build_follow_up_handlers(follow_ups),
                    settings,
                    observer,
                )
            )
        if reports is not None:
            self.dispatchers.append(
                JobDispatcher(
                    self.scheduled_reports,
                    build_report_handlers(reports),
                    settings,
                    observer,
                )
            )
        self._worker_tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobSystem":
        return cls(
            settings,
            follow_ups=load_collaborator(settings.follow_up_operations),
            reports=load_collaborator(settings.report_operations),
        )

    @property
    def queues(self) -> dict[str, JobQueue]:
        return {
            self.deferred_tasks.name: self.deferred_tasks,
            self.scheduled_reports.name: self.scheduled_reports,
        }

    def get_queue(self, name: str) -> JobQueue:
        try:
            return self.queues[name]
        except KeyError:
            raise NotFoundError(f"Queue {name}", details={"queues": list(self.queues)}) from None

    async def startup(self) -> None:
        """Create the store schema when missing."""
        await self.database.create_all()
        logger.info("Job system ready", queues=list(self.queues))

    def start_workers(self) -> list[asyncio.Task]:
        """Run every dispatcher as a background task."""
        if not self.dispatchers:
            logger.warning("No job dispatchers configured")

        for dispatcher in self.dispatchers:
            self._worker_tasks.append(asyncio.create_task(dispatcher.start()))
        return list(self._worker_tasks)

    async def close(self) -> None:
        """Stop dispatchers and close the store connection."""
        for dispatcher in self.dispatchers:
            if dispatcher.running:
                await dispatcher.stop()

        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks.clear()

        await self.database.close()
        logger.info("Job system closed")
