from collections.abc import AsyncGenerator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from botqueue.config.settings import Settings
from botqueue.infra.database import Database
from botqueue.main import create_app
from botqueue.v1.infra.jobs.queues import (
    DEFERRED_TASK_POLICY,
    DEFERRED_TASK_QUEUE,
    SCHEDULED_REPORT_POLICY,
    SCHEDULED_REPORT_QUEUE,
    JobQueue,
)
from botqueue.v1.infra.jobs.service import JobSystem
from botqueue.v1.infra.jobs.store import QueueStore

# 2026-01-01T00:00:00Z
START_MS = 1_767_225_600_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeFollowUps:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: list[int] = []
        self.sweeps = 0

    async def send_follow_up(self, follow_up_id: int) -> None:
        self.sent.append(follow_up_id)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("Chat transport rejected the message")

    async def process_pending_follow_ups(self) -> None:
        self.sweeps += 1


class FakeReports:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[dict[str, Any]] = []

    async def generate_report(self, options: dict[str, Any]) -> None:
        self.calls.append(options)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("Report backend timed out")


class RecordingObserver:
    def __init__(self):
        self.completions: list = []
        self.failures: list = []
        self.stalls: list = []

    def completed(self, job, result):
        self.completions.append((job, result))

    def failed(self, job, error, outcome):
        self.failures.append((job, error, outcome))

    def stalled(self, job):
        self.stalls.append(job)


class FakeTransport:
    def __init__(self, fail_sends: bool = False):
        self.fail_sends = fail_sends
        self.messages: list[tuple[int | str, str]] = []
        self.answers: list[dict[str, Any]] = []

    async def send_message(self, chat_id, text):
        if self.fail_sends:
            raise ConnectionError("transport down")
        self.messages.append((chat_id, text))

    async def answer_callback_query(self, callback_query_id, text=None, show_alert=False):
        self.answers.append(
            {"id": callback_query_id, "text": text, "show_alert": show_alert}
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        job_poll_interval_ms=10,
        job_lock_duration_ms=5000,
        job_heartbeat_interval_s=1,
        job_stalled_check_interval_s=1,
        job_shutdown_timeout_s=5,
    )


@pytest.fixture
async def database(test_settings) -> AsyncGenerator[Database, None]:
    database = Database(test_settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def store(database, clock) -> QueueStore:
    return QueueStore(database, clock=clock)


@pytest.fixture
def deferred_tasks(store) -> JobQueue:
    return JobQueue(DEFERRED_TASK_QUEUE, store, DEFERRED_TASK_POLICY)


@pytest.fixture
def scheduled_reports(store) -> JobQueue:
    return JobQueue(SCHEDULED_REPORT_QUEUE, store, SCHEDULED_REPORT_POLICY)


@pytest.fixture
def follow_ups() -> FakeFollowUps:
    return FakeFollowUps()


@pytest.fixture
def reports() -> FakeReports:
    return FakeReports()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
async def job_system(
    test_settings, follow_ups, reports, clock, observer
) -> AsyncGenerator[JobSystem, None]:
    system = JobSystem(
        test_settings,
        follow_ups=follow_ups,
        reports=reports,
        clock=clock,
        observer=observer,
    )
    await system.startup()
    yield system
    await system.close()


@pytest.fixture
async def async_client(job_system) -> AsyncGenerator[AsyncClient, None]:
    """Async client against an app sharing the test job system."""
    app = create_app(job_system)
    app.state.job_system = job_system

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
