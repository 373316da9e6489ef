"""
Job system Pydantic schemas.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from botqueue.v1.infra.jobs.models import JobState


def system_clock() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_epoch_ms(moment: datetime) -> int:
    """Convert a datetime to epoch milliseconds; naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return round(moment.timestamp() * 1000)


def from_epoch_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, UTC)


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class Backoff(BaseModel):
    """Delay strategy between attempts of a failed job."""

    model_config = ConfigDict(frozen=True)

    kind: BackoffKind = BackoffKind.FIXED
    delay_ms: int = Field(default=1000, ge=0)

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the next attempt after ``attempts_made`` failed attempts."""
        if self.kind == BackoffKind.EXPONENTIAL:
            return self.delay_ms * 2 ** max(attempts_made - 1, 0)
        return self.delay_ms


class JobPolicy(BaseModel):
    """Default execution policy of a queue."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    backoff: Backoff = Field(default_factory=Backoff)
    remove_on_complete: bool = True
    remove_on_fail: bool = False


class JobOptions(BaseModel):
    """Per-job overrides applied on top of the queue's default policy."""

    delay_ms: int = Field(default=0, description="Clamped to zero when negative")
    max_attempts: int | None = Field(default=None, ge=1)
    backoff: Backoff | None = None
    remove_on_complete: bool | None = None
    remove_on_fail: bool | None = None

    def apply_to(self, policy: JobPolicy) -> JobPolicy:
        overrides = {
            name: value
            for name, value in (
                ("max_attempts", self.max_attempts),
                ("backoff", self.backoff),
                ("remove_on_complete", self.remove_on_complete),
                ("remove_on_fail", self.remove_on_fail),
            )
            if value is not None
        }
        return policy.model_copy(update=overrides) if overrides else policy


class Recurrence(BaseModel):
    """Either a fixed interval or a crontab expression, never both."""

    every_ms: int | None = Field(default=None, gt=0)
    cron: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Recurrence":
        if (self.every_ms is None) == (self.cron is None):
            raise ValueError("Recurrence needs exactly one of every_ms or cron")
        return self


class JobRecord(BaseModel):
    """Snapshot of a job row as read from the store."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    queue_name: str
    type: str
    payload: dict[str, Any]
    state: JobState
    run_at_ms: int
    attempts_made: int
    max_attempts: int
    backoff_kind: BackoffKind
    backoff_delay_ms: int
    remove_on_complete: bool
    remove_on_fail: bool
    locked_by: str | None = None
    result: dict[str, Any] | None = None
    last_error: str | None = None
    error_code: str | None = None
    repeat_key: str | None = None
    created_at_ms: int
    processed_at_ms: int | None = None
    finished_at_ms: int | None = None

    @property
    def policy(self) -> JobPolicy:
        return JobPolicy(
            max_attempts=self.max_attempts,
            backoff=Backoff(kind=self.backoff_kind, delay_ms=self.backoff_delay_ms),
            remove_on_complete=self.remove_on_complete,
            remove_on_fail=self.remove_on_fail,
        )

    @property
    def run_at(self) -> datetime:
        return from_epoch_ms(self.run_at_ms)


class RepeatableRecord(BaseModel):
    """Snapshot of a repeating registration."""

    model_config = ConfigDict(from_attributes=True)

    key: str
    queue_name: str
    name: str
    type: str
    payload: dict[str, Any]
    every_ms: int | None = None
    cron: str | None = None
    timezone: str
    next_run_at_ms: int

    @property
    def next_run_at(self) -> datetime:
        return from_epoch_ms(self.next_run_at_ms)


class FailureOutcome(BaseModel):
    """What the store decided after a failed attempt."""

    job_id: int
    attempts_made: int
    exhausted: bool
    retained: bool
    next_run_at_ms: int | None = None


class QueueCounts(BaseModel):
    """Per-state job counts for one queue."""

    queue_name: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    retry_pending: int = 0
    completed: int = 0
    failed: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return (
            self.waiting + self.delayed + self.active + self.retry_pending + self.failed
        )
