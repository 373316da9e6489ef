"""
Queue store tables.

Timestamps are stored as epoch milliseconds so that due-time comparisons
behave identically on Postgres and SQLite.
"""

from enum import Enum
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, SmallInteger, Text
from sqlalchemy.orm import Mapped, mapped_column

from botqueue.infra.database import Base


class JobState(str, Enum):
    """Job lifecycle states."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRY_PENDING = "retry_pending"
    FAILED = "failed"


# States a dispatcher may claim from once run_at_ms has passed
CLAIMABLE_STATES = (
    JobState.WAITING.value,
    JobState.DELAYED.value,
    JobState.RETRY_PENDING.value,
)


class QueuedJob(Base):
    """A single persisted unit of work on a named queue."""

    __tablename__ = "queue_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Discriminant selecting the handler"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    state: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobState.WAITING.value
    )
    run_at_ms: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Earliest time to run the job"
    )
    attempts_made: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)

    # Execution policy, copied from the queue defaults at enqueue time
    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    backoff_kind: Mapped[str] = mapped_column(Text, nullable=False)
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    remove_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False)
    remove_on_fail: Mapped[bool] = mapped_column(Boolean, nullable=False)

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    lock_expires_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Results
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Set on instances fired by a repeating registration
    repeat_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    finished_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_queue_jobs_claim", "queue_name", "state", "run_at_ms"),
        Index("ix_queue_jobs_repeat_key", "repeat_key"),
    )


class RepeatableJob(Base):
    """A named recurring schedule that fires ordinary jobs on a timer."""

    __tablename__ = "queue_repeatables"

    key: Mapped[str] = mapped_column(Text, primary_key=True, comment="queue:name")
    queue_name: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    every_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    cron: Mapped[str | None] = mapped_column(Text, nullable=True)
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default="UTC")
    next_run_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    backoff_kind: Mapped[str] = mapped_column(Text, nullable=False)
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    remove_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False)
    remove_on_fail: Mapped[bool] = mapped_column(Boolean, nullable=False)

    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_queue_repeatables_due", "queue_name", "next_run_at_ms"),)
