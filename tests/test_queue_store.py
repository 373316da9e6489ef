from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from botqueue.v1.core.exceptions import ServiceUnavailableError, ValidationError
from botqueue.v1.infra.jobs.models import JobState
from botqueue.v1.infra.jobs.schemas import (
    Backoff,
    BackoffKind,
    JobOptions,
    JobPolicy,
    Recurrence,
)
from botqueue.v1.infra.jobs.store import STALLED_ERROR, next_cron_fire

HOUR_MS = 3600 * 1000
# 2026-01-01T00:00:00Z, a Thursday
START_MS = 1_767_225_600_000


class TestBackoff:
    def test_fixed_backoff_is_constant(self):
        backoff = Backoff(kind=BackoffKind.FIXED, delay_ms=5000)
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [5000, 5000, 5000]

    def test_exponential_backoff_doubles(self):
        backoff = Backoff(kind=BackoffKind.EXPONENTIAL, delay_ms=1000)
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [1000, 2000, 4000]

    def test_job_options_override_queue_policy(self):
        policy = JobPolicy(max_attempts=3)
        merged = JobOptions(max_attempts=5, remove_on_complete=False).apply_to(policy)

        assert merged.max_attempts == 5
        assert merged.remove_on_complete is False
        assert merged.backoff == policy.backoff
        assert JobOptions().apply_to(policy) is policy

    def test_recurrence_needs_exactly_one_schedule(self):
        with pytest.raises(ValueError):
            Recurrence()
        with pytest.raises(ValueError):
            Recurrence(every_ms=1000, cron="* * * * *")


class TestEnqueue:
    async def test_enqueue_without_delay_is_waiting(self, deferred_tasks, clock):
        job = await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})

        assert job.state == JobState.WAITING
        assert job.run_at_ms == clock.now
        assert job.attempts_made == 0
        assert job.max_attempts == 3
        assert job.backoff_kind == BackoffKind.EXPONENTIAL

    async def test_enqueue_with_delay_is_delayed(self, deferred_tasks, clock):
        job = await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 1}, JobOptions(delay_ms=60_000)
        )

        assert job.state == JobState.DELAYED
        assert job.run_at_ms == clock.now + 60_000

    async def test_negative_delay_is_clamped(self, deferred_tasks, clock):
        job = await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 1}, JobOptions(delay_ms=-5000)
        )

        assert job.state == JobState.WAITING
        assert job.run_at_ms == clock.now

    async def test_enqueue_reports_unreachable_store(self, deferred_tasks, database):
        database.SessionLocal = Mock(
            side_effect=OperationalError("INSERT", {}, Exception("connection refused"))
        )

        with pytest.raises(ServiceUnavailableError, match="Unable to enqueue send_follow_up job"):
            await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})


class TestClaim:
    async def test_claim_counts_attempt_and_locks(self, store, deferred_tasks, clock):
        job = await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})

        claimed = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)

        assert claimed.id == job.id
        assert claimed.state == JobState.ACTIVE
        assert claimed.attempts_made == 1
        assert claimed.locked_by == "worker-1"

    async def test_job_is_claimed_only_once(self, store, deferred_tasks):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})

        first = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)
        second = await store.claim_next(deferred_tasks.name, "worker-2", 30_000)

        assert first is not None
        assert second is None

    async def test_delayed_job_not_claimed_before_due(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 1}, JobOptions(delay_ms=10_000)
        )

        assert await store.claim_next(deferred_tasks.name, "worker-1", 30_000) is None

        clock.advance(10_000)
        assert await store.claim_next(deferred_tasks.name, "worker-1", 30_000) is not None

    async def test_queues_are_isolated(self, store, deferred_tasks, scheduled_reports):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})

        assert await store.claim_next(scheduled_reports.name, "worker-1", 30_000) is None

    async def test_due_jobs_claimed_in_run_order(self, store, deferred_tasks, clock):
        later = await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 2}, JobOptions(delay_ms=500)
        )
        sooner = await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})
        clock.advance(1000)

        first = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)
        second = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)

        assert [first.id, second.id] == [sooner.id, later.id]


class TestFailures:
    async def test_failure_schedules_retry_with_backoff(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})
        job = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)

        outcome = await store.fail_job(job, RuntimeError("boom"))

        assert outcome.exhausted is False
        assert outcome.next_run_at_ms == clock.now + 1000
        stored = await store.get_job(job.id)
        assert stored.state == JobState.RETRY_PENDING
        assert stored.last_error == "boom"

    async def test_non_retryable_failure_exhausts(self, store, deferred_tasks):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})
        job = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)

        outcome = await store.fail_job(job, ValidationError("bad"), retryable=False)

        assert outcome.exhausted is True
        assert outcome.retained is True
        stored = await store.get_job(job.id)
        assert stored.state == JobState.FAILED
        assert stored.error_code == "VALIDATION_ERROR"

    async def test_remove_on_fail_drops_exhausted_job(self, store, deferred_tasks):
        await deferred_tasks.enqueue(
            "send_follow_up",
            {"follow_up_id": 1},
            JobOptions(max_attempts=1, remove_on_fail=True),
        )
        job = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)

        outcome = await store.fail_job(job, RuntimeError("boom"))

        assert outcome.exhausted is True
        assert outcome.retained is False
        assert await store.get_job(job.id) is None

    async def test_outcome_from_stale_worker_is_ignored(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 1}, JobOptions(max_attempts=2)
        )
        stale = await store.claim_next(deferred_tasks.name, "worker-1", 1000)
        clock.advance(1001)
        await store.recover_stalled(deferred_tasks.name)
        await store.claim_next(deferred_tasks.name, "worker-2", 30_000)

        assert await store.complete_job(stale, {"success": True}) is False
        assert await store.fail_job(stale, RuntimeError("late")) is None

    async def test_retry_failed_resets_attempts(self, store, deferred_tasks):
        await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 1}, JobOptions(max_attempts=1)
        )
        job = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)
        await store.fail_job(job, RuntimeError("boom"))

        retried = await deferred_tasks.retry_failed(job.id)

        assert retried.state == JobState.WAITING
        assert retried.attempts_made == 0
        assert await deferred_tasks.retry_failed(job.id) is None


class TestStalledJobs:
    async def test_expired_lock_returns_job_to_queue(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})
        job = await store.claim_next(deferred_tasks.name, "worker-1", 1000)

        assert await store.recover_stalled(deferred_tasks.name) == []

        clock.advance(1001)
        recovered = await store.recover_stalled(deferred_tasks.name)

        assert [r.id for r in recovered] == [job.id]
        stored = await store.get_job(job.id)
        assert stored.state == JobState.WAITING
        assert stored.attempts_made == 1

    async def test_stalled_job_out_of_attempts_fails(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 1}, JobOptions(max_attempts=1)
        )
        job = await store.claim_next(deferred_tasks.name, "worker-1", 1000)
        clock.advance(1001)

        await store.recover_stalled(deferred_tasks.name)

        stored = await store.get_job(job.id)
        assert stored.state == JobState.FAILED
        assert stored.last_error == STALLED_ERROR

    async def test_stalled_job_out_of_attempts_honors_remove_on_fail(
        self, store, deferred_tasks, clock
    ):
        await deferred_tasks.enqueue(
            "send_follow_up",
            {"follow_up_id": 1},
            JobOptions(max_attempts=1, remove_on_fail=True),
        )
        job = await store.claim_next(deferred_tasks.name, "worker-1", 1000)
        clock.advance(1001)

        [recovered] = await store.recover_stalled(deferred_tasks.name)

        assert recovered.id == job.id
        assert recovered.state == JobState.FAILED
        assert await store.get_job(job.id) is None

    async def test_heartbeat_keeps_lock(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})
        job = await store.claim_next(deferred_tasks.name, "worker-1", 1000)

        clock.advance(800)
        assert await store.extend_locks([job.id], "worker-1", 1000) == 1
        assert await store.extend_locks([job.id], "worker-2", 1000) == 0
        clock.advance(800)

        assert await store.recover_stalled(deferred_tasks.name) == []


class TestCountsAndCleaning:
    async def test_counts_by_state(self, store, deferred_tasks):
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})
        await deferred_tasks.enqueue(
            "send_follow_up", {"follow_up_id": 2}, JobOptions(delay_ms=1000)
        )
        await deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 3})
        await store.claim_next(deferred_tasks.name, "worker-1", 30_000)

        counts = await deferred_tasks.stats()

        assert counts.waiting == 1
        assert counts.delayed == 1
        assert counts.active == 1
        assert counts.total == 3
        assert counts.model_dump()["total"] == 3

    async def test_clean_respects_grace_period(self, store, deferred_tasks, clock):
        await deferred_tasks.enqueue(
            "send_follow_up",
            {"follow_up_id": 1},
            JobOptions(remove_on_complete=False),
        )
        job = await store.claim_next(deferred_tasks.name, "worker-1", 30_000)
        await store.complete_job(job, {"success": True})

        assert await deferred_tasks.clean(HOUR_MS, HOUR_MS) == 0

        clock.advance(HOUR_MS + 1)
        assert await deferred_tasks.clean(HOUR_MS, HOUR_MS) == 1
        assert await store.get_job(job.id) is None


class TestRepeatables:
    async def test_reregistering_replaces_schedule(self, deferred_tasks):
        await deferred_tasks.schedule_repeating(
            "process_pending_follow_ups", {}, Recurrence(every_ms=60_000)
        )
        await deferred_tasks.schedule_repeating(
            "process_pending_follow_ups", {}, Recurrence(every_ms=120_000)
        )

        repeatables = await deferred_tasks.list_repeating()

        assert len(repeatables) == 1
        assert repeatables[0].every_ms == 120_000
        assert repeatables[0].key == "deferred-tasks:process_pending_follow_ups"

    async def test_invalid_cron_is_rejected(self, scheduled_reports):
        with pytest.raises(ValidationError, match="Invalid cron expression"):
            await scheduled_reports.schedule_repeating(
                "generate_daily_report", {}, Recurrence(cron="not a cron")
            )

        assert await scheduled_reports.list_repeating() == []

    async def test_due_registration_fires_once_and_skips_missed(
        self, store, deferred_tasks, clock
    ):
        start = clock.now
        await deferred_tasks.schedule_repeating(
            "process_pending_follow_ups", {}, Recurrence(every_ms=60_000)
        )

        assert await store.promote_due_repeatables(deferred_tasks.name) == []

        clock.advance(60_000 * 3 + 5)
        fired = await store.promote_due_repeatables(deferred_tasks.name)

        assert len(fired) == 1
        assert fired[0].repeat_key == "deferred-tasks:process_pending_follow_ups"
        [repeatable] = await deferred_tasks.list_repeating()
        assert repeatable.next_run_at_ms == start + 60_000 * 4
        assert await store.promote_due_repeatables(deferred_tasks.name) == []

    async def test_removing_registration_drops_pending_instances(
        self, store, deferred_tasks, clock
    ):
        await deferred_tasks.schedule_repeating(
            "process_pending_follow_ups", {}, Recurrence(every_ms=60_000)
        )
        clock.advance(60_000)
        [fired] = await store.promote_due_repeatables(deferred_tasks.name)

        assert await deferred_tasks.remove_repeating("process_pending_follow_ups") is True
        assert await deferred_tasks.remove_repeating("process_pending_follow_ups") is False
        assert await store.get_job(fired.id) is None


class TestCron:
    def test_next_fire_is_strictly_after(self):
        half_past_midnight = START_MS + 30 * 60 * 1000
        one_am = START_MS + HOUR_MS

        assert next_cron_fire("0 1 * * *", "UTC", half_past_midnight) == one_am
        assert next_cron_fire("0 1 * * *", "UTC", one_am) == one_am + 24 * HOUR_MS

    def test_weekly_report_fires_on_monday(self):
        # 2026-01-01 is a Thursday; the following Monday is 2026-01-05
        monday_2am = START_MS + 4 * 24 * HOUR_MS + 2 * HOUR_MS

        assert next_cron_fire("0 2 * * mon", "UTC", START_MS) == monday_2am

    def test_cron_uses_timezone(self):
        # 01:00 in Berlin is 00:00 UTC in winter
        assert (
            next_cron_fire("0 1 * * *", "Europe/Berlin", START_MS - 1)
            == START_MS
        )
