from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from botqueue import main
from botqueue.main import create_app
from botqueue.v1.infra.jobs.schemas import JobOptions
from botqueue.v1.infra.jobs.service import JobSystem


async def test_health_check(async_client):
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["ok"] is True
    assert data["store"]["connected"] is True
    assert {d["queue"] for d in data["dispatchers"]} == {
        "deferred-tasks",
        "scheduled-reports",
    }
    assert "X-Request-ID" in response.headers


async def test_list_queues(async_client, job_system):
    await job_system.deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 1})

    response = await async_client.get("/v1/queues")

    assert response.status_code == 200
    queues = {q["queue_name"]: q for q in response.json()["data"]["queues"]}
    assert queues["deferred-tasks"]["waiting"] == 1
    assert queues["deferred-tasks"]["total"] == 1
    assert queues["scheduled-reports"]["total"] == 0


async def test_get_queue_lists_jobs(async_client, job_system):
    job = await job_system.deferred_tasks.enqueue(
        "send_follow_up", {"follow_up_id": 1}, JobOptions(delay_ms=60_000)
    )

    response = await async_client.get(
        "/v1/queues/deferred-tasks", params={"state": "delayed"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["counts"]["delayed"] == 1
    assert [j["id"] for j in data["jobs"]] == [job.id]


async def test_unknown_queue_is_not_found(async_client):
    response = await async_client.get("/v1/queues/carrier-pigeons")

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "NOT_FOUND_ERROR"


async def test_get_job(async_client, job_system):
    job = await job_system.deferred_tasks.enqueue("send_follow_up", {"follow_up_id": 3})

    response = await async_client.get(f"/v1/queues/deferred-tasks/jobs/{job.id}")
    assert response.status_code == 200
    assert response.json()["data"]["payload"] == {"follow_up_id": 3}

    missing = await async_client.get("/v1/queues/deferred-tasks/jobs/999")
    assert missing.status_code == 404


async def test_retry_failed_job(async_client, job_system):
    dispatcher = job_system.dispatchers[0]
    job = await job_system.deferred_tasks.enqueue("send_carrier_pigeon", {})
    await dispatcher.process_next()

    response = await async_client.post(f"/v1/queues/deferred-tasks/jobs/{job.id}/retry")

    assert response.status_code == 200
    assert response.json()["data"]["state"] == "waiting"
    assert response.json()["data"]["attempts_made"] == 0

    again = await async_client.post(f"/v1/queues/deferred-tasks/jobs/{job.id}/retry")
    assert again.status_code == 404


async def test_list_repeatables(async_client, job_system):
    await job_system.scheduler.initialize_scheduled_jobs()

    response = await async_client.get("/v1/queues/scheduled-reports/repeatables")

    assert response.status_code == 200
    names = [r["name"] for r in response.json()["data"]["repeatables"]]
    assert names == [
        "generate_daily_report",
        "generate_monthly_report",
        "generate_weekly_report",
    ]


async def test_clean_queues(async_client):
    response = await async_client.post(
        "/v1/queues/clean", json={"completed_grace_ms": 0, "failed_grace_ms": 0}
    )

    assert response.status_code == 200
    assert response.json()["data"]["removed"] == {
        "deferred-tasks": 0,
        "scheduled-reports": 0,
    }


async def test_clean_rejects_negative_grace(async_client):
    response = await async_client.post("/v1/queues/clean", json={"completed_grace_ms": -1})

    assert response.status_code == 422


def test_lifespan_starts_and_closes_job_system(test_settings):
    system = JobSystem(test_settings)

    with TestClient(create_app(system)) as client:
        response = client.get("/v1/queues")
        assert response.status_code == 200
        assert system.dispatchers == []

        health = client.get("/v1/healthz")
        assert health.json()["data"]["dispatchers"] == []


async def test_lifespan_closes_job_system_when_startup_fails(test_settings, monkeypatch):
    system = JobSystem(test_settings)
    monkeypatch.setattr(main.settings, "init_scheduled_jobs_on_startup", True)
    monkeypatch.setattr(
        system.scheduler,
        "initialize_scheduled_jobs",
        AsyncMock(side_effect=RuntimeError("schedule registration failed")),
    )
    close = AsyncMock(wraps=system.close)
    monkeypatch.setattr(system, "close", close)
    app = create_app(system)

    with pytest.raises(RuntimeError, match="schedule registration failed"):
        async with app.router.lifespan_context(app):
            pass

    close.assert_awaited_once()
