from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from botqueue.config.logging import get_logger
from botqueue.config.settings import Settings, SettingsDep
from botqueue.v1.core.exceptions import create_success_response
from botqueue.v1.infra.jobs.routes import get_job_system
from botqueue.v1.infra.jobs.service import JobSystem

logger = get_logger(__name__)
router = APIRouter()


class StoreHealth(BaseModel):
    """Queue store health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class DispatcherHealth(BaseModel):
    queue: str
    running: bool
    active_jobs: int


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, job_system: JobSystem = Depends(get_job_system)
):
    """Health check with queue store connectivity and dispatcher status."""

    store_health = await _check_store_health(job_system)

    dispatchers = [
        DispatcherHealth(
            queue=dispatcher.queue.name,
            running=dispatcher.running,
            active_jobs=len(dispatcher.active_jobs),
        ).model_dump()
        for dispatcher in job_system.dispatchers
    ]

    health_data = {
        "ok": store_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": datetime.now(UTC).isoformat(),
        "store": store_health.model_dump(),
        "dispatchers": dispatchers,
    }

    return create_success_response(data=health_data)


async def _check_store_health(job_system: JobSystem) -> StoreHealth:
    """Check queue store connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await job_system.store.ping()
    except Exception as e:
        logger.warning("Queue store health check failed", error=str(e))
        return StoreHealth(connected=False, error=str(e))

    response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    return StoreHealth(connected=True, response_time_ms=round(response_time_ms, 2))
