"""
Queue operations endpoints.

Read-mostly views over the queues plus manual retry and cleaning.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from botqueue.config.logging import get_logger
from botqueue.v1.core.exceptions import NotFoundError, create_success_response
from botqueue.v1.infra.jobs.models import JobState
from botqueue.v1.infra.jobs.service import JobSystem

logger = get_logger(__name__)
router = APIRouter(prefix="/queues", tags=["queues"])


class CleanRequest(BaseModel):
    completed_grace_ms: int = Field(default=0, ge=0)
    failed_grace_ms: int = Field(default=0, ge=0)


def get_job_system(request: Request) -> JobSystem:
    """Dependency returning the job system owned by the application."""
    return request.app.state.job_system


@router.get("", response_model=dict)
async def list_queues(
    job_system: JobSystem = Depends(get_job_system),
) -> dict[str, Any]:
    """Job counts for every queue."""
    counts = [(await queue.stats()).model_dump() for queue in job_system.queues.values()]
    return create_success_response(data={"queues": counts})


@router.post("/clean", response_model=dict)
async def clean_queues(
    request: CleanRequest,
    job_system: JobSystem = Depends(get_job_system),
) -> dict[str, Any]:
    """Delete completed and failed jobs older than the given grace periods."""
    removed = {
        name: await queue.clean(request.completed_grace_ms, request.failed_grace_ms)
        for name, queue in job_system.queues.items()
    }
    logger.info("Queues cleaned via API", removed=removed)
    return create_success_response(data={"removed": removed})


@router.get("/{queue_name}", response_model=dict)
async def get_queue(
    queue_name: str,
    state: JobState | None = Query(default=None, description="Filter by state"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    job_system: JobSystem = Depends(get_job_system),
) -> dict[str, Any]:
    """Counts and the most recent jobs of one queue."""
    queue = job_system.get_queue(queue_name)
    jobs = await queue.list_jobs(state=state, limit=limit)

    return create_success_response(
        data={
            "counts": (await queue.stats()).model_dump(),
            "jobs": [job.model_dump() for job in jobs],
        }
    )


@router.get("/{queue_name}/jobs/{job_id}", response_model=dict)
async def get_job(
    queue_name: str,
    job_id: int,
    job_system: JobSystem = Depends(get_job_system),
) -> dict[str, Any]:
    job = await job_system.get_queue(queue_name).get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id}", details={"queue": queue_name})
    return create_success_response(data=job.model_dump())


@router.post("/{queue_name}/jobs/{job_id}/retry", response_model=dict)
async def retry_job(
    queue_name: str,
    job_id: int,
    job_system: JobSystem = Depends(get_job_system),
) -> dict[str, Any]:
    """Re-queue an exhausted job with a fresh attempt budget."""
    job = await job_system.get_queue(queue_name).retry_failed(job_id)
    if job is None:
        raise NotFoundError(
            f"Failed job {job_id}", details={"queue": queue_name}
        )
    return create_success_response(data=job.model_dump(), message="Job re-queued")


@router.get("/{queue_name}/repeatables", response_model=dict)
async def list_repeatables(
    queue_name: str,
    job_system: JobSystem = Depends(get_job_system),
) -> dict[str, Any]:
    repeatables = await job_system.get_queue(queue_name).list_repeating()
    return create_success_response(
        data={"repeatables": [repeatable.model_dump() for repeatable in repeatables]}
    )
