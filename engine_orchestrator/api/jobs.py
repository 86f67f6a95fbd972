"""
/api/v1/jobs endpoints.
Background maintenance queue: enqueue, queue stats and job status.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, status
from redis.exceptions import RedisError
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.worker import Worker

from engine_orchestrator.dependencies import verify_api_key
from engine_orchestrator.schemas.jobs import EnqueuedJob, JobStatus, QueueStats
from engine_orchestrator.worker.jobs import MAINTENANCE_JOBS, enqueue_maintenance, get_queue

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(verify_api_key)])


def _queue_unavailable(e: Exception) -> HTTPException:
    logger.error("maintenance_queue_unavailable", error=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Queue unavailable: {e}")


@router.get("")
async def list_maintenance_jobs():
    """Names accepted by POST /api/v1/jobs/{name}."""
    return {name: (func.__doc__ or "").strip() for name, func in sorted(MAINTENANCE_JOBS.items())}


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats():
    """Depth of the maintenance queue and its registries."""
    try:
        q = get_queue()
        return QueueStats(
            queue_name=q.name,
            queued=len(q),
            started=q.started_job_registry.count,
            finished=q.finished_job_registry.count,
            failed=q.failed_job_registry.count,
            deferred=q.deferred_job_registry.count,
            workers=Worker.count(queue=q),
        )
    except RedisError as e:
        raise _queue_unavailable(e)


@router.post("/{name}", response_model=EnqueuedJob, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(name: str, kwargs: Optional[dict[str, Any]] = Body(None)):
    """Enqueue a named maintenance job, optionally with keyword arguments."""
    if name not in MAINTENANCE_JOBS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown job: {name}. Available: {', '.join(sorted(MAINTENANCE_JOBS))}",
        )
    try:
        job_id = enqueue_maintenance(name, **(kwargs or {}))
    except RedisError as e:
        raise _queue_unavailable(e)
    return EnqueuedJob(job_id=job_id, func_name=name)


@router.get("/{job_id}", response_model=JobStatus)
async def get_job_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=get_queue().connection)
    except NoSuchJobError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except RedisError as e:
        raise _queue_unavailable(e)

    return JobStatus(
        job_id=job.id,
        func_name=job.func_name,
        status=job.get_status(),
        enqueued_at=job.enqueued_at,
        started_at=job.started_at,
        ended_at=job.ended_at,
        error_message=job.latest_result().exc_string if job.is_failed and job.latest_result() else None,
        result=job.return_value() if job.is_finished else None,
    )
