"""
/api/v1/work-items endpoints.
Queue depth, dead-letter inspection, replay, cancellation and runner passes.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.dependencies import get_db, get_job_runner, verify_api_key
from engine_orchestrator.models.enums import JobType
from engine_orchestrator.queue.batches import BudgetExceededError
from engine_orchestrator.queue.work_queue import (
    InvalidTransitionError,
    WorkItemNotFoundError,
    cancel_item,
    get_queue_stats,
    get_throughput,
    get_work_item,
    list_dead_letters,
    replay_item,
    retention_sweep,
)
from engine_orchestrator.runner.job_runner import JobRunner
from engine_orchestrator.schemas.batches import (
    RetentionResult,
    RunSummary,
    WorkItemResponse,
    WorkQueueStats,
)

router = APIRouter(prefix="/api/v1/work-items", tags=["work-items"], dependencies=[Depends(verify_api_key)])


@router.get("/stats", response_model=WorkQueueStats)
async def queue_stats(session: AsyncSession = Depends(get_db)):
    """Item counts per status."""
    return await get_queue_stats(session)


@router.get("/dead-letter", response_model=list[WorkItemResponse])
async def dead_letters(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    items = await list_dead_letters(session, limit=limit, offset=offset)
    return [WorkItemResponse.model_validate(item) for item in items]


@router.get("/throughput")
async def throughput(
    hours: int = Query(24, ge=1, le=168),
    session: AsyncSession = Depends(get_db),
):
    """Completed items per hour over the trailing window."""
    return {"hours": hours, "buckets": await get_throughput(session, hours=hours)}


@router.post("/run", response_model=RunSummary)
async def run_pass(
    limit: Optional[int] = Query(None, ge=1, le=500),
    types: Optional[list[JobType]] = Query(None),
    runner: JobRunner = Depends(get_job_runner),
):
    """Run one claim-and-execute pass inline."""
    return await runner.run_once(limit=limit, types=[t.value for t in types] if types else None)


@router.post("/retention-sweep", response_model=RetentionResult)
async def run_retention_sweep(
    retention_days: Optional[int] = Query(None, ge=1),
    session: AsyncSession = Depends(get_db),
):
    return await retention_sweep(session, retention_days=retention_days)


@router.get("/{item_id}", response_model=WorkItemResponse)
async def get_item(item_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    try:
        item = await get_work_item(session, item_id)
    except WorkItemNotFoundError:
        raise HTTPException(status_code=404, detail="Work item not found")
    return WorkItemResponse.model_validate(item)


@router.post("/{item_id}/replay", response_model=WorkItemResponse)
async def replay(item_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    """Re-queue a dead-lettered item with a fresh retry budget."""
    try:
        item = await replay_item(session, item_id)
    except WorkItemNotFoundError:
        raise HTTPException(status_code=404, detail="Work item not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except BudgetExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": e.check.reason, "current_usage": e.check.current_usage, "limit": e.check.limit},
        )
    return WorkItemResponse.model_validate(item)


@router.post("/{item_id}/cancel", response_model=WorkItemResponse)
async def cancel(item_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    try:
        item = await cancel_item(session, item_id)
    except WorkItemNotFoundError:
        raise HTTPException(status_code=404, detail="Work item not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return WorkItemResponse.model_validate(item)
