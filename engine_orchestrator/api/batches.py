"""
/api/v1/batches endpoints.
Batch submission, cost estimation, progress and cancellation.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.dependencies import get_db, verify_api_key
from engine_orchestrator.models.enums import BatchStatus
from engine_orchestrator.queue.batches import (
    BatchNotFoundError,
    BatchStateError,
    BatchValidationError,
    BudgetExceededError,
    cancel_batch,
    estimate_cost,
    get_batch_status,
    list_batches,
    submit_batch,
)
from engine_orchestrator.schemas.batches import (
    BatchListResponse,
    BatchResponse,
    BatchSubmitRequest,
    CostEstimate,
    CostEstimateRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/batches", tags=["batches"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(
    request: BatchSubmitRequest,
    session: AsyncSession = Depends(get_db),
):
    """Submit a batch of same-typed work items."""
    try:
        batch = await submit_batch(session, request)
    except BatchValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, "errors": e.errors},
        )
    except BudgetExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": e.check.reason,
                "estimated_cost": e.estimated_cost,
                "current_usage": e.check.current_usage,
                "limit": e.check.limit,
                "usage_percentage": e.check.usage_percentage,
            },
        )
    return BatchResponse.model_validate(batch)


@router.post("/estimate", response_model=CostEstimate)
async def estimate_batch_cost(
    request: CostEstimateRequest,
    session: AsyncSession = Depends(get_db),
):
    """Cost and duration estimate for a batch that has not been submitted."""
    return await estimate_cost(session, request.type.value, request.count, request.organization_id)


@router.get("", response_model=BatchListResponse)
async def get_batches(
    owner: Optional[str] = Query(None),
    status_filter: Optional[BatchStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    batches, total = await list_batches(
        session,
        owner=owner,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return BatchListResponse(
        batches=[BatchResponse.model_validate(b) for b in batches],
        total=total,
    )


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch(
    batch_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
):
    """Batch progress recomputed from its work items."""
    try:
        batch = await get_batch_status(session, batch_id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    return BatchResponse.model_validate(batch)


@router.post("/{batch_id}/cancel", response_model=BatchResponse)
async def cancel(
    batch_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
):
    """Cancel every still-pending item in the batch."""
    try:
        batch = await cancel_batch(session, batch_id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    except BatchStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return BatchResponse.model_validate(batch)
