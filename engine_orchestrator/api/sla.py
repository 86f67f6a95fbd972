"""
/api/v1/sla endpoints.
Prioritized insights, deadline sweeps and compliance reporting.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.dependencies import get_db, get_notification_sink, verify_api_key
from engine_orchestrator.notifications.sink import NotificationSink
from engine_orchestrator.schemas.sla import (
    ComplianceStats,
    InsightCreateRequest,
    InsightResponse,
    InsightStatusUpdate,
    SlaSweepResult,
)
from engine_orchestrator.sla.escalator import (
    InsightNotFoundError,
    InsightTransitionError,
    compliance_stats,
    create_insight,
    run_sla_sweep,
    update_insight_status,
)

router = APIRouter(prefix="/api/v1/sla", tags=["sla"], dependencies=[Depends(verify_api_key)])


@router.post("/insights", response_model=InsightResponse, status_code=status.HTTP_201_CREATED)
async def add_insight(
    request: InsightCreateRequest,
    session: AsyncSession = Depends(get_db),
):
    insight = await create_insight(session, request)
    return InsightResponse.model_validate(insight)


@router.patch("/insights/{insight_id}", response_model=InsightResponse)
async def set_insight_status(
    insight_id: uuid.UUID,
    request: InsightStatusUpdate,
    session: AsyncSession = Depends(get_db),
):
    try:
        insight = await update_insight_status(session, insight_id, request.status)
    except InsightNotFoundError:
        raise HTTPException(status_code=404, detail="Insight not found")
    except InsightTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return InsightResponse.model_validate(insight)


@router.post("/sweep", response_model=SlaSweepResult)
async def sweep(
    session: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """Escalate every open insight past its deadline. Already-escalated insights are skipped."""
    return await run_sla_sweep(session, sink)


@router.get("/compliance", response_model=ComplianceStats)
async def compliance(
    days: int = Query(30, ge=1, le=365),
    owner: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_db),
):
    return await compliance_stats(session, days=days, owner=owner)
