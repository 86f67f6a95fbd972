"""
SLA Escalator for prioritized insights.

The sweep is a single conditional UPDATE on overdue = false, so overlapping
sweeps escalate each insight exactly once.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.config import settings
from engine_orchestrator.models.database import utcnow
from engine_orchestrator.models.enums import (
    OPEN_INSIGHT_STATUSES,
    InsightStatus,
    NotificationType,
    Severity,
)
from engine_orchestrator.models.tables import PrioritizedInsight
from engine_orchestrator.notifications.sink import NotificationSink, safe_notify
from engine_orchestrator.observability.metrics import sla_escalations_total
from engine_orchestrator.schemas.sla import ComplianceStats, InsightCreateRequest, SlaSweepResult

logger = structlog.get_logger(__name__)


class InsightNotFoundError(Exception):
    def __init__(self, insight_id: uuid.UUID):
        self.insight_id = insight_id
        super().__init__(f"Insight not found: {insight_id}")


class InsightTransitionError(Exception):
    """Completed and dismissed insights are final."""

    def __init__(self, insight_id: uuid.UUID, current: str, requested: str):
        self.insight_id = insight_id
        self.current = current
        self.requested = requested
        super().__init__(f"Insight {insight_id} is {current} and cannot move to {requested}")


async def create_insight(
    session: AsyncSession,
    request: InsightCreateRequest,
    now: Optional[datetime] = None,
) -> PrioritizedInsight:
    """Create an insight. The deadline is explicit or now + sla_hours (SLA_DEFAULT_HOURS when neither is given)."""
    now = now or utcnow()
    deadline = request.deadline
    sla_hours = request.sla_hours
    if deadline is None:
        sla_hours = sla_hours or settings.SLA_DEFAULT_HOURS
        deadline = now + timedelta(hours=sla_hours)

    insight = PrioritizedInsight(
        owner=request.owner,
        title=request.title,
        description=request.description,
        status=InsightStatus.PENDING.value,
        deadline=deadline,
        sla_hours=sla_hours,
        overdue=False,
        escalation_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(insight)
    await session.commit()
    logger.info("insight_created", insight_id=str(insight.id), deadline=deadline.isoformat())
    return insight


async def update_insight_status(
    session: AsyncSession,
    insight_id: uuid.UUID,
    status: InsightStatus,
    now: Optional[datetime] = None,
) -> PrioritizedInsight:
    """
    Move an insight through its lifecycle. Never touches the overdue flag.

    Completed and dismissed are terminal; setting the same status again is a no-op.
    """
    now = now or utcnow()
    insight = await session.get(PrioritizedInsight, insight_id)
    if insight is None:
        raise InsightNotFoundError(insight_id)
    if insight.status == status.value:
        return insight
    if insight.status not in OPEN_INSIGHT_STATUSES:
        raise InsightTransitionError(insight_id, insight.status, status.value)

    insight.status = status.value
    insight.updated_at = now
    if status == InsightStatus.COMPLETED and insight.completed_at is None:
        insight.completed_at = now
    await session.commit()
    return insight


async def run_sla_sweep(
    session: AsyncSession,
    notification_sink: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> SlaSweepResult:
    """Flag every open insight past its deadline as overdue and notify once per insight."""
    now = now or utcnow()
    result = await session.execute(
        update(PrioritizedInsight)
        .where(
            PrioritizedInsight.deadline < now,
            PrioritizedInsight.status.in_(OPEN_INSIGHT_STATUSES),
            PrioritizedInsight.overdue.is_(False),
        )
        .values(
            overdue=True,
            escalated_at=now,
            escalation_count=PrioritizedInsight.escalation_count + 1,
            updated_at=now,
        )
        .returning(
            PrioritizedInsight.id,
            PrioritizedInsight.owner,
            PrioritizedInsight.title,
            PrioritizedInsight.deadline,
        )
        .execution_options(synchronize_session=False)
    )
    escalated = result.all()
    await session.commit()

    for insight_id, owner, title, deadline in escalated:
        sla_escalations_total.inc()
        await safe_notify(
            notification_sink,
            NotificationType.SLA_BREACH,
            Severity.WARNING,
            "SLA Deadline Missed",
            f'Insight "{title}" passed its deadline of {deadline:%Y-%m-%d %H:%M} UTC without completion',
            {"insight_id": str(insight_id), "owner": owner, "deadline": deadline.isoformat()},
        )

    logger.info("sla_sweep_completed", escalated=len(escalated))
    return SlaSweepResult(escalated=len(escalated), insight_ids=[row[0] for row in escalated])


def _compliance_message(rate: float) -> str:
    if rate >= 80:
        return "Excellent SLA compliance"
    if rate >= 50:
        return "SLA compliance needs attention"
    return "Critical: most insights are missing their SLA"


async def compliance_stats(
    session: AsyncSession,
    days: Optional[int] = None,
    owner: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ComplianceStats:
    """On-time completion rate over insights created in the trailing window."""
    now = now or utcnow()
    days = days or settings.SLA_COMPLIANCE_WINDOW_DAYS
    query = select(PrioritizedInsight).where(
        PrioritizedInsight.created_at >= now - timedelta(days=days),
        PrioritizedInsight.deadline.is_not(None),
    )
    if owner is not None:
        query = query.where(PrioritizedInsight.owner == owner)
    insights = (await session.execute(query)).scalars().all()

    on_time = 0
    late = 0
    still_overdue = 0
    for insight in insights:
        if insight.status == InsightStatus.COMPLETED.value and insight.completed_at is not None:
            if insight.completed_at <= insight.deadline:
                on_time += 1
            else:
                late += 1
        elif insight.status in OPEN_INSIGHT_STATUSES and insight.deadline < now:
            still_overdue += 1

    total = len(insights)
    rate = round(on_time / total * 100, 1) if total else 100.0
    return ComplianceStats(
        window_days=days,
        total_with_deadline=total,
        completed_on_time=on_time,
        completed_late=late,
        still_overdue=still_overdue,
        compliance_rate=rate,
        message=_compliance_message(rate),
    )
