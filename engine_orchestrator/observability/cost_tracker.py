"""
Per-item cost instrumentation.
Every completed work item books its admitted cost against its batch and
organization, and shows up in Prometheus.
"""

from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.models.tables import Batch, CostEvent, WorkItem
from engine_orchestrator.observability.metrics import work_item_cost_usd
from engine_orchestrator.queue.budget import record_spend

logger = structlog.get_logger(__name__)


class CostTracker:
    """Record what executed work actually cost, inside the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, item: WorkItem, latency_ms: int = 0, engine: Optional[str] = None) -> CostEvent:
        engine = engine or (item.payload or {}).get("engine")
        event = CostEvent(
            work_item_id=item.id,
            batch_id=item.batch_id,
            organization_id=item.organization_id,
            engine=engine,
            operation=item.type,
            cost_usd=item.cost_usd,
            latency_ms=latency_ms,
        )
        self.session.add(event)

        if item.batch_id is not None:
            await self.session.execute(
                update(Batch)
                .where(Batch.id == item.batch_id)
                .values(actual_cost=Batch.actual_cost + item.cost_usd)
            )
        await record_spend(self.session, item.organization_id, item.cost_usd)

        work_item_cost_usd.labels(engine=engine or "none", operation=item.type).inc(item.cost_usd)
        logger.info(
            "cost_event_recorded",
            work_item_id=str(item.id),
            engine=engine,
            operation=item.type,
            cost_usd=item.cost_usd,
            latency_ms=latency_ms,
        )
        return event
