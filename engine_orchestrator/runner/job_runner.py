"""
Job Runner: claim eligible work, execute handlers, record outcomes.

Claiming commits before any handler runs. Each outcome is recorded in its
own transaction; a handler failure never escapes run_once.
"""

import asyncio
import time
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from engine_orchestrator.config import settings
from engine_orchestrator.models.enums import NotificationType, Severity, WorkStatus
from engine_orchestrator.models.tables import WorkItem
from engine_orchestrator.notifications.sink import NotificationSink, safe_notify
from engine_orchestrator.observability.cost_tracker import CostTracker
from engine_orchestrator.observability.logging import work_item_context
from engine_orchestrator.observability.metrics import handler_duration_seconds, work_item_outcomes_total
from engine_orchestrator.queue.batches import refresh_batch_progress
from engine_orchestrator.queue.work_queue import claim_batch, mark_completed, mark_failed
from engine_orchestrator.runner.handlers import (
    HandlerContext,
    HandlerRegistry,
    PermanentJobError,
    parse_payload,
)
from engine_orchestrator.schemas.batches import RunSummary

logger = structlog.get_logger(__name__)

COMPLETED = "completed"
RETRIED = "retried"
DEAD_LETTERED = "dead_lettered"


class JobRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        context: HandlerContext,
        registry: Optional[HandlerRegistry] = None,
        notification_sink: Optional[NotificationSink] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.context = context
        self.registry = registry or HandlerRegistry()
        self.notification_sink = notification_sink
        self.max_concurrency = max_concurrency or settings.RUNNER_MAX_CONCURRENCY

    async def run_once(
        self,
        limit: Optional[int] = None,
        types: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> RunSummary:
        """Claim up to `limit` items and drive each one to its next state."""
        async with self.session_factory() as session:
            items = await claim_batch(session, limit or settings.CLAIM_BATCH_SIZE, types, now)

        summary = RunSummary(claimed=len(items))
        if not items:
            return summary

        slots = asyncio.Semaphore(self.max_concurrency)

        async def run(item: WorkItem) -> str:
            async with slots:
                return await self.execute(item, now)

        for outcome in await asyncio.gather(*(run(item) for item in items)):
            if outcome == COMPLETED:
                summary.completed += 1
            elif outcome == RETRIED:
                summary.retried += 1
            else:
                summary.dead_lettered += 1

        logger.info("runner_pass_finished", **summary.model_dump())
        return summary

    async def execute(self, item: WorkItem, now: Optional[datetime] = None) -> str:
        """Run one claimed item's handler and record the outcome."""
        batch_id = str(item.batch_id) if item.batch_id else None
        with work_item_context(str(item.id), item.type, batch_id):
            start = time.monotonic()
            result: Optional[dict] = None
            error: Optional[str] = None
            permanent = False
            try:
                handler = self.registry.resolve(item.type)
                payload = parse_payload(item)
                result = await handler(self.context, item, payload)
            except PermanentJobError as e:
                error = str(e)
                permanent = True
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
            latency_ms = int((time.monotonic() - start) * 1000)
            handler_duration_seconds.labels(job_type=item.type).observe(latency_ms / 1000)

            return await self._record_outcome(item, result, error, permanent, latency_ms, now)

    async def _record_outcome(
        self,
        item: WorkItem,
        result: Optional[dict],
        error: Optional[str],
        permanent: bool,
        latency_ms: int,
        now: Optional[datetime],
    ) -> str:
        async with self.session_factory() as session:
            if error is None:
                row = await mark_completed(session, item.id, result, now)
                await CostTracker(session).record(row, latency_ms=latency_ms)
                outcome = COMPLETED
            else:
                row = await mark_failed(session, item.id, error, permanent=permanent, now=now)
                outcome = DEAD_LETTERED if row.status == WorkStatus.DEAD_LETTER.value else RETRIED
            if row.batch_id is not None:
                await refresh_batch_progress(session, row.batch_id, now)
            await session.commit()

        work_item_outcomes_total.labels(job_type=item.type, outcome=outcome).inc()
        if outcome == COMPLETED:
            logger.info("work_item_completed", latency_ms=latency_ms)
        elif outcome == RETRIED:
            logger.warning(
                "work_item_retry_scheduled",
                error=error,
                retry_count=row.retry_count,
                scheduled_for=row.scheduled_for.isoformat(),
            )
        else:
            logger.error("work_item_dead_lettered", error=error, retry_count=row.retry_count, permanent=permanent)
            await safe_notify(
                self.notification_sink,
                NotificationType.JOB_DEAD_LETTERED,
                Severity.WARNING,
                "Job moved to dead letter",
                f"{item.type} work item {item.id} failed permanently: {error}",
                {"work_item_id": str(item.id), "job_type": item.type, "batch_id": str(item.batch_id or "")},
            )
        return outcome
