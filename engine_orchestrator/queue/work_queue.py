"""
Durable work queue over the work_items table.

Claiming is a single conditional UPDATE ... RETURNING over a
FOR UPDATE SKIP LOCKED sub-select, so concurrent runners never receive the
same item. Transition helpers flush only; the runner owns the transaction.
"""

import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.config import settings
from engine_orchestrator.models.database import utcnow
from engine_orchestrator.models.enums import WorkStatus
from engine_orchestrator.models.tables import WorkItem
from engine_orchestrator.observability.metrics import work_items_claimed_total, work_queue_depth
from engine_orchestrator.queue.batches import BudgetExceededError, refresh_batch_progress
from engine_orchestrator.queue.budget import check_budget, release_reservation, reserve_budget
from engine_orchestrator.schemas.batches import RetentionResult, WorkQueueStats

logger = structlog.get_logger(__name__)


class WorkItemNotFoundError(Exception):
    def __init__(self, item_id: uuid.UUID):
        self.item_id = item_id
        super().__init__(f"Work item not found: {item_id}")


class InvalidTransitionError(Exception):
    """Raised when a work item is not in a state that allows the requested change."""

    def __init__(self, item_id: uuid.UUID, current: str, action: str):
        self.item_id = item_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} work item {item_id} in status {current}")


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before the next attempt: BACKOFF_BASE_MINUTES * 2^retry_count."""
    return timedelta(minutes=settings.BACKOFF_BASE_MINUTES * (2 ** retry_count))


async def get_work_item(session: AsyncSession, item_id: uuid.UUID) -> WorkItem:
    item = await session.get(WorkItem, item_id)
    if item is None:
        raise WorkItemNotFoundError(item_id)
    return item


async def claim_batch(
    session: AsyncSession,
    limit: int,
    types: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> list[WorkItem]:
    """
    Atomically move up to `limit` eligible items to processing and commit.

    Eligible: pending and scheduled_for <= now. Highest priority first, then
    oldest schedule.
    """
    now = now or utcnow()
    candidates = (
        select(WorkItem.id)
        .where(WorkItem.status == WorkStatus.PENDING.value, WorkItem.scheduled_for <= now)
        .order_by(WorkItem.priority.desc(), WorkItem.scheduled_for.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if types:
        candidates = candidates.where(WorkItem.type.in_(types))

    result = await session.execute(
        update(WorkItem)
        .where(WorkItem.id.in_(candidates), WorkItem.status == WorkStatus.PENDING.value)
        .values(status=WorkStatus.PROCESSING.value, started_at=now)
        .returning(WorkItem)
        .execution_options(synchronize_session=False)
    )
    claimed = list(result.scalars().all())
    claimed.sort(key=lambda item: (-item.priority, item.scheduled_for))

    for batch_id in {item.batch_id for item in claimed if item.batch_id is not None}:
        await refresh_batch_progress(session, batch_id, now)
    await session.commit()

    if claimed:
        work_items_claimed_total.inc(len(claimed))
        logger.info("work_items_claimed", count=len(claimed), types=types)
    return claimed


async def mark_completed(
    session: AsyncSession,
    item_id: uuid.UUID,
    result: Optional[dict],
    now: Optional[datetime] = None,
) -> WorkItem:
    now = now or utcnow()
    item = await get_work_item(session, item_id)
    if item.status != WorkStatus.PROCESSING.value:
        raise InvalidTransitionError(item_id, item.status, "complete")

    item.status = WorkStatus.COMPLETED.value
    item.result = result
    item.completed_at = now
    item.error_message = None
    await session.flush()
    return item


async def mark_failed(
    session: AsyncSession,
    item_id: uuid.UUID,
    error_message: str,
    permanent: bool = False,
    now: Optional[datetime] = None,
) -> WorkItem:
    """
    Record a handler failure.

    Transient failures with retries left go back to pending with exponential
    backoff; everything else is dead-lettered and its budget reservation
    released.
    """
    now = now or utcnow()
    item = await get_work_item(session, item_id)
    if item.status != WorkStatus.PROCESSING.value:
        raise InvalidTransitionError(item_id, item.status, "fail")

    item.error_message = error_message[:2000]
    if permanent or item.retry_count >= item.max_retries:
        item.status = WorkStatus.DEAD_LETTER.value
        item.completed_at = now
        await release_reservation(session, item.organization_id, item.cost_usd)
    else:
        item.scheduled_for = now + backoff_delay(item.retry_count)
        item.retry_count += 1
        item.status = WorkStatus.PENDING.value
        item.started_at = None
    await session.flush()
    return item


async def replay_item(
    session: AsyncSession,
    item_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> WorkItem:
    """
    Send a dead-lettered item back to the queue with a fresh retry budget. Commits.

    Dead-lettering released the item's reservation, so replay has to win it
    back under the same budget check as a new submission; raises
    BudgetExceededError otherwise.
    """
    now = now or utcnow()
    item = await get_work_item(session, item_id)
    if item.status != WorkStatus.DEAD_LETTER.value:
        raise InvalidTransitionError(item_id, item.status, "replay")

    organization_id, cost = item.organization_id, item.cost_usd
    check = await check_budget(session, organization_id, cost, lock=True)
    if not check.allowed:
        await session.rollback()
        logger.warning(
            "work_item_replay_rejected_budget",
            work_item_id=str(item_id),
            organization_id=organization_id,
            current_usage=check.current_usage,
            limit=check.limit,
        )
        raise BudgetExceededError(check, cost)
    await reserve_budget(session, organization_id, cost)

    item.status = WorkStatus.PENDING.value
    item.retry_count = 0
    item.error_message = None
    item.scheduled_for = now
    item.started_at = None
    item.completed_at = None
    item.result = None
    if item.batch_id is not None:
        await refresh_batch_progress(session, item.batch_id, now)
    await session.commit()

    logger.info("work_item_replayed", work_item_id=str(item_id))
    return item


async def cancel_item(
    session: AsyncSession,
    item_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> WorkItem:
    """Cancel a single pending item. Commits."""
    now = now or utcnow()
    result = await session.execute(
        update(WorkItem)
        .where(WorkItem.id == item_id, WorkItem.status == WorkStatus.PENDING.value)
        .values(status=WorkStatus.CANCELLED.value, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        item = await get_work_item(session, item_id)
        raise InvalidTransitionError(item_id, item.status, "cancel")

    item = await get_work_item(session, item_id)
    await session.refresh(item)
    await release_reservation(session, item.organization_id, item.cost_usd)
    if item.batch_id is not None:
        await refresh_batch_progress(session, item.batch_id, now)
    await session.commit()

    logger.info("work_item_cancelled", work_item_id=str(item_id))
    return item


async def retention_sweep(
    session: AsyncSession,
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> RetentionResult:
    """Delete completed and dead-lettered items older than the retention horizon. Commits."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days if retention_days is not None else settings.RETENTION_DAYS)
    result = await session.execute(
        delete(WorkItem)
        .where(
            WorkItem.status.in_([WorkStatus.COMPLETED.value, WorkStatus.DEAD_LETTER.value]),
            WorkItem.completed_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    logger.info("retention_sweep_completed", deleted=result.rowcount, cutoff=cutoff.isoformat())
    return RetentionResult(deleted=result.rowcount, cutoff=cutoff)


async def get_queue_stats(session: AsyncSession) -> WorkQueueStats:
    rows = await session.execute(
        select(WorkItem.status, func.count()).group_by(WorkItem.status)
    )
    counts = {status: n for status, n in rows.all()}
    for status in WorkStatus:
        work_queue_depth.labels(status=status.value).set(counts.get(status.value, 0))
    return WorkQueueStats(**counts, total=sum(counts.values()))


async def list_dead_letters(
    session: AsyncSession,
    limit: int = 50,
    offset: int = 0,
) -> list[WorkItem]:
    result = await session.execute(
        select(WorkItem)
        .where(WorkItem.status == WorkStatus.DEAD_LETTER.value)
        .order_by(WorkItem.completed_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def get_throughput(
    session: AsyncSession,
    hours: int = 24,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Completed items per hour over the trailing window, oldest bucket first."""
    now = now or utcnow()
    since = now - timedelta(hours=hours)
    rows = await session.execute(
        select(WorkItem.completed_at).where(
            WorkItem.status == WorkStatus.COMPLETED.value,
            WorkItem.completed_at >= since,
        )
    )
    buckets = Counter(
        completed_at.replace(minute=0, second=0, microsecond=0) for (completed_at,) in rows.all()
    )
    return [{"hour": hour, "completed": buckets[hour]} for hour in sorted(buckets)]
