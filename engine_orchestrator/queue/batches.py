"""
Batch Submitter.

Admits a group of same-type work items after validating size, payloads and
budget. The budget check, reservation and inserts share one transaction, so
two concurrent submissions cannot both pass on a stale view of spend.
"""

import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.config import settings
from engine_orchestrator.models.database import utcnow
from engine_orchestrator.models.enums import BatchStatus, JobType, WorkStatus
from engine_orchestrator.models.tables import Batch, WorkItem
from engine_orchestrator.observability.metrics import (
    batches_rejected_total,
    batches_submitted_total,
    work_items_enqueued_total,
)
from engine_orchestrator.queue.budget import check_budget, get_billing, release_reservation, reserve_budget
from engine_orchestrator.schemas.batches import BatchSubmitRequest, BudgetCheck, CostEstimate
from engine_orchestrator.schemas.contracts import PAYLOAD_MODELS

logger = structlog.get_logger(__name__)


# ── Pricing and limits per job type ──────────────────────────
COST_PER_ITEM = {
    JobType.PROMPT_ANALYSIS.value: 0.005,
    JobType.SCORE_RECALC.value: 0.001,
    JobType.CITATION_VERIFY.value: 0.002,
    JobType.AUTHORITY_UPDATE.value: 0.0005,
}

MAX_BATCH_SIZE = {
    JobType.PROMPT_ANALYSIS.value: 1000,
    JobType.SCORE_RECALC.value: 5000,
    JobType.CITATION_VERIFY.value: 2000,
    JobType.AUTHORITY_UPDATE.value: 10000,
}


class BatchValidationError(Exception):
    """Submission rejected before anything was written."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(message)


class BudgetExceededError(Exception):
    """Submission would push the organization past a cost limit."""

    def __init__(self, check: BudgetCheck, estimated_cost: float):
        self.check = check
        self.estimated_cost = estimated_cost
        super().__init__(check.reason or "Budget exceeded")


class BatchNotFoundError(Exception):
    def __init__(self, batch_id: uuid.UUID):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class BatchStateError(Exception):
    """Raised for an illegal batch state change."""


def cost_per_item(job_type: str) -> float:
    return COST_PER_ITEM.get(job_type, settings.DEFAULT_COST_PER_ITEM)


def max_batch_size(job_type: str) -> int:
    return MAX_BATCH_SIZE.get(job_type, settings.DEFAULT_MAX_BATCH_SIZE)


async def estimate_cost(
    session: AsyncSession,
    job_type: str,
    count: int,
    organization_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CostEstimate:
    """Cost and duration estimate, including the high-volume discount."""
    now = now or utcnow()
    per_item = cost_per_item(job_type)
    base = round(per_item * count, 6)

    discount = 0.0
    if organization_id is not None:
        billing = await get_billing(session, organization_id)
        if billing is not None and billing.current_month_jobs > settings.VOLUME_DISCOUNT_THRESHOLD:
            discount = round(base * settings.VOLUME_DISCOUNT_RATE, 6)

    minutes = math.ceil(count / settings.THROUGHPUT_PER_MINUTE)
    return CostEstimate(
        type=job_type,
        count=count,
        cost_per_item=per_item,
        base_cost=base,
        volume_discount=discount,
        final_cost=round(base - discount, 6),
        estimated_minutes=minutes,
        estimated_completion=now + timedelta(minutes=minutes),
    )


def validate_payloads(job_type: str, items: list[dict]) -> list[dict]:
    """Validate every payload against its job type. Returns normalized payloads."""
    model = PAYLOAD_MODELS.get(job_type)
    if model is None:
        raise BatchValidationError(f"Unknown job type: {job_type}")

    normalized: list[dict] = []
    errors: list[str] = []
    for index, item in enumerate(items):
        try:
            normalized.append(model.model_validate(item).model_dump(mode="json"))
        except ValidationError as e:
            errors.append(f"item {index}: {e.errors()[0]['msg']} ({'.'.join(map(str, e.errors()[0]['loc']))})")
    if errors:
        raise BatchValidationError(f"{len(errors)} invalid payload(s)", errors)
    return normalized


async def submit_batch(
    session: AsyncSession,
    request: BatchSubmitRequest,
    now: Optional[datetime] = None,
) -> Batch:
    """
    Validate and admit a batch. Commits on success.

    Raises BatchValidationError or BudgetExceededError; nothing is written
    on rejection.
    """
    now = now or utcnow()
    job_type = request.type.value
    count = len(request.items)

    if count == 0:
        batches_rejected_total.labels(job_type=job_type, reason="empty").inc()
        raise BatchValidationError("Batch contains no items")
    limit = max_batch_size(job_type)
    if count > limit:
        batches_rejected_total.labels(job_type=job_type, reason="too_large").inc()
        raise BatchValidationError(f"Batch of {count} exceeds the {limit} item limit for {job_type}")

    try:
        payloads = validate_payloads(job_type, request.items)
    except BatchValidationError:
        batches_rejected_total.labels(job_type=job_type, reason="invalid_payload").inc()
        raise

    estimate = await estimate_cost(session, job_type, count, request.organization_id, now)
    check = await check_budget(session, request.organization_id, estimate.final_cost, lock=True)
    if not check.allowed:
        await session.rollback()
        batches_rejected_total.labels(job_type=job_type, reason="budget").inc()
        logger.warning(
            "batch_rejected_budget",
            organization_id=request.organization_id,
            estimated_cost=estimate.final_cost,
            current_usage=check.current_usage,
            limit=check.limit,
        )
        raise BudgetExceededError(check, estimate.final_cost)

    batch = Batch(
        id=uuid.uuid4(),
        owner=request.owner,
        organization_id=request.organization_id,
        type=job_type,
        total_jobs=count,
        status=BatchStatus.PENDING.value,
        estimated_cost=estimate.final_cost,
        actual_cost=0.0,
        estimated_completion=estimate.estimated_completion,
        created_at=now,
    )
    session.add(batch)
    await session.flush()

    item_cost = round(estimate.final_cost / count, 6)
    scheduled_for = request.scheduled_for or now
    max_retries = request.max_retries if request.max_retries is not None else settings.DEFAULT_MAX_RETRIES
    await session.execute(
        insert(WorkItem),
        [
            {
                "id": uuid.uuid4(),
                "owner": request.owner,
                "organization_id": request.organization_id,
                "type": job_type,
                "payload": payload,
                "status": WorkStatus.PENDING.value,
                "priority": request.priority,
                "retry_count": 0,
                "max_retries": max_retries,
                "cost_usd": item_cost,
                "scheduled_for": scheduled_for,
                "batch_id": batch.id,
                "created_at": now,
            }
            for payload in payloads
        ],
    )
    await reserve_budget(session, request.organization_id, estimate.final_cost)
    await session.commit()

    batches_submitted_total.labels(job_type=job_type).inc()
    work_items_enqueued_total.labels(job_type=job_type).inc(count)
    logger.info(
        "batch_submitted",
        batch_id=str(batch.id),
        job_type=job_type,
        total_jobs=count,
        estimated_cost=estimate.final_cost,
        priority=request.priority,
    )
    return batch


async def get_batch(session: AsyncSession, batch_id: uuid.UUID) -> Batch:
    batch = await session.get(Batch, batch_id)
    if batch is None:
        raise BatchNotFoundError(batch_id)
    return batch


async def refresh_batch_progress(
    session: AsyncSession,
    batch_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Batch:
    """Recompute batch counters and status from its work items. Flushes only."""
    now = now or utcnow()
    batch = await get_batch(session, batch_id)
    rows = await session.execute(
        select(WorkItem.status, func.count())
        .where(WorkItem.batch_id == batch_id)
        .group_by(WorkItem.status)
    )
    counts = {status: n for status, n in rows.all()}

    completed = counts.get(WorkStatus.COMPLETED.value, 0)
    failed = counts.get(WorkStatus.DEAD_LETTER.value, 0) + counts.get(WorkStatus.FAILED.value, 0)
    cancelled = counts.get(WorkStatus.CANCELLED.value, 0)
    in_flight = counts.get(WorkStatus.PROCESSING.value, 0)
    processed = completed + failed

    batch.completed_jobs = completed
    batch.failed_jobs = failed
    batch.cancelled_jobs = cancelled
    batch.progress_percentage = round(processed / batch.total_jobs * 100, 2) if batch.total_jobs else 0.0

    if batch.status != BatchStatus.CANCELLED.value:
        if processed + cancelled >= batch.total_jobs:
            batch.status = BatchStatus.COMPLETED.value
            batch.completed_at = batch.completed_at or now
        elif processed > 0 or in_flight > 0:
            batch.status = BatchStatus.PROCESSING.value
        if batch.status != BatchStatus.PENDING.value and batch.started_at is None:
            batch.started_at = now

    await session.flush()
    return batch


async def get_batch_status(session: AsyncSession, batch_id: uuid.UUID) -> Batch:
    """Live batch view recomputed from its items."""
    batch = await refresh_batch_progress(session, batch_id)
    await session.commit()
    return batch


async def cancel_batch(
    session: AsyncSession,
    batch_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Batch:
    """
    Cancel a batch and every still-pending item in it. Commits.
    Processing and finished items are left alone.
    """
    now = now or utcnow()
    batch = await get_batch(session, batch_id)
    if batch.status not in (BatchStatus.PENDING.value, BatchStatus.PROCESSING.value):
        raise BatchStateError(f"Cannot cancel a {batch.status} batch")

    result = await session.execute(
        update(WorkItem)
        .where(WorkItem.batch_id == batch_id, WorkItem.status == WorkStatus.PENDING.value)
        .values(status=WorkStatus.CANCELLED.value, completed_at=now)
        .returning(WorkItem.cost_usd)
        .execution_options(synchronize_session=False)
    )
    released = [cost for (cost,) in result.all()]
    await release_reservation(session, batch.organization_id, round(sum(released), 6))

    batch.status = BatchStatus.CANCELLED.value
    batch.completed_at = now
    await refresh_batch_progress(session, batch_id, now)
    await session.commit()

    logger.info("batch_cancelled", batch_id=str(batch_id), cancelled_items=len(released))
    return batch


async def list_batches(
    session: AsyncSession,
    owner: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Batch], int]:
    query = select(Batch)
    count_query = select(func.count()).select_from(Batch)
    if owner is not None:
        query = query.where(Batch.owner == owner)
        count_query = count_query.where(Batch.owner == owner)
    if status is not None:
        query = query.where(Batch.status == status)
        count_query = count_query.where(Batch.status == status)

    total = (await session.execute(count_query)).scalar_one()
    result = await session.execute(
        query.order_by(Batch.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all()), total
