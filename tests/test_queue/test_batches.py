"""
Tests for batch submission, budgets and cancellation.
"""

import pytest
from sqlalchemy import func, select

from engine_orchestrator.models.enums import BatchStatus, JobType, WorkStatus
from engine_orchestrator.models.tables import Batch, OrganizationBilling, WorkItem
from engine_orchestrator.queue.batches import (
    BatchStateError,
    BatchValidationError,
    BudgetExceededError,
    cancel_batch,
    estimate_cost,
    get_batch_status,
    list_batches,
    submit_batch,
)
from engine_orchestrator.queue.work_queue import claim_batch
from engine_orchestrator.schemas.batches import BatchSubmitRequest


def _prompt_items(n):
    return [
        {
            "prompt_id": f"p{i}",
            "prompt_text": "best crm for startups",
            "engine": "chatgpt",
            "brand_name": "Acme",
        }
        for i in range(n)
    ]


async def _add_billing(session_factory, org, **limits):
    async with session_factory() as session:
        session.add(OrganizationBilling(organization_id=org, **limits))
        await session.commit()


async def _count(session_factory, model):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestValidation:
    async def test_empty_batch_rejected(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(BatchValidationError):
                await submit_batch(session, BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=[]))

    async def test_oversized_batch_rejected(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(BatchValidationError, match="exceeds"):
                await submit_batch(
                    session, BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(1001))
                )
        assert await _count(session_factory, WorkItem) == 0

    async def test_malformed_payload_rejected(self, session_factory):
        items = _prompt_items(2)
        del items[1]["engine"]
        async with session_factory() as session:
            with pytest.raises(BatchValidationError) as exc:
                await submit_batch(session, BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=items))
        assert exc.value.errors and exc.value.errors[0].startswith("item 1")
        assert await _count(session_factory, Batch) == 0


class TestSubmit:
    async def test_submit_creates_items(self, session_factory, now):
        async with session_factory() as session:
            batch = await submit_batch(
                session,
                BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(3), priority=7, owner="u1"),
                now=now,
            )

        assert batch.total_jobs == 3
        assert batch.status == BatchStatus.PENDING.value
        assert batch.estimated_cost == pytest.approx(0.015)

        async with session_factory() as session:
            items = (await session.execute(select(WorkItem).where(WorkItem.batch_id == batch.id))).scalars().all()
        assert len(items) == 3
        assert {i.status for i in items} == {WorkStatus.PENDING.value}
        assert {i.priority for i in items} == {7}
        assert sum(i.cost_usd for i in items) == pytest.approx(0.015)

    async def test_budget_rejection_writes_nothing(self, session_factory):
        await _add_billing(session_factory, "org-1", daily_cost_limit=10.0, current_day_cost=6.0)

        async with session_factory() as session:
            with pytest.raises(BudgetExceededError) as exc:
                await submit_batch(
                    session,
                    BatchSubmitRequest(
                        type=JobType.PROMPT_ANALYSIS, items=_prompt_items(1000), organization_id="org-1"
                    ),
                )

        assert exc.value.check.reason == "Daily budget limit exceeded"
        assert exc.value.estimated_cost == pytest.approx(5.0)
        assert exc.value.check.current_usage == pytest.approx(6.0)
        assert exc.value.check.usage_percentage == pytest.approx(60.0)
        assert await _count(session_factory, WorkItem) == 0
        assert await _count(session_factory, Batch) == 0

    async def test_monthly_limit_checked_after_daily(self, session_factory):
        await _add_billing(
            session_factory, "org-1", daily_cost_limit=100.0, monthly_cost_limit=3.0, current_month_cost=2.5
        )
        async with session_factory() as session:
            with pytest.raises(BudgetExceededError) as exc:
                await submit_batch(
                    session,
                    BatchSubmitRequest(
                        type=JobType.PROMPT_ANALYSIS, items=_prompt_items(200), organization_id="org-1"
                    ),
                )
        assert exc.value.check.reason == "Monthly budget limit exceeded"

    async def test_admission_reserves_budget(self, session_factory):
        await _add_billing(session_factory, "org-1", daily_cost_limit=1.0)

        async with session_factory() as session:
            await submit_batch(
                session,
                BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(100), organization_id="org-1"),
            )
        # 0.5 reserved; a second 0.6 batch no longer fits
        async with session_factory() as session:
            with pytest.raises(BudgetExceededError):
                await submit_batch(
                    session,
                    BatchSubmitRequest(
                        type=JobType.PROMPT_ANALYSIS, items=_prompt_items(120), organization_id="org-1"
                    ),
                )
            billing = await session.get(OrganizationBilling, "org-1")
        assert billing.pending_cost == pytest.approx(0.5)


class TestEstimate:
    async def test_estimate_without_discount(self, session_factory, now):
        async with session_factory() as session:
            estimate = await estimate_cost(session, JobType.CITATION_VERIFY.value, 250, now=now)
        assert estimate.base_cost == pytest.approx(0.5)
        assert estimate.volume_discount == 0
        assert estimate.final_cost == pytest.approx(0.5)
        assert estimate.estimated_minutes == 3

    async def test_volume_discount(self, session_factory):
        await _add_billing(session_factory, "big-org", current_month_jobs=150_000)
        async with session_factory() as session:
            estimate = await estimate_cost(session, JobType.PROMPT_ANALYSIS.value, 100, "big-org")
        assert estimate.volume_discount == pytest.approx(0.05)
        assert estimate.final_cost == pytest.approx(0.45)


class TestCancelAndStatus:
    async def test_cancel_pending_batch(self, session_factory):
        await _add_billing(session_factory, "org-1", daily_cost_limit=10.0)
        async with session_factory() as session:
            batch = await submit_batch(
                session,
                BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(4), organization_id="org-1"),
            )

        async with session_factory() as session:
            cancelled = await cancel_batch(session, batch.id)
        assert cancelled.status == BatchStatus.CANCELLED.value
        assert cancelled.cancelled_jobs == 4

        async with session_factory() as session:
            billing = await session.get(OrganizationBilling, "org-1")
            assert billing.pending_cost == pytest.approx(0.0)
            with pytest.raises(BatchStateError):
                await cancel_batch(session, batch.id)

    async def test_cancel_leaves_processing_items(self, session_factory, now):
        async with session_factory() as session:
            batch = await submit_batch(
                session, BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(3)), now=now
            )
        async with session_factory() as session:
            claimed = await claim_batch(session, 1, now=now)
        assert len(claimed) == 1

        async with session_factory() as session:
            await cancel_batch(session, batch.id, now=now)
            statuses = sorted(
                (await session.execute(select(WorkItem.status).where(WorkItem.batch_id == batch.id))).scalars()
            )
        assert statuses == [WorkStatus.CANCELLED.value, WorkStatus.CANCELLED.value, WorkStatus.PROCESSING.value]

    async def test_status_reflects_claims(self, session_factory, now):
        async with session_factory() as session:
            batch = await submit_batch(
                session, BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(2)), now=now
            )
        async with session_factory() as session:
            await claim_batch(session, 1, now=now)
        async with session_factory() as session:
            status = await get_batch_status(session, batch.id)
        assert status.status == BatchStatus.PROCESSING.value
        assert status.started_at is not None
        assert status.progress_percentage == 0

    async def test_list_batches_filters_by_owner(self, session_factory):
        async with session_factory() as session:
            for owner in ("a", "a", "b"):
                await submit_batch(
                    session,
                    BatchSubmitRequest(type=JobType.PROMPT_ANALYSIS, items=_prompt_items(1), owner=owner),
                )
        async with session_factory() as session:
            batches, total = await list_batches(session, owner="a")
        assert total == 2
        assert {b.owner for b in batches} == {"a"}
