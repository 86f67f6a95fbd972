"""
Tests for claiming, retry transitions, replay and retention.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from engine_orchestrator.models.enums import WorkStatus
from engine_orchestrator.models.tables import OrganizationBilling, WorkItem
from engine_orchestrator.observability.cost_tracker import CostTracker
from engine_orchestrator.queue.batches import BudgetExceededError
from engine_orchestrator.queue.work_queue import (
    InvalidTransitionError,
    backoff_delay,
    cancel_item,
    claim_batch,
    get_queue_stats,
    get_throughput,
    mark_completed,
    mark_failed,
    replay_item,
    retention_sweep,
)


async def _add_items(session_factory, *specs):
    """specs: (priority, scheduled_for) tuples. Returns ids in the given order."""
    ids = []
    async with session_factory() as session:
        for priority, scheduled_for in specs:
            item = WorkItem(
                type="authority_update",
                payload={"engine": "alpha", "success": True},
                priority=priority,
                scheduled_for=scheduled_for,
                max_retries=2,
            )
            session.add(item)
            await session.flush()
            ids.append(item.id)
        await session.commit()
    return ids


async def _dead_lettered_billed_item(session_factory, now, **limits):
    """One $0.001 item dead-lettered while $0.01 of other work stays reserved."""
    async with session_factory() as session:
        session.add(OrganizationBilling(organization_id="org-1", pending_cost=0.011, **limits))
        item = WorkItem(
            type="authority_update",
            payload={"engine": "alpha", "success": True},
            organization_id="org-1",
            cost_usd=0.001,
            scheduled_for=now,
            max_retries=0,
        )
        session.add(item)
        await session.commit()
        item_id = item.id
    async with session_factory() as session:
        await claim_batch(session, 1, now=now)
    async with session_factory() as session:
        await mark_failed(session, item_id, "bad", now=now)
        await session.commit()
    return item_id


async def _billing(session_factory):
    async with session_factory() as session:
        return await session.get(OrganizationBilling, "org-1")


class TestBackoff:
    def test_exponential(self):
        assert backoff_delay(0) == timedelta(minutes=1)
        assert backoff_delay(1) == timedelta(minutes=2)
        assert backoff_delay(3) == timedelta(minutes=8)


class TestClaim:
    async def test_priority_then_schedule_order(self, session_factory, now):
        low, high_late, high_early = await _add_items(
            session_factory,
            (1, now - timedelta(minutes=30)),
            (9, now - timedelta(minutes=1)),
            (9, now - timedelta(minutes=10)),
        )
        async with session_factory() as session:
            claimed = await claim_batch(session, 10, now=now)
        assert [i.id for i in claimed] == [high_early, high_late, low]
        assert all(i.status == WorkStatus.PROCESSING.value for i in claimed)
        assert all(i.started_at == now for i in claimed)

    async def test_future_items_not_claimed(self, session_factory, now):
        (future,) = await _add_items(session_factory, (5, now + timedelta(minutes=5)))
        async with session_factory() as session:
            assert await claim_batch(session, 10, now=now) == []
        async with session_factory() as session:
            claimed = await claim_batch(session, 10, now=now + timedelta(minutes=5))
        assert [i.id for i in claimed] == [future]

    async def test_limit_and_no_double_claim(self, session_factory, now):
        await _add_items(session_factory, *[(5, now) for _ in range(3)])
        async with session_factory() as session:
            first = await claim_batch(session, 2, now=now)
        async with session_factory() as session:
            second = await claim_batch(session, 2, now=now)
        async with session_factory() as session:
            third = await claim_batch(session, 2, now=now)
        assert len(first) == 2
        assert len(second) == 1
        assert third == []
        assert not {i.id for i in first} & {i.id for i in second}

    async def test_type_filter(self, session_factory, now):
        await _add_items(session_factory, (5, now))
        async with session_factory() as session:
            assert await claim_batch(session, 10, types=["score_recalc"], now=now) == []
            assert len(await claim_batch(session, 10, types=["authority_update"], now=now)) == 1


class TestTransitions:
    async def test_transient_failure_schedules_retry(self, session_factory, now):
        (item_id,) = await _add_items(session_factory, (5, now))
        async with session_factory() as session:
            await claim_batch(session, 1, now=now)
        async with session_factory() as session:
            item = await mark_failed(session, item_id, "timeout", now=now)
            await session.commit()
        assert item.status == WorkStatus.PENDING.value
        assert item.retry_count == 1
        assert item.scheduled_for == now + timedelta(minutes=1)
        assert item.error_message == "timeout"

    async def test_retries_exhausted_dead_letters(self, session_factory, now):
        (item_id,) = await _add_items(session_factory, (5, now))
        at = now
        for expected_retry in (1, 2):
            async with session_factory() as session:
                assert len(await claim_batch(session, 1, now=at)) == 1
            async with session_factory() as session:
                item = await mark_failed(session, item_id, "boom", now=at)
                await session.commit()
            assert item.retry_count == expected_retry
            at = item.scheduled_for

        async with session_factory() as session:
            await claim_batch(session, 1, now=at)
        async with session_factory() as session:
            item = await mark_failed(session, item_id, "boom", now=at)
            await session.commit()
        assert item.status == WorkStatus.DEAD_LETTER.value
        assert item.retry_count == 2

    async def test_permanent_failure_skips_retries(self, session_factory, now):
        (item_id,) = await _add_items(session_factory, (5, now))
        async with session_factory() as session:
            await claim_batch(session, 1, now=now)
        async with session_factory() as session:
            item = await mark_failed(session, item_id, "bad payload", permanent=True, now=now)
            await session.commit()
        assert item.status == WorkStatus.DEAD_LETTER.value
        assert item.retry_count == 0

    async def test_complete_requires_processing(self, session_factory, now):
        (item_id,) = await _add_items(session_factory, (5, now))
        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await mark_completed(session, item_id, {"ok": True}, now=now)

    async def test_replay_only_from_dead_letter(self, session_factory, now):
        (item_id,) = await _add_items(session_factory, (5, now))
        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await replay_item(session, item_id, now=now)

    async def test_replay_resets_retry_budget(self, session_factory, now):
        (item_id,) = await _add_items(session_factory, (5, now))
        async with session_factory() as session:
            await claim_batch(session, 1, now=now)
        async with session_factory() as session:
            await mark_failed(session, item_id, "bad", permanent=True, now=now)
            await session.commit()

        later = now + timedelta(hours=1)
        async with session_factory() as session:
            item = await replay_item(session, item_id, now=later)
        assert item.status == WorkStatus.PENDING.value
        assert item.retry_count == 0
        assert item.error_message is None

        async with session_factory() as session:
            claimed = await claim_batch(session, 1, now=later)
        assert [i.id for i in claimed] == [item_id]

    async def test_replay_reserves_budget_again(self, session_factory, now):
        item_id = await _dead_lettered_billed_item(session_factory, now)
        assert (await _billing(session_factory)).pending_cost == pytest.approx(0.010)

        async with session_factory() as session:
            await replay_item(session, item_id, now=now)
        assert (await _billing(session_factory)).pending_cost == pytest.approx(0.011)

        async with session_factory() as session:
            await claim_batch(session, 1, now=now)
        async with session_factory() as session:
            item = await mark_completed(session, item_id, {"ok": True}, now=now)
            await CostTracker(session).record(item)
            await session.commit()

        billing = await _billing(session_factory)
        # Only the other work's reservation is left
        assert billing.pending_cost == pytest.approx(0.010)
        assert billing.current_day_cost == pytest.approx(0.001)

    async def test_replay_refused_over_budget(self, session_factory, now):
        item_id = await _dead_lettered_billed_item(session_factory, now, daily_cost_limit=0.0105)
        async with session_factory() as session:
            with pytest.raises(BudgetExceededError):
                await replay_item(session, item_id, now=now)

        async with session_factory() as session:
            item = await session.get(WorkItem, item_id)
        assert item.status == WorkStatus.DEAD_LETTER.value
        assert (await _billing(session_factory)).pending_cost == pytest.approx(0.010)

    async def test_cancel_item(self, session_factory, now):
        pending_id, running_id = await _add_items(session_factory, (1, now), (9, now))
        async with session_factory() as session:
            await claim_batch(session, 1, now=now)

        async with session_factory() as session:
            cancelled = await cancel_item(session, pending_id, now=now)
            assert cancelled.status == WorkStatus.CANCELLED.value
            with pytest.raises(InvalidTransitionError):
                await cancel_item(session, running_id, now=now)


class TestMaintenance:
    async def test_retention_deletes_only_old_finished_items(self, session_factory, now):
        old_done, recent_done, old_pending = await _add_items(session_factory, (5, now), (5, now), (5, now))
        async with session_factory() as session:
            for item_id, completed_at in ((old_done, now - timedelta(days=45)), (recent_done, now)):
                item = await session.get(WorkItem, item_id)
                item.status = WorkStatus.COMPLETED.value
                item.completed_at = completed_at
            await session.commit()

        async with session_factory() as session:
            result = await retention_sweep(session, now=now, retention_days=30)
        assert result.deleted == 1

        async with session_factory() as session:
            remaining = set((await session.execute(select(WorkItem.id))).scalars())
        assert remaining == {recent_done, old_pending}

    async def test_stats_and_throughput(self, session_factory, now):
        ids = await _add_items(session_factory, (5, now), (5, now), (5, now))
        async with session_factory() as session:
            await claim_batch(session, 2, now=now)
        async with session_factory() as session:
            for item_id in ids[:2]:
                item = await session.get(WorkItem, item_id)
                if item.status == WorkStatus.PROCESSING.value:
                    await mark_completed(session, item_id, {"ok": True}, now=now)
            await session.commit()

        async with session_factory() as session:
            stats = await get_queue_stats(session)
            buckets = await get_throughput(session, hours=24, now=now + timedelta(minutes=1))
        assert stats.total == 3
        assert stats.completed + stats.processing == 2
        assert stats.pending == 1
        assert sum(b["completed"] for b in buckets) == stats.completed
