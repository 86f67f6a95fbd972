"""
Tests for the job runner and its handlers.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from engine_orchestrator.engines.base import EngineClient
from engine_orchestrator.models.enums import BatchStatus, JobType, NotificationType, WorkStatus
from engine_orchestrator.models.tables import Batch, CostEvent, EngineResult, WorkItem
from engine_orchestrator.queue.batches import submit_batch
from engine_orchestrator.queue.work_queue import replay_item
from engine_orchestrator.runner.handlers import (
    EngineCallLimiter,
    HandlerContext,
    HandlerRegistry,
    TransientJobError,
    query_engine,
)
from engine_orchestrator.runner.job_runner import JobRunner
from engine_orchestrator.schemas.batches import BatchSubmitRequest
from engine_orchestrator.schemas.contracts import EngineQueryRequest, EngineQueryResult


@pytest.fixture
def runner(session_factory, engine_client, tracker, consensus, sink):
    context = HandlerContext(
        session_factory=session_factory,
        engine_client=engine_client,
        tracker=tracker,
        consensus=consensus,
    )
    return JobRunner(session_factory, context, notification_sink=sink, max_concurrency=1)


async def _submit(session_factory, job_type, items, now, max_retries=None):
    async with session_factory() as session:
        return await submit_batch(
            session,
            BatchSubmitRequest(type=job_type, items=items, max_retries=max_retries),
            now=now,
        )


def _prompt(engine, prompt_id="p1"):
    return {"prompt_id": prompt_id, "prompt_text": "best crm", "engine": engine, "brand_name": "Acme"}


async def _items(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(WorkItem))).scalars().all()


class TestHappyPath:
    async def test_prompt_analysis_completes(self, runner, session_factory, tracker, registration, engine_client, now):
        await tracker.register_engine(registration("alpha"))
        batch = await _submit(session_factory, JobType.PROMPT_ANALYSIS, [_prompt("alpha")], now)

        summary = await runner.run_once(now=now)

        assert summary.claimed == 1
        assert summary.completed == 1
        (item,) = await _items(session_factory)
        assert item.status == WorkStatus.COMPLETED.value
        assert item.result["engine"] == "alpha"
        assert len(engine_client.calls) == 1

        async with session_factory() as session:
            stored = (await session.execute(select(EngineResult))).scalar_one()
            cost = (await session.execute(select(CostEvent))).scalar_one()
            refreshed = await session.get(Batch, batch.id)
        assert stored.prompt_id == "p1"
        assert cost.engine == "alpha"
        assert cost.cost_usd == pytest.approx(0.005)
        assert refreshed.status == BatchStatus.COMPLETED.value
        assert refreshed.progress_percentage == 100
        assert refreshed.actual_cost == pytest.approx(0.005)

        row = await tracker.get_engine("alpha")
        assert row.total_queries == 1

    async def test_authority_update_job(self, runner, session_factory, tracker, registration, now):
        await tracker.register_engine(registration("alpha"))
        await _submit(
            session_factory,
            JobType.AUTHORITY_UPDATE,
            [{"engine": "alpha", "success": False, "response_time_ms": 100} for _ in range(3)],
            now,
        )
        summary = await runner.run_once(now=now)
        assert summary.completed == 3
        assert (await tracker.get_engine("alpha")).status == "degraded"

    async def test_score_recalc_uses_stored_results(self, runner, session_factory, tracker, registration, now):
        await tracker.register_engine(registration("alpha"))
        await tracker.register_engine(registration("beta"))
        await _submit(session_factory, JobType.PROMPT_ANALYSIS, [_prompt("alpha"), _prompt("beta")], now)
        await runner.run_once(now=now)

        await _submit(session_factory, JobType.SCORE_RECALC, [{"prompt_id": "p1"}], now)
        summary = await runner.run_once(now=now)

        assert summary.completed == 1
        (recalc,) = [i for i in await _items(session_factory) if i.type == JobType.SCORE_RECALC.value]
        assert recalc.result["prompt_id"] == "p1"
        assert recalc.result["confidence_multiplier"] == 1.0
        assert recalc.result["is_estimated"] is False

    async def test_score_recalc_without_results_dead_letters(self, runner, session_factory, now):
        await _submit(session_factory, JobType.SCORE_RECALC, [{"prompt_id": "nothing"}], now)
        summary = await runner.run_once(now=now)
        assert summary.dead_lettered == 1


class TestFailures:
    async def test_unknown_type_dead_lettered_immediately(self, runner, session_factory, sink, now):
        async with session_factory() as session:
            session.add(WorkItem(type="mystery", payload={}, scheduled_for=now, max_retries=5))
            await session.commit()

        summary = await runner.run_once(now=now)

        assert summary.dead_lettered == 1
        (item,) = await _items(session_factory)
        assert item.status == WorkStatus.DEAD_LETTER.value
        assert item.retry_count == 0
        assert "Unknown job type" in item.error_message
        assert sink.sent[-1]["type"] == NotificationType.JOB_DEAD_LETTERED

    async def test_unregistered_engine_is_permanent(self, runner, session_factory, now):
        await _submit(session_factory, JobType.PROMPT_ANALYSIS, [_prompt("ghost")], now)
        summary = await runner.run_once(now=now)
        assert summary.dead_lettered == 1

    async def test_retry_dead_letter_replay_round_trip(self, runner, session_factory, tracker, registration, now):
        await tracker.register_engine(registration("flaky"))
        await _submit(session_factory, JobType.PROMPT_ANALYSIS, [_prompt("flaky")], now, max_retries=1)

        first = await runner.run_once(now=now)
        assert first.retried == 1
        (item,) = await _items(session_factory)
        assert item.status == WorkStatus.PENDING.value
        assert item.retry_count == 1
        assert item.scheduled_for == now + timedelta(minutes=1)

        # Not due yet
        assert (await runner.run_once(now=now)).claimed == 0

        second = await runner.run_once(now=now + timedelta(minutes=2))
        assert second.dead_lettered == 1
        (item,) = await _items(session_factory)
        assert item.status == WorkStatus.DEAD_LETTER.value
        assert "flaky query failed" in item.error_message

        async with session_factory() as session:
            await replay_item(session, item.id, now=now + timedelta(minutes=3))
        third = await runner.run_once(now=now + timedelta(minutes=3))
        assert third.claimed == 1
        assert third.retried == 1

        row = await tracker.get_engine("flaky")
        assert row.consecutive_failures == 3
        assert row.status == "degraded"

    async def test_handler_exception_never_escapes(self, session_factory, engine_client, tracker, consensus, now):
        async def explode(ctx, item, payload):
            raise RuntimeError("kaput")

        context = HandlerContext(
            session_factory=session_factory, engine_client=engine_client, tracker=tracker, consensus=consensus
        )
        runner = JobRunner(
            session_factory,
            context,
            registry=HandlerRegistry({JobType.SCORE_RECALC.value: explode}),
            max_concurrency=1,
        )
        await _submit(session_factory, JobType.SCORE_RECALC, [{"prompt_id": "p1"}], now, max_retries=0)

        summary = await runner.run_once(now=now)
        assert summary.dead_lettered == 1
        (item,) = await _items(session_factory)
        assert item.error_message == "RuntimeError: kaput"


class SlowEngineClient(EngineClient):
    """Answers after `delay` seconds and tracks how many calls overlap per engine."""

    def __init__(self, delay: float):
        self.delay = delay
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}

    @property
    def client_name(self) -> str:
        return "slow"

    async def query(self, engine_id: str, request: EngineQueryRequest) -> EngineQueryResult:
        self.active[engine_id] = self.active.get(engine_id, 0) + 1
        self.peak[engine_id] = max(self.peak.get(engine_id, 0), self.active[engine_id])
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active[engine_id] -= 1
        return EngineQueryResult(success=True, response_time_ms=int(self.delay * 1000))


class RecordingTracker:
    def __init__(self):
        self.results = []

    async def record_result(self, engine, success, response_time_ms=None, citation_present=None):
        self.results.append((engine, success))


class TestEngineCalls:
    async def test_timeout_schedules_retry(self, session_factory, tracker, consensus, registration, now):
        await tracker.register_engine(registration("alpha"))
        context = HandlerContext(
            session_factory=session_factory,
            engine_client=SlowEngineClient(delay=5),
            tracker=tracker,
            consensus=consensus,
            query_timeout=0.05,
        )
        runner = JobRunner(session_factory, context, max_concurrency=1)
        await _submit(session_factory, JobType.PROMPT_ANALYSIS, [_prompt("alpha")], now, max_retries=2)

        summary = await runner.run_once(now=now)

        assert summary.retried == 1
        (item,) = await _items(session_factory)
        assert item.status == WorkStatus.PENDING.value
        assert item.retry_count == 1
        assert item.scheduled_for == now + timedelta(minutes=1)
        assert "timed out" in item.error_message
        row = await tracker.get_engine("alpha")
        assert row.consecutive_failures == 1
        assert row.total_queries == 1

    async def test_limiter_bounds_calls_per_engine(self, session_factory, consensus):
        client = SlowEngineClient(delay=0.02)
        recorder = RecordingTracker()
        context = HandlerContext(
            session_factory=session_factory,
            engine_client=client,
            tracker=recorder,
            consensus=consensus,
            limiter=EngineCallLimiter(2),
        )
        request = EngineQueryRequest(operation=JobType.PROMPT_ANALYSIS.value, prompt_id="p1", prompt_text="best crm")

        await asyncio.gather(
            *(query_engine(context, engine, request) for engine in ["alpha"] * 6 + ["beta"] * 6)
        )

        assert client.peak == {"alpha": 2, "beta": 2}
        assert len(recorder.results) == 12
        assert all(success for _, success in recorder.results)

    async def test_timeout_is_transient(self, session_factory, consensus):
        recorder = RecordingTracker()
        context = HandlerContext(
            session_factory=session_factory,
            engine_client=SlowEngineClient(delay=5),
            tracker=recorder,
            consensus=consensus,
            query_timeout=0.01,
        )
        request = EngineQueryRequest(operation=JobType.PROMPT_ANALYSIS.value, prompt_id="p1", prompt_text="best crm")

        with pytest.raises(TransientJobError, match="timed out"):
            await query_engine(context, "alpha", request)
        assert recorder.results == [("alpha", False)]
