"""
Tests for the engine authority tracker.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm.exc import StaleDataError

from engine_orchestrator.authority.tracker import AuthorityWriteConflict, EngineNotFoundError
from engine_orchestrator.config import settings
from engine_orchestrator.models.database import utcnow
from engine_orchestrator.models.enums import (
    AuditChangeType,
    EngineStatus,
    NotificationType,
    OutageResolution,
    SnapshotType,
)
from engine_orchestrator.models.tables import AuthorityAuditLog, EngineAuthority, EngineOutage


async def _fail(tracker, engine, times):
    outcome = None
    for _ in range(times):
        outcome = await tracker.record_result(engine, success=False, response_time_ms=900)
    return outcome


class TestRegistration:
    async def test_register_computes_formula_weight(self, tracker, registration):
        row = await tracker.register_engine(registration("alpha", 50, 50, 100))
        assert row.authority_weight == pytest.approx(1.2)
        assert row.status == EngineStatus.HEALTHY.value

    async def test_register_is_idempotent(self, tracker, registration):
        first = await tracker.register_engine(registration("alpha", 50, 50, 100))
        second = await tracker.register_engine(registration("alpha", 0, 0, 0))
        assert second.id == first.id
        assert second.authority_weight == pytest.approx(1.2)

    async def test_seed_default_engines(self, tracker):
        assert await tracker.seed_default_engines() == 6
        assert await tracker.seed_default_engines() == 0
        assert len(await tracker.get_authority()) == 6

    async def test_unknown_engine(self, tracker):
        with pytest.raises(EngineNotFoundError):
            await tracker.record_result("nobody", success=True)


class TestStatusTransitions:
    async def test_two_failures_stay_healthy(self, tracker, registration):
        await tracker.register_engine(registration("alpha"))
        outcome = await _fail(tracker, "alpha", 2)
        assert outcome.new_status == EngineStatus.HEALTHY.value
        assert outcome.consecutive_failures == 2

    async def test_three_failures_degrade(self, tracker, registration):
        await tracker.register_engine(registration("alpha"))
        outcome = await _fail(tracker, "alpha", 3)
        assert outcome.new_status == EngineStatus.DEGRADED.value
        assert outcome.new_weight == 0.75

    async def test_five_failures_open_one_outage(self, tracker, registration, session_factory, sink):
        await tracker.register_engine(registration("alpha"))
        outcome = await _fail(tracker, "alpha", 5)
        assert outcome.new_status == EngineStatus.UNAVAILABLE.value
        assert outcome.new_weight == 0.5
        assert outcome.outage_opened

        # Further failures never open a second outage
        outcome = await _fail(tracker, "alpha", 2)
        assert not outcome.outage_opened

        async with session_factory() as session:
            open_count = await session.scalar(
                select(func.count()).select_from(EngineOutage).where(EngineOutage.ended_at.is_(None))
            )
        assert open_count == 1
        assert [n["title"] for n in sink.sent] == ["ALPHA Unavailable"]
        assert sink.sent[0]["type"] == NotificationType.ENGINE_OUTAGE

    async def test_success_recovers_and_closes_outage(self, tracker, registration, session_factory, sink):
        await tracker.register_engine(registration("alpha"))
        await _fail(tracker, "alpha", 5)
        outcome = await tracker.record_result("alpha", success=True, response_time_ms=200)

        assert outcome.previous_status == EngineStatus.UNAVAILABLE.value
        assert outcome.new_status == EngineStatus.HEALTHY.value
        assert outcome.outage_closed
        assert outcome.consecutive_failures == 0

        async with session_factory() as session:
            outage = (await session.execute(select(EngineOutage))).scalar_one()
            recovery = (
                await session.execute(
                    select(AuthorityAuditLog).where(
                        AuthorityAuditLog.change_type == AuditChangeType.AUTO_RECOVERY.value
                    )
                )
            ).scalar_one()
        assert outage.ended_at is not None
        assert outage.resolution_type == OutageResolution.AUTO_RECOVERED.value
        assert outage.duration_minutes is not None
        assert recovery.new_weight == outcome.new_weight
        assert [n["title"] for n in sink.sent] == ["ALPHA Unavailable", "ALPHA Recovered"]

    async def test_outage_references_fallback_snapshot(self, tracker, registration, session_factory):
        await tracker.register_engine(registration("alpha"))
        snapshot = await tracker.create_snapshot("alpha", SnapshotType.DAILY)
        await _fail(tracker, "alpha", 5)

        outages = await tracker.get_active_outages()
        assert len(outages) == 1
        assert outages[0].fallback_snapshot_id == snapshot.id

    async def test_maintenance_is_sticky(self, tracker, registration, sink):
        await tracker.register_engine(registration("alpha"))
        await tracker.set_maintenance("alpha", True, "provider upgrade")
        outcome = await _fail(tracker, "alpha", 6)
        assert outcome.new_status == EngineStatus.MAINTENANCE.value
        assert not outcome.outage_opened

        row = await tracker.set_maintenance("alpha", False)
        assert row.status == EngineStatus.UNAVAILABLE.value
        # Leaving maintenance while failing opens the outage that was held back
        assert len(await tracker.get_active_outages()) == 1
        assert [n["title"] for n in sink.sent] == ["ALPHA Unavailable"]

    async def test_recovery_during_maintenance_closes_outage(self, tracker, registration, session_factory, sink):
        await tracker.register_engine(registration("alpha"))
        await _fail(tracker, "alpha", 5)
        await tracker.set_maintenance("alpha", True, "provider incident")
        await tracker.record_result("alpha", success=True, response_time_ms=200)

        row = await tracker.set_maintenance("alpha", False)
        assert row.status == EngineStatus.HEALTHY.value
        assert await tracker.get_active_outages() == []
        async with session_factory() as session:
            outage = (await session.execute(select(EngineOutage))).scalar_one()
        assert outage.resolution_type == OutageResolution.MANUAL_INTERVENTION.value
        assert outage.ended_at is not None

        # The next real outage is tracked and announced again
        outcome = await _fail(tracker, "alpha", 5)
        assert outcome.outage_opened
        assert len(await tracker.get_active_outages()) == 1
        assert [n["title"] for n in sink.sent] == ["ALPHA Unavailable", "ALPHA Recovered", "ALPHA Unavailable"]

    async def test_reliability_waits_for_minimum_sample(self, tracker, registration):
        await tracker.register_engine(registration("alpha", reliability=90))
        for _ in range(9):
            await tracker.record_result("alpha", success=True)
        await tracker.record_result("alpha", success=False)
        assert (await tracker.get_engine("alpha")).reliability_score == 90

        await tracker.record_result("alpha", success=True)
        # 10 of 11 successful
        assert (await tracker.get_engine("alpha")).reliability_score == pytest.approx(90.91)

    async def test_response_time_averages_timed_results_only(self, tracker, registration):
        await tracker.register_engine(registration("alpha"))
        await tracker.record_result("alpha", success=True)
        await tracker.record_result("alpha", success=True, response_time_ms=100)
        await tracker.record_result("alpha", success=False)
        await tracker.record_result("alpha", success=True, response_time_ms=300)

        row = await tracker.get_engine("alpha")
        assert row.total_queries == 4
        assert row.timed_queries == 2
        assert row.avg_response_time_ms == pytest.approx(200.0)


class TestAuditTrail:
    async def test_weight_changes_are_audited(self, tracker, registration):
        await tracker.register_engine(registration("alpha"))
        await _fail(tracker, "alpha", 3)
        entries = await tracker.get_audit_trail("alpha", days=7)
        assert len(entries) == 1
        assert entries[0].change_type == AuditChangeType.RELIABILITY_CHANGE.value
        assert entries[0].new_weight == 0.75

    async def test_unchanged_weight_is_not_audited(self, tracker, registration):
        await tracker.register_engine(registration("alpha"))
        await tracker.record_result("alpha", success=True)
        assert await tracker.get_audit_trail("alpha") == []


class TestDecay:
    async def test_decay_runs_once_per_period(self, tracker, registration):
        await tracker.register_engine(registration("alpha", 80, 80, 80))
        later = utcnow() + timedelta(days=2)

        first = await tracker.apply_decay(now=later)
        assert len(first) == 1
        assert first[0].new_freshness == pytest.approx(78.0)
        assert first[0].new_weight < first[0].previous_weight

        second = await tracker.apply_decay(now=later)
        assert second == []
        row = await tracker.get_engine("alpha")
        assert row.freshness_index == pytest.approx(78.0)

    async def test_active_engines_do_not_decay(self, tracker, registration):
        await tracker.register_engine(registration("alpha"))
        await tracker.record_result("alpha", success=True)
        assert await tracker.apply_decay(now=utcnow() + timedelta(hours=1)) == []

    async def test_fresh_success_undoes_decay(self, tracker, registration):
        await tracker.register_engine(registration("alpha", 80, 80, 80))
        start = utcnow() + timedelta(days=2)
        for day in range(5):
            await tracker.apply_decay(now=start + timedelta(days=day))
        decayed = await tracker.get_engine("alpha")
        assert decayed.freshness_index == pytest.approx(70.0)

        outcome = await tracker.record_result("alpha", success=True, now=start + timedelta(days=5))
        row = await tracker.get_engine("alpha")
        assert row.freshness_index == pytest.approx(80.0)
        # Back on the formula: 0.8 + 0.4*0.8 + 0.2*0.8 + 0.1*0.8
        assert outcome.new_weight == pytest.approx(1.36)

    async def test_failure_keeps_decayed_freshness(self, tracker, registration):
        await tracker.register_engine(registration("alpha", 80, 80, 80))
        later = utcnow() + timedelta(days=2)
        await tracker.apply_decay(now=later)
        await tracker.record_result("alpha", success=False, now=later)
        assert (await tracker.get_engine("alpha")).freshness_index == pytest.approx(78.0)


class TestExplain:
    async def test_explanation_and_rank(self, tracker, registration):
        await tracker.register_engine(registration("alpha", 90, 90, 90))
        await tracker.register_engine(registration("beta", 40, 40, 40))

        alpha = await tracker.explain_authority("alpha")
        beta = await tracker.explain_authority("beta")

        assert alpha.rank == "Ranked #1 of 2 engines"
        assert alpha.trust_level == "high"
        assert any("High reliability" in reason for reason in alpha.why_trustworthy)
        assert beta.rank == "Ranked #2 of 2 engines"
        assert any("Lower reliability" in reason for reason in beta.why_cautious)


class TestConcurrentWrites:
    async def test_interleaved_failures_open_one_outage(self, tracker, registration, sink, monkeypatch):
        monkeypatch.setattr(settings, "AUTHORITY_WRITE_RETRIES", 30)
        await tracker.register_engine(registration("alpha"))

        outcomes = await asyncio.gather(
            *(tracker.record_result("alpha", success=False, response_time_ms=900) for _ in range(8))
        )

        row = await tracker.get_engine("alpha")
        assert row.total_queries == 8
        assert row.consecutive_failures == 8
        assert row.status == EngineStatus.UNAVAILABLE.value
        assert sum(outcome.outage_opened for outcome in outcomes) == 1
        assert len(await tracker.get_active_outages()) == 1
        assert [n["title"] for n in sink.sent] == ["ALPHA Unavailable"]

    async def test_lost_race_is_retried(self, tracker, registration, session_factory):
        await tracker.register_engine(registration("alpha"))
        apply_result = tracker._apply_result
        attempts = []

        async def racing_apply(session, engine, *args):
            attempts.append(engine)
            outcome = await apply_result(session, engine, *args)
            if len(attempts) == 1:
                # Another writer commits between our read and our flush
                async with session_factory() as other:
                    await other.execute(
                        update(EngineAuthority)
                        .where(EngineAuthority.engine == engine)
                        .values(
                            total_queries=EngineAuthority.total_queries + 100,
                            version=EngineAuthority.version + 1,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await other.commit()
            return outcome

        tracker._apply_result = racing_apply
        await tracker.record_result("alpha", success=True, response_time_ms=120)

        assert len(attempts) == 2
        row = await tracker.get_engine("alpha")
        assert row.total_queries == 101

    async def test_exhausted_retries_raise(self, tracker, registration, monkeypatch):
        monkeypatch.setattr(settings, "AUTHORITY_WRITE_RETRIES", 3)
        await tracker.register_engine(registration("alpha"))
        attempts = []

        async def always_stale(session, engine, *args):
            attempts.append(engine)
            raise StaleDataError("version mismatch")

        tracker._apply_result = always_stale
        with pytest.raises(AuthorityWriteConflict) as exc_info:
            await tracker.record_result("alpha", success=True)

        assert len(attempts) == 3
        assert exc_info.value.attempts == 3
