"""
Consensus & Confidence Engine.

Turns per-engine observations into one answer: disagreements are settled by
summed authority weight, aggregate scores are authority-weighted with
fallback substitution for unavailable engines, and engine health is
propagated into a per-prompt confidence multiplier.
"""

import math
from collections import defaultdict
from itertools import combinations
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from engine_orchestrator.authority.snapshots import fallback_score
from engine_orchestrator.authority.tracker import AuthorityWriteConflict, list_engine_rows
from engine_orchestrator.authority.weights import has_failure_override, nudged_weight
from engine_orchestrator.config import settings
from engine_orchestrator.consensus.scoring import (
    confidence_level,
    convergence_recommendation,
    propagation_factors,
    status_impact,
    weighted_average,
)
from engine_orchestrator.models.database import utcnow
from engine_orchestrator.models.enums import (
    AuditChangeType,
    AuditTrigger,
    DisagreementType,
    EngineStatus,
    ResolutionMethod,
)
from engine_orchestrator.models.tables import (
    AuthorityAuditLog,
    EngineAuthority,
    EngineDisagreement,
    EngineResult,
)
from engine_orchestrator.observability.metrics import (
    convergence_scores,
    disagreements_recorded_total,
    engine_authority_weight,
)
from engine_orchestrator.schemas.consensus import (
    ConfidencePropagationResult,
    DegradationSource,
    DisagreementRecord,
    EngineObservation,
    EngineScore,
    EngineScoreBreakdown,
    ResolutionResult,
    WeightedScoreResult,
)

logger = structlog.get_logger(__name__)

DEGRADED_STATUSES = (EngineStatus.DEGRADED.value, EngineStatus.UNAVAILABLE.value)


async def latest_results(session: AsyncSession, prompt_id: str, successful_only: bool = False) -> list[EngineResult]:
    """Most recent engine_results row per engine for a prompt."""
    stmt = select(EngineResult).where(EngineResult.prompt_id == prompt_id)
    if successful_only:
        stmt = stmt.where(EngineResult.success.is_(True))
    rows = (await session.execute(stmt.order_by(EngineResult.created_at.desc()))).scalars().all()
    latest: dict[str, EngineResult] = {}
    for row in rows:
        latest.setdefault(row.engine, row)
    return [latest[engine] for engine in sorted(latest)]


async def list_disagreements(session: AsyncSession, prompt_id: str) -> list[DisagreementRecord]:
    """Recorded disagreements for a prompt, oldest first."""
    rows = (
        await session.execute(
            select(EngineDisagreement)
            .where(EngineDisagreement.prompt_id == prompt_id)
            .order_by(EngineDisagreement.created_at, EngineDisagreement.disagreement_type)
        )
    ).scalars().all()
    return [
        DisagreementRecord(
            engine_a=row.engine_a,
            engine_b=row.engine_b,
            disagreement_type=row.disagreement_type,
            engine_a_value=(row.engine_a_value or {}).get("value"),
            engine_b_value=(row.engine_b_value or {}).get("value"),
            winner=row.winner,
            resolution_method=row.resolution_method,
            explanation=row.resolution_explanation,
            authority_impact_a=row.authority_impact_a,
            authority_impact_b=row.authority_impact_b,
        )
        for row in rows
    ]


def _partition(values: dict[str, str]) -> dict[str, list[str]]:
    partitions: dict[str, list[str]] = defaultdict(list)
    for engine in sorted(values):
        partitions[values[engine]].append(engine)
    return partitions


class ConsensusService:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ── Disagreement resolution ──────────────────────────────

    async def resolve_disagreement(
        self,
        prompt_id: str,
        observations: Optional[list[EngineObservation]] = None,
    ) -> ResolutionResult:
        """
        Settle brand-mention and sentiment disagreements for a prompt.

        Without explicit observations the latest successful engine result per
        engine is used. Records one disagreement row per opposing engine pair
        and nudges each engine's weight once per disputed check.
        """
        for attempt in range(1, settings.AUTHORITY_WRITE_RETRIES + 1):
            async with self.session_factory() as session:
                try:
                    result, nudged = await self._resolve(session, prompt_id, observations)
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    logger.warning("consensus_nudge_conflict", prompt_id=prompt_id, attempt=attempt)
                    continue

            for engine, weight in nudged.items():
                engine_authority_weight.labels(engine=engine).set(weight)
            convergence_scores.observe(result.convergence_score)
            logger.info(
                "disagreement_resolved",
                prompt_id=prompt_id,
                convergence_score=result.convergence_score,
                disagreements=len(result.disagreements),
                winner=result.winner,
            )
            return result

        raise AuthorityWriteConflict("*", settings.AUTHORITY_WRITE_RETRIES)

    async def _resolve(
        self,
        session: AsyncSession,
        prompt_id: str,
        observations: Optional[list[EngineObservation]],
    ) -> tuple[ResolutionResult, dict[str, float]]:
        if observations is None:
            observations = [
                EngineObservation(engine=r.engine, brand_mentioned=r.brand_mentioned, sentiment=r.sentiment)
                for r in await latest_results(session, prompt_id, successful_only=True)
                if r.brand_mentioned is not None
            ]

        if len(observations) < 2:
            return ResolutionResult(
                prompt_id=prompt_id,
                explanation="Fewer than two engines answered; nothing to reconcile",
                convergence_score=100.0,
                total_checks=0,
                agreeing_checks=0,
                recommendation=convergence_recommendation(100.0),
            ), {}

        engines = [o.engine for o in observations]
        rows = {
            r.engine: r
            for r in (
                await session.execute(select(EngineAuthority).where(EngineAuthority.engine.in_(engines)))
            ).scalars().all()
        }

        def weight_of(engine: str) -> float:
            row = rows.get(engine)
            return row.authority_weight if row else settings.AUTHORITY_DEFAULT_WEIGHT

        checks = [
            (DisagreementType.BRAND_MENTION, {o.engine: "yes" if o.brand_mentioned else "no" for o in observations}),
            (DisagreementType.SENTIMENT, {o.engine: o.sentiment for o in observations if o.sentiment is not None}),
        ]

        agreeing = 0
        deltas: dict[str, float] = defaultdict(float)
        records: list[DisagreementRecord] = []
        explanations: list[str] = []
        winner: Optional[str] = None

        for check_type, values in checks:
            partitions = _partition(values)
            if len(partitions) <= 1:
                agreeing += 1
                continue

            # Summed weight, then partition size, then smallest engine id
            ranked = sorted(
                partitions.items(),
                key=lambda kv: (-sum(weight_of(e) for e in kv[1]), -len(kv[1]), kv[1][0]),
            )
            winning_value, winning_engines = ranked[0]
            winning_weight = sum(weight_of(e) for e in winning_engines)
            runner_up_weight = sum(weight_of(e) for e in ranked[1][1])
            method = (
                ResolutionMethod.TIE_BREAK
                if math.isclose(winning_weight, runner_up_weight)
                else ResolutionMethod.AUTHORITY_WEIGHTED
            )

            for engine in values:
                deltas[engine] += settings.CONSENSUS_NUDGE if engine in winning_engines else -settings.CONSENSUS_NUDGE

            if winner is None:
                winner = max(winning_engines, key=lambda e: (weight_of(e), e))

            losers = [e for value, group in ranked[1:] for e in group]
            check_explanation = (
                f"{check_type.value}: '{winning_value}' from {', '.join(winning_engines)} "
                f"(weight {winning_weight:.2f}) outweighs {', '.join(losers)} "
                f"(weight {sum(weight_of(e) for e in losers):.2f})"
            )
            if method == ResolutionMethod.TIE_BREAK:
                check_explanation += "; weights tied, settled by partition size then engine id"
            explanations.append(check_explanation)

            for engine_a, engine_b in combinations(sorted(values), 2):
                if values[engine_a] == values[engine_b]:
                    continue
                if values[engine_a] == winning_value:
                    pair_winner = engine_a
                elif values[engine_b] == winning_value:
                    pair_winner = engine_b
                else:
                    pair_winner = None
                nudge = settings.CONSENSUS_NUDGE
                records.append(DisagreementRecord(
                    engine_a=engine_a,
                    engine_b=engine_b,
                    disagreement_type=check_type.value,
                    engine_a_value=values[engine_a],
                    engine_b_value=values[engine_b],
                    winner=pair_winner,
                    resolution_method=method.value,
                    explanation=check_explanation,
                    authority_impact_a=nudge if pair_winner == engine_a else -nudge,
                    authority_impact_b=nudge if pair_winner == engine_b else -nudge,
                ))

        total_checks = len(checks)
        convergence = round(agreeing / total_checks * 100, 2)

        for record in records:
            session.add(EngineDisagreement(
                prompt_id=prompt_id,
                engine_a=record.engine_a,
                engine_b=record.engine_b,
                disagreement_type=record.disagreement_type,
                engine_a_value={"value": record.engine_a_value},
                engine_b_value={"value": record.engine_b_value},
                winner=record.winner,
                resolution_method=record.resolution_method,
                resolution_explanation=record.explanation,
                authority_impact_a=record.authority_impact_a,
                authority_impact_b=record.authority_impact_b,
            ))
            disagreements_recorded_total.labels(disagreement_type=record.disagreement_type).inc()

        nudged = self._apply_nudges(session, rows, deltas, prompt_id)

        result = ResolutionResult(
            prompt_id=prompt_id,
            winner=winner,
            explanation="; ".join(explanations) or "All engines agree",
            convergence_score=convergence,
            total_checks=total_checks,
            agreeing_checks=agreeing,
            disagreements=records,
            recommendation=convergence_recommendation(convergence),
            requires_manual_verification=convergence < settings.CONVERGENCE_REVIEW_THRESHOLD,
        )
        return result, nudged

    def _apply_nudges(
        self,
        session: AsyncSession,
        rows: dict[str, EngineAuthority],
        deltas: dict[str, float],
        prompt_id: str,
    ) -> dict[str, float]:
        nudged: dict[str, float] = {}
        for engine, delta in sorted(deltas.items()):
            row = rows.get(engine)
            if row is None or delta == 0 or has_failure_override(row.consecutive_failures):
                continue
            previous = row.authority_weight
            row.authority_weight = nudged_weight(
                previous, delta, row.reliability_score, row.citation_completeness, row.freshness_index
            )
            if row.authority_weight == previous:
                continue
            nudged[engine] = row.authority_weight
            session.add(AuthorityAuditLog(
                engine=engine,
                change_type=(
                    AuditChangeType.CONVERGENCE_BOOST.value if delta > 0
                    else AuditChangeType.DIVERGENCE_PENALTY.value
                ),
                previous_weight=previous,
                new_weight=row.authority_weight,
                previous_reliability=row.reliability_score,
                new_reliability=row.reliability_score,
                explanation=(
                    f"{'Sided with' if delta > 0 else 'Overruled by'} the authority-weighted "
                    f"consensus on prompt {prompt_id}"
                ),
                evidence={"prompt_id": prompt_id, "delta": round(delta, 4)},
                triggered_by=AuditTrigger.SYSTEM.value,
                created_at=utcnow(),
            ))
        return nudged

    # ── Weighted aggregate ───────────────────────────────────

    async def weighted_score(self, prompt_id: str, scores: list[EngineScore]) -> WeightedScoreResult:
        """
        Authority-weighted mean of per-engine scores.

        Unavailable engines are replaced by their fallback estimate and the
        result is flagged estimated.
        """
        async with self.session_factory() as session:
            tracked = await list_engine_rows(session)
            by_engine = {row.engine: row for row in tracked}

            breakdown: list[EngineScoreBreakdown] = []
            for entry in scores:
                row = by_engine.get(entry.engine)
                weight = row.authority_weight if row else settings.AUTHORITY_DEFAULT_WEIGHT
                status = row.status if row else EngineStatus.HEALTHY.value
                raw = entry.score
                is_fallback = False
                if row is not None and status == EngineStatus.UNAVAILABLE.value:
                    raw, _ = await fallback_score(session, row)
                    is_fallback = True
                breakdown.append(EngineScoreBreakdown(
                    engine=entry.engine,
                    display_name=row.display_name if row else entry.engine,
                    reported_score=entry.score,
                    raw_score=raw,
                    authority_weight=weight,
                    weighted_score=round(raw * weight, 4),
                    status=status,
                    is_fallback=is_fallback,
                ))

        degraded = [b for b in breakdown if b.status in DEGRADED_STATUSES]
        fallbacks = [b for b in breakdown if b.is_fallback]
        low_authority = [b.display_name for b in breakdown if b.authority_weight < 1.0]
        healthy_total = sum(1 for row in tracked if row.status == EngineStatus.HEALTHY.value)

        explanation = None
        if fallbacks:
            explanation = (
                f"Estimated: {', '.join(b.display_name for b in fallbacks)} unavailable; "
                f"substituted last known reliability x {settings.FALLBACK_CONFIDENCE_DISCOUNT}"
            )
        elif degraded:
            explanation = f"{', '.join(b.display_name for b in degraded)} degraded; reduced weight applied"

        result = WeightedScoreResult(
            prompt_id=prompt_id,
            weighted_avs=weighted_average((b.raw_score, b.authority_weight) for b in breakdown),
            unweighted_avs=round(sum(b.reported_score for b in breakdown) / len(breakdown), 2) if breakdown else 0.0,
            breakdown=breakdown,
            degraded_engines=[b.engine for b in degraded],
            confidence_level=confidence_level(len(tracked), healthy_total, len(degraded)).value,
            is_estimated=bool(fallbacks),
            low_authority_impact=(
                f"Score affected by low-authority engines: {', '.join(low_authority)}" if low_authority else None
            ),
            degradation_explanation=explanation,
        )
        logger.info(
            "weighted_score_computed",
            prompt_id=prompt_id,
            weighted_avs=result.weighted_avs,
            is_estimated=result.is_estimated,
            confidence_level=result.confidence_level,
        )
        return result

    async def weighted_score_from_results(self, prompt_id: str) -> WeightedScoreResult:
        """Weighted score over the stored engine results for a prompt."""
        async with self.session_factory() as session:
            results = await latest_results(session, prompt_id, successful_only=True)
        scores = [EngineScore(engine=r.engine, score=r.score) for r in results if r.score is not None]
        return await self.weighted_score(prompt_id, scores)

    # ── Confidence propagation ───────────────────────────────

    async def confidence_propagation(
        self,
        prompt_id: str,
        raw_score: Optional[float] = None,
    ) -> ConfidencePropagationResult:
        """
        Discount a prompt's score by the health of the engines that answered it.
        Engines that did not contribute to this prompt never affect it.
        """
        async with self.session_factory() as session:
            results = await latest_results(session, prompt_id)
            contributing = [r.engine for r in results]
            rows = {
                r.engine: r
                for r in (
                    await session.execute(select(EngineAuthority).where(EngineAuthority.engine.in_(contributing)))
                ).scalars().all()
            } if contributing else {}

        sources: list[DegradationSource] = []
        for engine in contributing:
            row = rows.get(engine)
            if row is None:
                continue
            impact = status_impact(row.status, row.authority_weight)
            if impact > 0:
                sources.append(DegradationSource(
                    engine=engine,
                    status=row.status,
                    authority_weight=row.authority_weight,
                    impact=round(impact, 4),
                ))

        total_impact = sum(s.impact for s in sources)
        reliability, multiplier = propagation_factors(total_impact)

        if raw_score is None:
            scored = [r.score for r in results if r.success and r.score is not None]
            raw_score = round(sum(scored) / len(scored), 2) if scored else None

        if sources:
            explanation = (
                f"Confidence reduced by {total_impact * 100:.0f}% due to: "
                + ", ".join(f"{s.engine} ({s.status})" for s in sources)
            )
        else:
            explanation = "All contributing engines healthy; no adjustment applied"

        return ConfidencePropagationResult(
            prompt_id=prompt_id,
            original_score=raw_score,
            adjusted_score=round(raw_score * multiplier, 2) if raw_score is not None else None,
            reliability_percentage=reliability,
            confidence_multiplier=multiplier,
            explanation=explanation,
            degradation_sources=sources,
        )
