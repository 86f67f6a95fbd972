"""
Engine Authority Tracker.

Folds every engine observation into the engine's authority row, drives the
healthy -> degraded -> unavailable -> healthy state machine, opens and closes
outages on the unavailable edges, and keeps an append-only audit log of
weight changes.

Rows carry a version column. Concurrent writers for the same engine lose the
compare-and-swap with StaleDataError and are retried on a fresh session;
an observation is never dropped silently.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from engine_orchestrator.authority.outages import close_outage, get_active_outages, open_outage
from engine_orchestrator.authority.snapshots import build_snapshot
from engine_orchestrator.authority.weights import (
    compute_authority_weight,
    decayed_weight,
    derive_status,
    status_message,
    trust_level,
)
from engine_orchestrator.config import settings
from engine_orchestrator.models.database import utcnow
from engine_orchestrator.models.enums import (
    AuditChangeType,
    AuditTrigger,
    EngineStatus,
    NotificationType,
    OutageResolution,
    Severity,
    SnapshotType,
)
from engine_orchestrator.models.tables import (
    AuthorityAuditLog,
    EngineAuthority,
    EngineOutage,
    EngineSnapshot,
)
from engine_orchestrator.notifications.sink import NotificationSink, safe_notify
from engine_orchestrator.observability.metrics import (
    authority_write_conflicts_total,
    engine_authority_weight,
    engine_outages_opened_total,
    engine_status_transitions_total,
)
from engine_orchestrator.schemas.authority import (
    AuthorityExplanation,
    DecayResult,
    EngineRegistration,
    RecordResultResponse,
)

logger = structlog.get_logger(__name__)


# ── Default engine set ───────────────────────────────────────
DEFAULT_ENGINES = [
    EngineRegistration(engine="google_ai_mode", display_name="Google AI Mode",
                       reliability_score=85, citation_completeness=90, freshness_index=95),
    EngineRegistration(engine="chatgpt", display_name="ChatGPT",
                       reliability_score=80, citation_completeness=75, freshness_index=70),
    EngineRegistration(engine="perplexity", display_name="Perplexity",
                       reliability_score=88, citation_completeness=95, freshness_index=90),
    EngineRegistration(engine="bing_copilot", display_name="Bing Copilot",
                       reliability_score=78, citation_completeness=85, freshness_index=88),
    EngineRegistration(engine="gemini", display_name="Gemini",
                       reliability_score=82, citation_completeness=80, freshness_index=85),
    EngineRegistration(engine="claude", display_name="Claude",
                       reliability_score=85, citation_completeness=70, freshness_index=65),
]


class EngineNotFoundError(Exception):
    """Raised when an operation names an engine with no authority row."""

    def __init__(self, engine: str):
        self.engine = engine
        super().__init__(f"Unknown engine: {engine}")


class AuthorityWriteConflict(Exception):
    """Raised when optimistic retries for an authority row are exhausted."""

    def __init__(self, engine: str, attempts: int):
        self.engine = engine
        self.attempts = attempts
        super().__init__(f"Authority update for {engine} lost {attempts} concurrent write races")


def _decay_period_start(now: datetime) -> datetime:
    period = settings.DECAY_PERIOD_HOURS * 3600
    return datetime.fromtimestamp((now.timestamp() // period) * period, tz=timezone.utc)


async def get_engine_row(session: AsyncSession, engine: str) -> EngineAuthority:
    row = (
        await session.execute(select(EngineAuthority).where(EngineAuthority.engine == engine))
    ).scalar_one_or_none()
    if row is None:
        raise EngineNotFoundError(engine)
    return row


async def list_engine_rows(session: AsyncSession) -> list[EngineAuthority]:
    result = await session.execute(
        select(EngineAuthority).order_by(EngineAuthority.authority_weight.desc(), EngineAuthority.engine)
    )
    return list(result.scalars().all())


class AuthorityTracker:
    """Owns every write to engine_authority and its companion tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        notification_sink: Optional[NotificationSink] = None,
    ):
        self.session_factory = session_factory
        self.notification_sink = notification_sink

    # ── Registration ─────────────────────────────────────────

    async def register_engine(self, registration: EngineRegistration) -> EngineAuthority:
        """Create the authority row for an engine; existing rows are returned untouched."""
        async with self.session_factory() as session:
            existing = (
                await session.execute(
                    select(EngineAuthority).where(EngineAuthority.engine == registration.engine)
                )
            ).scalar_one_or_none()
            if existing is not None:
                return existing

            row = EngineAuthority(
                engine=registration.engine,
                display_name=registration.display_name,
                reliability_score=registration.reliability_score,
                citation_completeness=registration.citation_completeness,
                freshness_index=registration.freshness_index,
                baseline_freshness_index=registration.freshness_index,
                authority_weight=compute_authority_weight(
                    registration.reliability_score,
                    registration.citation_completeness,
                    registration.freshness_index,
                    0,
                ),
                status=EngineStatus.HEALTHY.value,
            )
            session.add(row)
            await session.commit()

        engine_authority_weight.labels(engine=row.engine).set(row.authority_weight)
        logger.info("engine_registered", engine=row.engine, authority_weight=row.authority_weight)
        return row

    async def seed_default_engines(self) -> int:
        created = 0
        for registration in DEFAULT_ENGINES:
            async with self.session_factory() as session:
                exists = await session.scalar(
                    select(EngineAuthority.id).where(EngineAuthority.engine == registration.engine)
                )
            if exists is None:
                await self.register_engine(registration)
                created += 1
        return created

    # ── Observations ─────────────────────────────────────────

    async def record_result(
        self,
        engine: str,
        success: bool,
        response_time_ms: Optional[int] = None,
        citation_present: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> RecordResultResponse:
        """Fold one success/failure observation into the engine's authority row."""
        now = now or utcnow()

        for attempt in range(1, settings.AUTHORITY_WRITE_RETRIES + 1):
            async with self.session_factory() as session:
                try:
                    outcome, display_name = await self._apply_result(
                        session, engine, success, response_time_ms, citation_present, now
                    )
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    authority_write_conflicts_total.labels(engine=engine).inc()
                    logger.warning("authority_write_conflict", engine=engine, attempt=attempt)
                    continue

            await self._after_result(outcome, display_name)
            return outcome

        raise AuthorityWriteConflict(engine, settings.AUTHORITY_WRITE_RETRIES)

    async def _apply_result(
        self,
        session: AsyncSession,
        engine: str,
        success: bool,
        response_time_ms: Optional[int],
        citation_present: Optional[bool],
        now: datetime,
    ) -> tuple[RecordResultResponse, str]:
        row = await get_engine_row(session, engine)
        previous_status = row.status
        previous_weight = row.authority_weight
        previous_reliability = row.reliability_score

        row.total_queries += 1
        if success:
            row.successful_queries += 1
            row.consecutive_failures = 0
            row.last_successful_query = now
            # A fresh answer undoes idle decay
            row.freshness_index = max(row.freshness_index, row.baseline_freshness_index)
        else:
            row.consecutive_failures += 1
            row.last_failure = now

        # Below the minimum sample the seeded estimate stands
        if row.total_queries > settings.MIN_SAMPLE_SIZE:
            row.reliability_score = round(row.successful_queries / row.total_queries * 100, 2)

        if citation_present is not None:
            row.citation_checks += 1
            if citation_present:
                row.citations_present += 1
            if row.citation_checks > settings.MIN_SAMPLE_SIZE:
                row.citation_completeness = round(row.citations_present / row.citation_checks * 100, 2)

        if response_time_ms is not None:
            row.timed_queries += 1
            if row.avg_response_time_ms is None:
                row.avg_response_time_ms = float(response_time_ms)
            else:
                n = row.timed_queries
                row.avg_response_time_ms = round(
                    (row.avg_response_time_ms * (n - 1) + response_time_ms) / n, 2
                )

        new_status = derive_status(row.consecutive_failures, row.status)
        row.status = new_status.value
        row.status_message = status_message(new_status, row.consecutive_failures)
        row.authority_weight = compute_authority_weight(
            row.reliability_score,
            row.citation_completeness,
            row.freshness_index,
            row.consecutive_failures,
        )

        recovered = previous_status == EngineStatus.UNAVAILABLE.value and new_status == EngineStatus.HEALTHY
        if row.authority_weight != previous_weight:
            session.add(AuthorityAuditLog(
                engine=engine,
                change_type=(
                    AuditChangeType.AUTO_RECOVERY.value if recovered
                    else AuditChangeType.RELIABILITY_CHANGE.value
                ),
                previous_weight=previous_weight,
                new_weight=row.authority_weight,
                previous_reliability=previous_reliability,
                new_reliability=row.reliability_score,
                explanation=(
                    f"{'Successful' if success else 'Failed'} query moved weight "
                    f"{previous_weight:.2f} -> {row.authority_weight:.2f} "
                    f"({row.consecutive_failures} consecutive failures)"
                ),
                evidence={
                    "success": success,
                    "response_time_ms": response_time_ms,
                    "citation_present": citation_present,
                    "total_queries": row.total_queries,
                },
                triggered_by=AuditTrigger.QUERY_RESULT.value,
                created_at=now,
            ))

        outage_opened = False
        outage_closed = False
        if new_status == EngineStatus.UNAVAILABLE and previous_status != EngineStatus.UNAVAILABLE.value:
            outage_opened = await open_outage(session, engine, now, row.consecutive_failures) is not None
        elif recovered:
            outage_closed = await close_outage(session, engine, now, OutageResolution.AUTO_RECOVERED) is not None

        outcome = RecordResultResponse(
            engine=engine,
            previous_status=previous_status,
            new_status=new_status.value,
            previous_weight=previous_weight,
            new_weight=row.authority_weight,
            consecutive_failures=row.consecutive_failures,
            outage_opened=outage_opened,
            outage_closed=outage_closed,
        )
        return outcome, row.display_name

    async def _after_result(self, outcome: RecordResultResponse, display_name: str) -> None:
        engine_authority_weight.labels(engine=outcome.engine).set(outcome.new_weight)
        if outcome.previous_status != outcome.new_status:
            engine_status_transitions_total.labels(
                engine=outcome.engine,
                from_status=outcome.previous_status,
                to_status=outcome.new_status,
            ).inc()
            logger.info(
                "engine_status_changed",
                engine=outcome.engine,
                from_status=outcome.previous_status,
                to_status=outcome.new_status,
                authority_weight=outcome.new_weight,
            )

        if outcome.outage_opened:
            engine_outages_opened_total.labels(engine=outcome.engine).inc()
            await safe_notify(
                self.notification_sink,
                NotificationType.ENGINE_OUTAGE,
                Severity.WARNING,
                f"{display_name} Unavailable",
                f"{display_name} failed {outcome.consecutive_failures} consecutive queries. "
                "Scores will use fallback estimates until it recovers.",
                {"engine": outcome.engine, "consecutive_failures": outcome.consecutive_failures},
            )
        if outcome.outage_closed:
            await safe_notify(
                self.notification_sink,
                NotificationType.ENGINE_RECOVERED,
                Severity.INFO,
                f"{display_name} Recovered",
                f"{display_name} is responding again. Normal scoring has resumed.",
                {"engine": outcome.engine},
            )

    # ── Operator controls ────────────────────────────────────

    async def set_maintenance(
        self,
        engine: str,
        enabled: bool,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EngineAuthority:
        """
        Toggle operator maintenance.

        Leaving maintenance re-derives health from consecutive failures and
        reconciles outages with it: an unavailable engine gets an open outage,
        any other status closes the one left over from before maintenance.
        """
        now = now or utcnow()
        outage_opened = False
        outage_closed = False
        async with self.session_factory() as session:
            row = await get_engine_row(session, engine)
            previous = row.status
            if enabled:
                row.status = EngineStatus.MAINTENANCE.value
                row.status_message = reason or "Under maintenance"
            else:
                status = derive_status(row.consecutive_failures)
                row.status = status.value
                row.status_message = status_message(status, row.consecutive_failures)
                if status == EngineStatus.UNAVAILABLE:
                    outage_opened = await open_outage(session, engine, now, row.consecutive_failures) is not None
                else:
                    outage_closed = await close_outage(
                        session, engine, now, OutageResolution.MANUAL_INTERVENTION
                    ) is not None
            session.add(AuthorityAuditLog(
                engine=engine,
                change_type=AuditChangeType.MANUAL_OVERRIDE.value,
                previous_weight=row.authority_weight,
                new_weight=row.authority_weight,
                explanation=f"Status set {previous} -> {row.status} by operator"
                + (f": {reason}" if reason else ""),
                triggered_by=AuditTrigger.ADMIN.value,
                created_at=now,
            ))
            await session.commit()

        logger.info("engine_maintenance_toggled", engine=engine, enabled=enabled, status=row.status)
        await self._after_result(
            RecordResultResponse(
                engine=engine,
                previous_status=previous,
                new_status=row.status,
                previous_weight=row.authority_weight,
                new_weight=row.authority_weight,
                consecutive_failures=row.consecutive_failures,
                outage_opened=outage_opened,
                outage_closed=outage_closed,
            ),
            row.display_name,
        )
        return row

    # ── Decay ────────────────────────────────────────────────

    async def apply_decay(self, now: Optional[datetime] = None) -> list[DecayResult]:
        """
        Decay idle engines toward their formula weight.

        Runs at most once per engine per DECAY_PERIOD_HOURS; a second call in
        the same period changes nothing.
        """
        now = now or utcnow()
        period_start = _decay_period_start(now)
        idle_cutoff = now - timedelta(hours=settings.DECAY_IDLE_HOURS)

        for attempt in range(1, settings.AUTHORITY_WRITE_RETRIES + 1):
            results: list[DecayResult] = []
            async with self.session_factory() as session:
                try:
                    for row in await list_engine_rows(session):
                        if row.last_decay_at is not None and row.last_decay_at >= period_start:
                            continue
                        row.last_decay_at = now

                        activity = [t for t in (row.last_successful_query, row.last_failure) if t is not None]
                        last_activity = max(activity) if activity else row.created_at
                        if last_activity >= idle_cutoff:
                            continue

                        previous_weight = row.authority_weight
                        previous_freshness = row.freshness_index
                        row.freshness_index = max(0.0, round(row.freshness_index - settings.FRESHNESS_DECAY_POINTS, 2))
                        baseline = compute_authority_weight(
                            row.reliability_score,
                            row.citation_completeness,
                            row.freshness_index,
                            row.consecutive_failures,
                        )
                        row.authority_weight = decayed_weight(previous_weight, baseline)

                        session.add(AuthorityAuditLog(
                            engine=row.engine,
                            change_type=AuditChangeType.FRESHNESS_DECAY.value,
                            previous_weight=previous_weight,
                            new_weight=row.authority_weight,
                            previous_reliability=row.reliability_score,
                            new_reliability=row.reliability_score,
                            explanation=(
                                f"Idle since {last_activity:%Y-%m-%d %H:%M}; freshness "
                                f"{previous_freshness:.1f} -> {row.freshness_index:.1f}"
                            ),
                            evidence={"baseline_weight": baseline, "period_start": period_start.isoformat()},
                            triggered_by=AuditTrigger.DECAY_JOB.value,
                            created_at=now,
                        ))
                        results.append(DecayResult(
                            engine=row.engine,
                            previous_weight=previous_weight,
                            new_weight=row.authority_weight,
                            previous_freshness=previous_freshness,
                            new_freshness=row.freshness_index,
                        ))
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    logger.warning("authority_decay_conflict", attempt=attempt)
                    continue

            for result in results:
                engine_authority_weight.labels(engine=result.engine).set(result.new_weight)
            logger.info("authority_decay_applied", decayed=len(results), period_start=period_start.isoformat())
            return results

        raise AuthorityWriteConflict("*", settings.AUTHORITY_WRITE_RETRIES)

    # ── Snapshots ────────────────────────────────────────────

    async def create_snapshot(
        self,
        engine: str,
        snapshot_type: SnapshotType = SnapshotType.MANUAL,
        now: Optional[datetime] = None,
    ) -> EngineSnapshot:
        async with self.session_factory() as session:
            row = await get_engine_row(session, engine)
            snapshot = build_snapshot(row, snapshot_type, now or utcnow())
            session.add(snapshot)
            await session.commit()
        logger.info("engine_snapshot_created", engine=engine, snapshot_type=snapshot_type.value)
        return snapshot

    async def snapshot_all(
        self,
        snapshot_type: SnapshotType = SnapshotType.DAILY,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        async with self.session_factory() as session:
            rows = await list_engine_rows(session)
            for row in rows:
                session.add(build_snapshot(row, snapshot_type, now))
            await session.commit()
        logger.info("engine_snapshots_created", count=len(rows), snapshot_type=snapshot_type.value)
        return len(rows)

    # ── Reads ────────────────────────────────────────────────

    async def get_authority(self) -> list[EngineAuthority]:
        async with self.session_factory() as session:
            return await list_engine_rows(session)

    async def get_engine(self, engine: str) -> EngineAuthority:
        async with self.session_factory() as session:
            return await get_engine_row(session, engine)

    async def get_active_outages(self) -> list[EngineOutage]:
        async with self.session_factory() as session:
            return await get_active_outages(session)

    async def get_audit_trail(
        self,
        engine: str,
        days: int = 7,
        now: Optional[datetime] = None,
    ) -> list[AuthorityAuditLog]:
        since = (now or utcnow()) - timedelta(days=days)
        async with self.session_factory() as session:
            await get_engine_row(session, engine)
            result = await session.execute(
                select(AuthorityAuditLog)
                .where(AuthorityAuditLog.engine == engine, AuthorityAuditLog.created_at >= since)
                .order_by(AuthorityAuditLog.created_at.desc())
            )
            return list(result.scalars().all())

    async def explain_authority(self, engine: str) -> AuthorityExplanation:
        async with self.session_factory() as session:
            rows = await list_engine_rows(session)
            row = next((r for r in rows if r.engine == engine), None)
            if row is None:
                raise EngineNotFoundError(engine)
            recent = (
                await session.execute(
                    select(AuthorityAuditLog)
                    .where(AuthorityAuditLog.engine == engine)
                    .order_by(AuthorityAuditLog.created_at.desc())
                    .limit(5)
                )
            ).scalars().all()

        trustworthy: list[str] = []
        cautious: list[str] = []

        if row.reliability_score >= 85:
            trustworthy.append(f"High reliability ({row.reliability_score:.0f}% successful queries)")
        elif row.reliability_score >= 70:
            trustworthy.append(f"Good reliability ({row.reliability_score:.0f}% successful queries)")
        else:
            cautious.append(f"Lower reliability ({row.reliability_score:.0f}% successful queries)")

        if row.citation_completeness >= 85:
            trustworthy.append(f"Excellent citation completeness ({row.citation_completeness:.0f}%)")
        elif row.citation_completeness < 60:
            cautious.append(f"Limited citation completeness ({row.citation_completeness:.0f}%)")

        if row.freshness_index >= 85:
            trustworthy.append(f"Very fresh information ({row.freshness_index:.0f}%)")
        elif row.freshness_index < 60:
            cautious.append(f"Information may be outdated ({row.freshness_index:.0f}% freshness)")

        if row.status != EngineStatus.HEALTHY.value:
            cautious.append(f"Currently {row.status}: {row.status_message or 'no details'}")

        rank = next(i for i, r in enumerate(rows, start=1) if r.engine == engine)
        return AuthorityExplanation(
            engine=row.engine,
            display_name=row.display_name,
            authority_weight=row.authority_weight,
            trust_level=trust_level(row.authority_weight),
            status=row.status,
            why_trustworthy=trustworthy,
            why_cautious=cautious,
            recent_changes=[f"{entry.created_at:%Y-%m-%d}: {entry.explanation}" for entry in recent],
            rank=f"Ranked #{rank} of {len(rows)} engines",
        )
