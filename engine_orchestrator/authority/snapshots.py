"""
Point-in-time copies of engine authority metrics.
Daily snapshots feed trend queries; the latest hourly/daily snapshot is the
reference score while an engine is unavailable.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.config import settings
from engine_orchestrator.models.enums import SnapshotType
from engine_orchestrator.models.tables import EngineAuthority, EngineSnapshot

logger = structlog.get_logger(__name__)

FALLBACK_SNAPSHOT_TYPES = (SnapshotType.HOURLY.value, SnapshotType.DAILY.value)


def build_snapshot(row: EngineAuthority, snapshot_type: SnapshotType, captured_at: datetime) -> EngineSnapshot:
    return EngineSnapshot(
        engine=row.engine,
        snapshot_type=snapshot_type.value,
        reliability_score=row.reliability_score,
        citation_completeness=row.citation_completeness,
        freshness_index=row.freshness_index,
        authority_weight=row.authority_weight,
        status=row.status,
        total_queries=row.total_queries,
        successful_queries=row.successful_queries,
        avg_response_time_ms=row.avg_response_time_ms,
        captured_at=captured_at,
    )


async def latest_fallback_snapshot(session: AsyncSession, engine: str) -> Optional[EngineSnapshot]:
    result = await session.execute(
        select(EngineSnapshot)
        .where(
            EngineSnapshot.engine == engine,
            EngineSnapshot.snapshot_type.in_(FALLBACK_SNAPSHOT_TYPES),
        )
        .order_by(EngineSnapshot.captured_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def fallback_score(session: AsyncSession, row: EngineAuthority) -> tuple[float, Optional[EngineSnapshot]]:
    """
    Substitute score for an unavailable engine.
    Last hourly/daily snapshot reliability, else current reliability, times
    the fallback discount.
    """
    snapshot = await latest_fallback_snapshot(session, row.engine)
    reference = snapshot.reliability_score if snapshot else row.reliability_score
    return round(reference * settings.FALLBACK_CONFIDENCE_DISCOUNT, 2), snapshot


async def list_snapshots(
    session: AsyncSession,
    engine: str,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> list[EngineSnapshot]:
    stmt = select(EngineSnapshot).where(EngineSnapshot.engine == engine)
    if since is not None:
        stmt = stmt.where(EngineSnapshot.captured_at >= since)
    result = await session.execute(stmt.order_by(EngineSnapshot.captured_at.desc()).limit(limit))
    return list(result.scalars().all())
