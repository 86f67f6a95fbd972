"""
Outage records.

At most one open outage per engine: the partial unique index on
engine_outages(engine) WHERE ended_at IS NULL backs a conditional insert, so
concurrent openers race safely and exactly one wins.
"""

import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.authority.snapshots import latest_fallback_snapshot
from engine_orchestrator.models.database import dialect_insert
from engine_orchestrator.models.enums import OutageResolution
from engine_orchestrator.models.tables import EngineOutage

logger = structlog.get_logger(__name__)


async def open_outage(
    session: AsyncSession,
    engine: str,
    started_at: datetime,
    failure_count: int,
) -> Optional[uuid.UUID]:
    """
    Open an outage unless one is already open.
    Returns the new outage id, or None if another writer got there first.
    """
    snapshot = await latest_fallback_snapshot(session, engine)
    stmt = (
        dialect_insert(session, EngineOutage)
        .values(
            id=uuid.uuid4(),
            engine=engine,
            started_at=started_at,
            failure_count=failure_count,
            fallback_snapshot_id=snapshot.id if snapshot else None,
        )
        .on_conflict_do_nothing(
            index_elements=[EngineOutage.engine],
            index_where=EngineOutage.ended_at.is_(None),
        )
        .returning(EngineOutage.id)
    )
    outage_id = (await session.execute(stmt)).scalar_one_or_none()
    if outage_id is not None:
        logger.warning(
            "engine_outage_opened",
            engine=engine,
            outage_id=str(outage_id),
            fallback_snapshot_id=str(snapshot.id) if snapshot else None,
        )
    return outage_id


async def close_outage(
    session: AsyncSession,
    engine: str,
    ended_at: datetime,
    resolution: OutageResolution = OutageResolution.AUTO_RECOVERED,
) -> Optional[uuid.UUID]:
    """Close the engine's open outage, if any. Returns its id."""
    outage = await get_open_outage(session, engine)
    if outage is None:
        return None

    duration = int((ended_at - outage.started_at).total_seconds() // 60)
    result = await session.execute(
        update(EngineOutage)
        .where(EngineOutage.id == outage.id, EngineOutage.ended_at.is_(None))
        .values(ended_at=ended_at, duration_minutes=duration, resolution_type=resolution.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None

    logger.info(
        "engine_outage_closed",
        engine=engine,
        outage_id=str(outage.id),
        duration_minutes=duration,
        resolution=resolution.value,
    )
    return outage.id


async def get_open_outage(session: AsyncSession, engine: str) -> Optional[EngineOutage]:
    result = await session.execute(
        select(EngineOutage).where(EngineOutage.engine == engine, EngineOutage.ended_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_active_outages(session: AsyncSession) -> list[EngineOutage]:
    result = await session.execute(
        select(EngineOutage)
        .where(EngineOutage.ended_at.is_(None))
        .order_by(EngineOutage.started_at.desc())
    )
    return list(result.scalars().all())


async def get_outage_history(session: AsyncSession, engine: str, limit: int = 50) -> list[EngineOutage]:
    result = await session.execute(
        select(EngineOutage)
        .where(EngineOutage.engine == engine)
        .order_by(EngineOutage.started_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
