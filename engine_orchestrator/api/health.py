"""
Health check endpoint.
/health always returns 200 so platform healthchecks pass; DB connectivity
and engine health are reported in the body.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import async_sessionmaker

from engine_orchestrator.config import settings
from engine_orchestrator.dependencies import get_session_factory
from engine_orchestrator.models.enums import EngineStatus
from engine_orchestrator.models.tables import EngineAuthority

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(session_factory: async_sessionmaker = Depends(get_session_factory)):
    """
    Health check: verifies API is running and tests DB connectivity.
    ALWAYS returns 200 even if DB is down.
    """
    db_ok = False
    db_error = None
    engines: dict[str, int] = {}
    try:
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            db_ok = result.scalar() == 1
            rows = await session.execute(
                select(EngineAuthority.status, func.count()).group_by(EngineAuthority.status)
            )
            engines = {status: n for status, n in rows.all()}
    except Exception as e:
        db_ok = False
        db_error = str(e)[:200]

    unavailable = engines.get(EngineStatus.UNAVAILABLE.value, 0)
    status_val = "healthy" if db_ok and unavailable == 0 else "degraded"

    response = {
        "status": status_val,
        "version": settings.APP_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "engines": engines,
    }
    if db_error:
        response["database_error"] = db_error

    return response


@router.get("/health/ready")
async def readiness_check(session_factory: async_sessionmaker = Depends(get_session_factory)):
    """
    Readiness probe: returns ready only if the database is reachable.
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"ready": True}
    except Exception:
        return {"ready": False}
