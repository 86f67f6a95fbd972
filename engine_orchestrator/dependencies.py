"""
FastAPI dependency injection.
Provides DB sessions, the engine client, notification sink, services,
and API key validation.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engine_orchestrator.authority.tracker import AuthorityTracker
from engine_orchestrator.config import settings
from engine_orchestrator.consensus.service import ConsensusService
from engine_orchestrator.engines.base import EngineClient
from engine_orchestrator.engines.gateway_engine import GatewayEngineClient
from engine_orchestrator.engines.stub_engine import StubEngineClient
from engine_orchestrator.models.database import async_session_factory, get_session
from engine_orchestrator.notifications.sink import NotificationSink, build_notification_sink
from engine_orchestrator.runner.handlers import HandlerContext
from engine_orchestrator.runner.job_runner import JobRunner


# ── Singleton instances ──────────────────────────────────────
_engine_client: Optional[EngineClient] = None
_notification_sink: Optional[NotificationSink] = None


def build_engine_client() -> EngineClient:
    """Engine client selected by ENGINE_CLIENT."""
    if settings.ENGINE_CLIENT == "gateway":
        if not settings.ENGINE_GATEWAY_URL:
            raise RuntimeError("ENGINE_GATEWAY_URL must be set when ENGINE_CLIENT=gateway")
        return GatewayEngineClient(settings.ENGINE_GATEWAY_URL)
    return StubEngineClient()


def get_engine_client() -> EngineClient:
    """Get or create the engine client singleton."""
    global _engine_client
    if _engine_client is None:
        _engine_client = build_engine_client()
    return _engine_client


def get_notification_sink() -> NotificationSink:
    """Get or create the notification sink singleton."""
    global _notification_sink
    if _notification_sink is None:
        _notification_sink = build_notification_sink()
    return _notification_sink


def get_session_factory() -> async_sessionmaker:
    return async_session_factory


async def close_engine_client() -> None:
    global _engine_client
    if _engine_client is not None:
        await _engine_client.aclose()
        _engine_client = None


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


def get_tracker(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    sink: NotificationSink = Depends(get_notification_sink),
) -> AuthorityTracker:
    return AuthorityTracker(session_factory, notification_sink=sink)


def get_consensus(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> ConsensusService:
    return ConsensusService(session_factory)


def get_job_runner(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    engine_client: EngineClient = Depends(get_engine_client),
    tracker: AuthorityTracker = Depends(get_tracker),
    consensus: ConsensusService = Depends(get_consensus),
    sink: NotificationSink = Depends(get_notification_sink),
) -> JobRunner:
    context = HandlerContext(
        session_factory=session_factory,
        engine_client=engine_client,
        tracker=tracker,
        consensus=consensus,
    )
    return JobRunner(session_factory, context, notification_sink=sink)


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
