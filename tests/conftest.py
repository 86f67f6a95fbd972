"""
Shared test fixtures.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import engine_orchestrator.models.tables  # noqa: F401
from engine_orchestrator.authority.tracker import AuthorityTracker
from engine_orchestrator.consensus.service import ConsensusService
from engine_orchestrator.engines.stub_engine import StubEngineClient
from engine_orchestrator.models.database import Base
from engine_orchestrator.notifications.sink import RecordingNotificationSink
from engine_orchestrator.schemas.authority import EngineRegistration


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def tracker(session_factory, sink):
    return AuthorityTracker(session_factory, notification_sink=sink)


@pytest.fixture
def consensus(session_factory):
    return ConsensusService(session_factory)


@pytest.fixture
def engine_client():
    return StubEngineClient(failing_engines={"flaky"})


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def registration():
    """Build an EngineRegistration with explicit metrics (percentages)."""

    def _make(engine: str, reliability: float = 80, citation: float = 80, freshness: float = 80) -> EngineRegistration:
        return EngineRegistration(
            engine=engine,
            display_name=engine.upper(),
            reliability_score=reliability,
            citation_completeness=citation,
            freshness_index=freshness,
        )

    return _make
