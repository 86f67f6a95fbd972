"""
RQ job functions for the orchestrator's background work.
These are the entry points that the worker calls; each one drives a single
async pass and disposes the connection pool before returning.
"""

import asyncio
from typing import Callable, Optional

import structlog
from redis import Redis
from rq import Queue

from engine_orchestrator.config import settings

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the orchestrator job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def _run(coro_factory: Callable, job_name: str, **kwargs) -> dict:
    logger.info("job_started", job=job_name, **kwargs)
    try:
        result = asyncio.run(_with_pool_cleanup(coro_factory, **kwargs))
        logger.info("job_completed", job=job_name, result=result)
        return result
    except Exception as e:
        logger.error("job_failed", job=job_name, error=str(e))
        raise


async def _with_pool_cleanup(coro_factory: Callable, **kwargs) -> dict:
    from engine_orchestrator.models.database import close_db

    try:
        return await coro_factory(**kwargs)
    finally:
        await close_db()


# ── Async bodies ─────────────────────────────────────────────

async def _process_work_queue(limit: Optional[int] = None) -> dict:
    from engine_orchestrator.authority.tracker import AuthorityTracker
    from engine_orchestrator.consensus.service import ConsensusService
    from engine_orchestrator.dependencies import build_engine_client
    from engine_orchestrator.models.database import async_session_factory
    from engine_orchestrator.notifications.sink import build_notification_sink
    from engine_orchestrator.runner.handlers import HandlerContext
    from engine_orchestrator.runner.job_runner import JobRunner

    sink = build_notification_sink()
    engine_client = build_engine_client()
    tracker = AuthorityTracker(async_session_factory, notification_sink=sink)
    context = HandlerContext(
        session_factory=async_session_factory,
        engine_client=engine_client,
        tracker=tracker,
        consensus=ConsensusService(async_session_factory),
    )
    try:
        summary = await JobRunner(async_session_factory, context, notification_sink=sink).run_once(limit=limit)
    finally:
        await engine_client.aclose()
    return summary.model_dump()


async def _sla_sweep() -> dict:
    from engine_orchestrator.models.database import async_session_factory
    from engine_orchestrator.notifications.sink import build_notification_sink
    from engine_orchestrator.sla.escalator import run_sla_sweep

    async with async_session_factory() as session:
        result = await run_sla_sweep(session, build_notification_sink())
    return result.model_dump(mode="json")


async def _authority_decay() -> dict:
    from engine_orchestrator.authority.tracker import AuthorityTracker
    from engine_orchestrator.models.database import async_session_factory

    results = await AuthorityTracker(async_session_factory).apply_decay()
    return {"decayed": [r.engine for r in results]}


async def _authority_snapshot(snapshot_type: str = "daily") -> dict:
    from engine_orchestrator.authority.tracker import AuthorityTracker
    from engine_orchestrator.models.database import async_session_factory
    from engine_orchestrator.models.enums import SnapshotType

    created = await AuthorityTracker(async_session_factory).snapshot_all(SnapshotType(snapshot_type))
    return {"snapshot_type": snapshot_type, "created": created}


async def _retention_sweep() -> dict:
    from engine_orchestrator.models.database import async_session_factory
    from engine_orchestrator.queue.work_queue import retention_sweep

    async with async_session_factory() as session:
        result = await retention_sweep(session)
    return result.model_dump(mode="json")


# ── Job functions ────────────────────────────────────────────

def process_work_queue_job(limit: Optional[int] = None) -> dict:
    """Claim and execute one pass of due work items."""
    return _run(_process_work_queue, "process_work_queue", limit=limit)


def sla_sweep_job() -> dict:
    """Escalate open insights past their deadline."""
    return _run(_sla_sweep, "sla_sweep")


def authority_decay_job() -> dict:
    """Apply this period's freshness decay to idle engines."""
    return _run(_authority_decay, "authority_decay")


def authority_snapshot_job(snapshot_type: str = "daily") -> dict:
    """Snapshot every engine's authority."""
    return _run(_authority_snapshot, "authority_snapshot", snapshot_type=snapshot_type)


def retention_sweep_job() -> dict:
    """Delete finished work items older than the retention window."""
    return _run(_retention_sweep, "retention_sweep")


MAINTENANCE_JOBS: dict[str, Callable[..., dict]] = {
    "process_work_queue": process_work_queue_job,
    "sla_sweep": sla_sweep_job,
    "authority_decay": authority_decay_job,
    "authority_snapshot": authority_snapshot_job,
    "retention_sweep": retention_sweep_job,
}


def enqueue_maintenance(name: str, **kwargs) -> str:
    """
    Enqueue a named maintenance job.
    Returns the job ID.
    """
    func = MAINTENANCE_JOBS.get(name)
    if func is None:
        raise KeyError(f"Unknown maintenance job: {name}")

    q = get_queue()
    job = q.enqueue(
        func,
        kwargs=kwargs,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info("job_enqueued", job=name, job_id=job.id)
    return job.id
