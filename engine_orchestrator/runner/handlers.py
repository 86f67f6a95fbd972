"""
Job handlers, keyed by job type.

A handler receives the validated payload and a HandlerContext and returns a
JSON-serializable result dict. Raising TransientJobError (or EngineError /
asyncio.TimeoutError) asks for a retry; PermanentJobError dead-letters the
item immediately.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from engine_orchestrator.authority.tracker import AuthorityTracker, EngineNotFoundError, get_engine_row
from engine_orchestrator.config import settings
from engine_orchestrator.consensus.service import ConsensusService
from engine_orchestrator.engines.base import EngineClient, EngineError
from engine_orchestrator.models.enums import EngineStatus, JobType
from engine_orchestrator.models.tables import EngineResult, WorkItem
from engine_orchestrator.observability.metrics import engine_query_latency_seconds
from engine_orchestrator.schemas.contracts import (
    PAYLOAD_MODELS,
    AuthorityUpdatePayload,
    CitationVerifyPayload,
    EngineQueryRequest,
    EngineQueryResult,
    PromptAnalysisPayload,
    ScoreRecalcPayload,
)

logger = structlog.get_logger(__name__)


class TransientJobError(Exception):
    """Failure worth retrying."""


class PermanentJobError(Exception):
    """Failure that no retry can fix."""


class EngineCallLimiter:
    """Per-engine concurrency bound shared by every handler in a runner."""

    def __init__(self, per_engine: int):
        self.per_engine = per_engine
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    def for_engine(self, engine: str) -> asyncio.Semaphore:
        if engine not in self._semaphores:
            self._semaphores[engine] = asyncio.Semaphore(self.per_engine)
        return self._semaphores[engine]


@dataclass
class HandlerContext:
    session_factory: async_sessionmaker
    engine_client: EngineClient
    tracker: AuthorityTracker
    consensus: ConsensusService
    limiter: EngineCallLimiter = field(
        default_factory=lambda: EngineCallLimiter(settings.ENGINE_MAX_CONCURRENCY)
    )
    query_timeout: float = settings.ENGINE_QUERY_TIMEOUT_SECONDS


Handler = Callable[[HandlerContext, WorkItem, BaseModel], Awaitable[dict]]


def parse_payload(item: WorkItem) -> BaseModel:
    model = PAYLOAD_MODELS.get(item.type)
    if model is None:
        raise PermanentJobError(f"Unknown job type: {item.type}")
    try:
        return model.model_validate(item.payload)
    except ValidationError as e:
        raise PermanentJobError(f"Malformed {item.type} payload: {e.errors()[0]['msg']}") from e


async def query_engine(ctx: HandlerContext, engine: str, request: EngineQueryRequest) -> EngineQueryResult:
    """
    One bounded engine call.

    Holds the engine's semaphore, enforces the query timeout and records the
    outcome with the authority tracker whether it succeeded or not.
    """
    start = time.monotonic()
    async with ctx.limiter.for_engine(engine):
        try:
            result = await asyncio.wait_for(ctx.engine_client.query(engine, request), timeout=ctx.query_timeout)
        except (EngineError, asyncio.TimeoutError) as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            engine_query_latency_seconds.labels(engine=engine, outcome="error").observe(elapsed_ms / 1000)
            await ctx.tracker.record_result(engine, success=False, response_time_ms=elapsed_ms)
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            raise TransientJobError(f"{engine} query failed: {reason}") from e

    outcome = "success" if result.success else "failure"
    engine_query_latency_seconds.labels(engine=engine, outcome=outcome).observe(result.response_time_ms / 1000)
    await ctx.tracker.record_result(
        engine,
        success=result.success,
        response_time_ms=result.response_time_ms,
        citation_present=result.citation_present,
    )
    if not result.success:
        raise TransientJobError(f"{engine} returned an unsuccessful response: {result.error or 'no detail'}")
    return result


async def _ensure_known_engine(ctx: HandlerContext, engine: str):
    async with ctx.session_factory() as session:
        try:
            return await get_engine_row(session, engine)
        except EngineNotFoundError as e:
            raise PermanentJobError(str(e)) from e


# ── Handlers ─────────────────────────────────────────────────

async def handle_prompt_analysis(ctx: HandlerContext, item: WorkItem, payload: PromptAnalysisPayload) -> dict:
    row = await _ensure_known_engine(ctx, payload.engine)
    request = EngineQueryRequest(
        operation=JobType.PROMPT_ANALYSIS.value,
        prompt_id=payload.prompt_id,
        prompt_text=payload.prompt_text,
        brand_name=payload.brand_name,
        persona=payload.persona,
    )
    result = await query_engine(ctx, payload.engine, request)
    mention = result.mention

    async with ctx.session_factory() as session:
        session.add(EngineResult(
            prompt_id=payload.prompt_id,
            engine=payload.engine,
            work_item_id=item.id,
            success=True,
            brand_mentioned=mention.brand_mentioned if mention else None,
            sentiment=mention.sentiment if mention else None,
            score=mention.score if mention else None,
            citation_present=result.citation_present,
            response_time_ms=result.response_time_ms,
            authority_weight_at_query=row.authority_weight,
            is_degraded_response=row.status != EngineStatus.HEALTHY.value,
        ))
        await session.commit()

    return {
        "engine": payload.engine,
        "prompt_id": payload.prompt_id,
        "brand_mentioned": mention.brand_mentioned if mention else None,
        "sentiment": mention.sentiment if mention else None,
        "score": mention.score if mention else None,
        "citation_present": result.citation_present,
        "response_time_ms": result.response_time_ms,
    }


async def handle_citation_verify(ctx: HandlerContext, item: WorkItem, payload: CitationVerifyPayload) -> dict:
    await _ensure_known_engine(ctx, payload.engine)
    request = EngineQueryRequest(
        operation=JobType.CITATION_VERIFY.value,
        source_url=payload.source_url,
        claim_text=payload.claim_text,
    )
    result = await query_engine(ctx, payload.engine, request)
    return {
        "engine": payload.engine,
        "source_url": payload.source_url,
        "citation_present": result.citation_present,
        "response_time_ms": result.response_time_ms,
    }


async def handle_score_recalc(ctx: HandlerContext, item: WorkItem, payload: ScoreRecalcPayload) -> dict:
    weighted = await ctx.consensus.weighted_score_from_results(payload.prompt_id)
    if not weighted.breakdown:
        raise PermanentJobError(f"No engine results stored for prompt {payload.prompt_id}")
    confidence = await ctx.consensus.confidence_propagation(payload.prompt_id, weighted.weighted_avs)
    return {
        "prompt_id": payload.prompt_id,
        "weighted_avs": weighted.weighted_avs,
        "unweighted_avs": weighted.unweighted_avs,
        "is_estimated": weighted.is_estimated,
        "confidence_level": weighted.confidence_level,
        "adjusted_score": confidence.adjusted_score,
        "confidence_multiplier": confidence.confidence_multiplier,
    }


async def handle_authority_update(ctx: HandlerContext, item: WorkItem, payload: AuthorityUpdatePayload) -> dict:
    try:
        outcome = await ctx.tracker.record_result(
            payload.engine,
            success=payload.success,
            response_time_ms=payload.response_time_ms,
            citation_present=payload.citation_present,
        )
    except EngineNotFoundError as e:
        raise PermanentJobError(str(e)) from e
    return outcome.model_dump()


DEFAULT_HANDLERS: dict[str, Handler] = {
    JobType.PROMPT_ANALYSIS.value: handle_prompt_analysis,
    JobType.CITATION_VERIFY.value: handle_citation_verify,
    JobType.SCORE_RECALC.value: handle_score_recalc,
    JobType.AUTHORITY_UPDATE.value: handle_authority_update,
}


class HandlerRegistry:
    """Maps job types to handlers. Built once when the runner starts."""

    def __init__(self, handlers: Optional[dict[str, Handler]] = None):
        self._handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    def register(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def resolve(self, job_type: str) -> Handler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise PermanentJobError(f"Unknown job type: {job_type}")
        return handler

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers
