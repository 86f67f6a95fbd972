"""
/api/v1/engines endpoints.
Engine authority, explanations, audit trail, snapshots, outages and decay.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.authority.outages import get_outage_history
from engine_orchestrator.authority.snapshots import list_snapshots
from engine_orchestrator.authority.tracker import (
    AuthorityTracker,
    AuthorityWriteConflict,
    EngineNotFoundError,
    get_engine_row,
)
from engine_orchestrator.dependencies import get_db, get_tracker, verify_api_key
from engine_orchestrator.models.enums import SnapshotType
from engine_orchestrator.schemas.authority import (
    AuditEntryResponse,
    AuthorityExplanation,
    DecayResult,
    EngineAuthorityResponse,
    EngineRegistration,
    MaintenanceRequest,
    OutageResponse,
    RecordResultRequest,
    RecordResultResponse,
    SnapshotResponse,
)

router = APIRouter(prefix="/api/v1/engines", tags=["engines"], dependencies=[Depends(verify_api_key)])


def _not_found(engine: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Unknown engine: {engine}")


@router.get("", response_model=list[EngineAuthorityResponse])
async def list_engines(tracker: AuthorityTracker = Depends(get_tracker)):
    """Every engine, highest authority first."""
    rows = await tracker.get_authority()
    return [EngineAuthorityResponse.model_validate(r) for r in rows]


@router.post("", response_model=EngineAuthorityResponse, status_code=status.HTTP_201_CREATED)
async def register_engine(
    registration: EngineRegistration,
    tracker: AuthorityTracker = Depends(get_tracker),
):
    row = await tracker.register_engine(registration)
    return EngineAuthorityResponse.model_validate(row)


@router.post("/seed")
async def seed_engines(tracker: AuthorityTracker = Depends(get_tracker)):
    """Register the default engine set. Existing engines are left alone."""
    return {"created": await tracker.seed_default_engines()}


@router.get("/outages/active", response_model=list[OutageResponse])
async def active_outages(tracker: AuthorityTracker = Depends(get_tracker)):
    outages = await tracker.get_active_outages()
    return [OutageResponse.model_validate(o) for o in outages]


@router.post("/decay", response_model=list[DecayResult])
async def run_decay(tracker: AuthorityTracker = Depends(get_tracker)):
    """Apply this period's freshness decay. Repeat calls in a period are no-ops."""
    try:
        return await tracker.apply_decay()
    except AuthorityWriteConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/snapshots")
async def snapshot_all(
    snapshot_type: SnapshotType = Query(SnapshotType.DAILY),
    tracker: AuthorityTracker = Depends(get_tracker),
):
    return {"created": await tracker.snapshot_all(snapshot_type)}


@router.get("/{engine}", response_model=EngineAuthorityResponse)
async def get_engine(engine: str, tracker: AuthorityTracker = Depends(get_tracker)):
    try:
        row = await tracker.get_engine(engine)
    except EngineNotFoundError:
        raise _not_found(engine)
    return EngineAuthorityResponse.model_validate(row)


@router.get("/{engine}/explain", response_model=AuthorityExplanation)
async def explain_engine(engine: str, tracker: AuthorityTracker = Depends(get_tracker)):
    """Human-readable account of why the engine carries its current weight."""
    try:
        return await tracker.explain_authority(engine)
    except EngineNotFoundError:
        raise _not_found(engine)


@router.get("/{engine}/audit", response_model=list[AuditEntryResponse])
async def audit_trail(
    engine: str,
    days: int = Query(7, ge=1, le=365),
    tracker: AuthorityTracker = Depends(get_tracker),
):
    try:
        entries = await tracker.get_audit_trail(engine, days=days)
    except EngineNotFoundError:
        raise _not_found(engine)
    return [AuditEntryResponse.model_validate(e) for e in entries]


@router.post("/{engine}/results", response_model=RecordResultResponse)
async def record_result(
    engine: str,
    request: RecordResultRequest,
    tracker: AuthorityTracker = Depends(get_tracker),
):
    """Fold one query outcome into the engine's authority."""
    try:
        return await tracker.record_result(
            engine,
            success=request.success,
            response_time_ms=request.response_time_ms,
            citation_present=request.citation_present,
        )
    except EngineNotFoundError:
        raise _not_found(engine)
    except AuthorityWriteConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{engine}/maintenance", response_model=EngineAuthorityResponse)
async def set_maintenance(
    engine: str,
    request: MaintenanceRequest,
    tracker: AuthorityTracker = Depends(get_tracker),
):
    try:
        row = await tracker.set_maintenance(engine, request.enabled, request.reason)
    except EngineNotFoundError:
        raise _not_found(engine)
    return EngineAuthorityResponse.model_validate(row)


@router.get("/{engine}/snapshots", response_model=list[SnapshotResponse])
async def get_snapshots(
    engine: str,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
):
    snapshots = await list_snapshots(session, engine, limit=limit)
    return [SnapshotResponse.model_validate(s) for s in snapshots]


@router.post("/{engine}/snapshots", response_model=SnapshotResponse, status_code=status.HTTP_201_CREATED)
async def create_snapshot(
    engine: str,
    snapshot_type: SnapshotType = Query(SnapshotType.MANUAL),
    tracker: AuthorityTracker = Depends(get_tracker),
):
    try:
        snapshot = await tracker.create_snapshot(engine, snapshot_type)
    except EngineNotFoundError:
        raise _not_found(engine)
    return SnapshotResponse.model_validate(snapshot)


@router.get("/{engine}/outages", response_model=list[OutageResponse])
async def outage_history(
    engine: str,
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_db),
):
    try:
        await get_engine_row(session, engine)
    except EngineNotFoundError:
        raise _not_found(engine)
    outages = await get_outage_history(session, engine, limit=limit)
    return [OutageResponse.model_validate(o) for o in outages]
