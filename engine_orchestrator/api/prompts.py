"""
/api/v1/prompts endpoints.
Disagreement resolution, authority-weighted scoring and confidence propagation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.authority.tracker import AuthorityWriteConflict
from engine_orchestrator.consensus.service import ConsensusService, list_disagreements
from engine_orchestrator.dependencies import get_consensus, get_db, verify_api_key
from engine_orchestrator.schemas.consensus import (
    ConfidencePropagationResult,
    DisagreementRecord,
    ResolutionResult,
    ResolveRequest,
    WeightedScoreRequest,
    WeightedScoreResult,
)

router = APIRouter(prefix="/api/v1/prompts", tags=["prompts"], dependencies=[Depends(verify_api_key)])


@router.post("/{prompt_id}/disagreements/resolve", response_model=ResolutionResult)
async def resolve_disagreements(
    prompt_id: str,
    request: Optional[ResolveRequest] = None,
    consensus: ConsensusService = Depends(get_consensus),
):
    """
    Settle engine disagreements for a prompt.
    Uses the stored engine results unless observations are supplied.
    """
    try:
        return await consensus.resolve_disagreement(
            prompt_id,
            request.observations if request is not None else None,
        )
    except AuthorityWriteConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/{prompt_id}/disagreements", response_model=list[DisagreementRecord])
async def get_disagreements(prompt_id: str, session: AsyncSession = Depends(get_db)):
    return await list_disagreements(session, prompt_id)


@router.post("/{prompt_id}/weighted-score", response_model=WeightedScoreResult)
async def weighted_score(
    prompt_id: str,
    request: WeightedScoreRequest,
    consensus: ConsensusService = Depends(get_consensus),
):
    """Authority-weighted aggregate of the supplied per-engine scores."""
    return await consensus.weighted_score(prompt_id, request.scores)


@router.get("/{prompt_id}/weighted-score", response_model=WeightedScoreResult)
async def weighted_score_from_results(
    prompt_id: str,
    consensus: ConsensusService = Depends(get_consensus),
):
    result = await consensus.weighted_score_from_results(prompt_id)
    if not result.breakdown:
        raise HTTPException(status_code=404, detail=f"No scored engine results for prompt {prompt_id}")
    return result


@router.get("/{prompt_id}/confidence", response_model=ConfidencePropagationResult)
async def confidence(
    prompt_id: str,
    raw_score: Optional[float] = Query(None, ge=0, le=100),
    consensus: ConsensusService = Depends(get_consensus),
):
    """Confidence multiplier from the health of the engines that answered this prompt."""
    return await consensus.confidence_propagation(prompt_id, raw_score)
