"""
Schemas for disagreement resolution, weighted scores and confidence propagation.
"""

from typing import Optional

from pydantic import BaseModel, Field


class EngineObservation(BaseModel):
    """One engine's structured answer for a prompt."""
    engine: str
    brand_mentioned: bool
    sentiment: Optional[str] = None


class DisagreementRecord(BaseModel):
    engine_a: str
    engine_b: str
    disagreement_type: str
    engine_a_value: Optional[str] = None
    engine_b_value: Optional[str] = None
    winner: Optional[str] = None
    resolution_method: str
    explanation: str
    authority_impact_a: float = 0.0
    authority_impact_b: float = 0.0


class ResolutionResult(BaseModel):
    prompt_id: str
    winner: Optional[str] = None
    explanation: str
    convergence_score: float
    total_checks: int
    agreeing_checks: int
    disagreements: list[DisagreementRecord] = []
    recommendation: str
    requires_manual_verification: bool = False


class ResolveRequest(BaseModel):
    observations: Optional[list[EngineObservation]] = None


class EngineScore(BaseModel):
    engine: str
    score: float = Field(ge=0, le=100)


class WeightedScoreRequest(BaseModel):
    scores: list[EngineScore] = Field(min_length=1)


class EngineScoreBreakdown(BaseModel):
    engine: str
    display_name: str
    reported_score: float
    raw_score: float
    authority_weight: float
    weighted_score: float
    status: str
    is_fallback: bool = False


class WeightedScoreResult(BaseModel):
    prompt_id: str
    weighted_avs: float
    unweighted_avs: float
    breakdown: list[EngineScoreBreakdown]
    degraded_engines: list[str] = []
    confidence_level: str
    is_estimated: bool = False
    low_authority_impact: Optional[str] = None
    degradation_explanation: Optional[str] = None


class DegradationSource(BaseModel):
    engine: str
    status: str
    authority_weight: float
    impact: float


class ConfidencePropagationResult(BaseModel):
    prompt_id: str
    original_score: Optional[float] = None
    adjusted_score: Optional[float] = None
    reliability_percentage: float
    confidence_multiplier: float
    explanation: str
    degradation_sources: list[DegradationSource] = []
