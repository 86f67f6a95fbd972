"""
Typed contracts between the job runner, its handlers and the engine client.

Every job type has a payload model; payloads are validated when a batch is
submitted and again when a handler picks the item up.
"""

from typing import Optional

from pydantic import BaseModel, Field

from engine_orchestrator.models.enums import JobType


# ── Engine Client ────────────────────────────────────────────

class MentionData(BaseModel):
    """Structured mention data extracted upstream from an engine response."""
    brand_mentioned: bool
    sentiment: Optional[str] = None  # positive, neutral, negative
    score: Optional[float] = Field(default=None, ge=0, le=100)
    position: Optional[int] = None


class EngineQueryRequest(BaseModel):
    """What the runner asks an engine."""
    operation: str
    prompt_id: Optional[str] = None
    prompt_text: Optional[str] = None
    brand_name: Optional[str] = None
    persona: Optional[str] = None
    source_url: Optional[str] = None
    claim_text: Optional[str] = None


class EngineQueryResult(BaseModel):
    """What an engine client hands back."""
    success: bool
    response_time_ms: int = 0
    citation_present: Optional[bool] = None
    mention: Optional[MentionData] = None
    error: Optional[str] = None


# ── Job Payloads ─────────────────────────────────────────────

class PromptAnalysisPayload(BaseModel):
    prompt_id: str = Field(min_length=1)
    prompt_text: str = Field(min_length=1)
    engine: str = Field(min_length=1)
    brand_name: str = Field(min_length=1)
    persona: Optional[str] = None


class ScoreRecalcPayload(BaseModel):
    prompt_id: str = Field(min_length=1)


class CitationVerifyPayload(BaseModel):
    source_url: str = Field(min_length=1)
    claim_text: str = Field(min_length=1)
    engine: str = Field(min_length=1)


class AuthorityUpdatePayload(BaseModel):
    engine: str = Field(min_length=1)
    success: bool
    response_time_ms: Optional[int] = Field(default=None, ge=0)
    citation_present: Optional[bool] = None


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    JobType.PROMPT_ANALYSIS.value: PromptAnalysisPayload,
    JobType.SCORE_RECALC.value: ScoreRecalcPayload,
    JobType.CITATION_VERIFY.value: CitationVerifyPayload,
    JobType.AUTHORITY_UPDATE.value: AuthorityUpdatePayload,
}
