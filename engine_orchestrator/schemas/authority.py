"""
Schemas for engine authority, outages, snapshots and audit entries.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class EngineRegistration(BaseModel):
    engine: str = Field(min_length=1, max_length=64)
    display_name: str
    reliability_score: float = Field(default=80.0, ge=0, le=100)
    citation_completeness: float = Field(default=80.0, ge=0, le=100)
    freshness_index: float = Field(default=80.0, ge=0, le=100)


class RecordResultRequest(BaseModel):
    success: bool
    response_time_ms: Optional[int] = Field(default=None, ge=0)
    citation_present: Optional[bool] = None


class MaintenanceRequest(BaseModel):
    enabled: bool
    reason: Optional[str] = None


class RecordResultResponse(BaseModel):
    """Outcome of folding one observation into an engine's authority row."""
    engine: str
    previous_status: str
    new_status: str
    previous_weight: float
    new_weight: float
    consecutive_failures: int
    outage_opened: bool = False
    outage_closed: bool = False


class EngineAuthorityResponse(BaseModel):
    engine: str
    display_name: str
    reliability_score: float
    citation_completeness: float
    freshness_index: float
    authority_weight: float
    status: str
    status_message: Optional[str] = None
    consecutive_failures: int
    total_queries: int
    successful_queries: int
    avg_response_time_ms: Optional[float] = None
    last_successful_query: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class OutageResponse(BaseModel):
    id: uuid.UUID
    engine: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    failure_count: int
    fallback_snapshot_id: Optional[uuid.UUID] = None
    resolution_type: Optional[str] = None

    model_config = {"from_attributes": True}


class SnapshotResponse(BaseModel):
    id: uuid.UUID
    engine: str
    snapshot_type: str
    reliability_score: float
    citation_completeness: float
    freshness_index: float
    authority_weight: float
    status: str
    captured_at: datetime

    model_config = {"from_attributes": True}


class AuditEntryResponse(BaseModel):
    id: uuid.UUID
    engine: str
    change_type: str
    previous_weight: Optional[float] = None
    new_weight: Optional[float] = None
    previous_reliability: Optional[float] = None
    new_reliability: Optional[float] = None
    explanation: str
    evidence: Optional[dict] = None
    triggered_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class AuthorityExplanation(BaseModel):
    """Human-readable account of why an engine carries its weight."""
    engine: str
    display_name: str
    authority_weight: float
    trust_level: str
    status: str
    why_trustworthy: list[str] = []
    why_cautious: list[str] = []
    recent_changes: list[str] = []
    rank: str


class DecayResult(BaseModel):
    engine: str
    previous_weight: float
    new_weight: float
    previous_freshness: float
    new_freshness: float
