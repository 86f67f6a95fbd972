"""
Pydantic request/response schemas for batches, work items and budgets.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from engine_orchestrator.models.enums import JobType


# ── Request Schemas ──────────────────────────────────────────

class BatchSubmitRequest(BaseModel):
    """Submit a group of work items of one type."""
    type: JobType
    items: list[dict]
    priority: int = Field(default=5, ge=0, le=100)
    scheduled_for: Optional[datetime] = None
    owner: Optional[str] = None
    organization_id: Optional[str] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)


class CostEstimateRequest(BaseModel):
    type: JobType
    count: int = Field(ge=1)
    organization_id: Optional[str] = None


# ── Response Schemas ─────────────────────────────────────────

class BudgetCheck(BaseModel):
    """Outcome of checking an organization's budget."""
    allowed: bool
    reason: Optional[str] = None
    current_usage: float = 0.0
    limit: Optional[float] = None
    usage_percentage: float = 0.0


class CostEstimate(BaseModel):
    type: str
    count: int
    cost_per_item: float
    base_cost: float
    volume_discount: float = 0.0
    final_cost: float
    estimated_minutes: int
    estimated_completion: datetime


class BatchResponse(BaseModel):
    id: uuid.UUID
    owner: Optional[str] = None
    organization_id: Optional[str] = None
    type: str
    status: str
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    cancelled_jobs: int
    progress_percentage: float
    estimated_cost: float
    actual_cost: float
    estimated_completion: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BatchListResponse(BaseModel):
    batches: list[BatchResponse]
    total: int


class WorkItemResponse(BaseModel):
    id: uuid.UUID
    type: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    cost_usd: float
    payload: dict
    result: Optional[dict] = None
    error_message: Optional[str] = None
    batch_id: Optional[uuid.UUID] = None
    scheduled_for: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WorkQueueStats(BaseModel):
    """Counts per work item status."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0
    cancelled: int = 0
    total: int = 0


class RunSummary(BaseModel):
    """What one runner invocation did."""
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0


class RetentionResult(BaseModel):
    deleted: int
    cutoff: datetime
