"""
Schemas for prioritized insights and SLA reporting.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from engine_orchestrator.models.enums import InsightStatus


class InsightCreateRequest(BaseModel):
    owner: str
    title: str = Field(min_length=1)
    description: Optional[str] = None
    sla_hours: Optional[int] = Field(default=None, ge=1)
    deadline: Optional[datetime] = None


class InsightStatusUpdate(BaseModel):
    status: InsightStatus


class InsightResponse(BaseModel):
    id: uuid.UUID
    owner: str
    title: str
    status: str
    deadline: Optional[datetime] = None
    sla_hours: Optional[int] = None
    overdue: bool
    escalated_at: Optional[datetime] = None
    escalation_count: int
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SlaSweepResult(BaseModel):
    escalated: int
    insight_ids: list[uuid.UUID] = []


class ComplianceStats(BaseModel):
    window_days: int
    total_with_deadline: int
    completed_on_time: int
    completed_late: int
    still_overdue: int
    compliance_rate: float
    message: str
