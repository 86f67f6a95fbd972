"""
SQLAlchemy ORM models.
Column types are portable: native UUID/JSONB/TIMESTAMPTZ on PostgreSQL,
CHAR/JSON/naive-UTC on SQLite.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    false,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from engine_orchestrator.models.database import Base, utcnow
from engine_orchestrator.models.enums import (
    BatchStatus,
    EngineStatus,
    InsightStatus,
    WorkStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 6, asdecimal=False)


# ────────────────────────────────────────────────────────────
# WORK QUEUE
# ────────────────────────────────────────────────────────────
class Batch(Base):
    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    cancelled_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    progress_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchStatus.PENDING.value, server_default=BatchStatus.PENDING.value
    )
    estimated_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    actual_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0.0, server_default="0")
    estimated_completion: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_batches_owner_created", "owner", "created_at"),
        Index("ix_batches_status", "status"),
    )


class WorkItem(Base):
    __tablename__ = "work_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WorkStatus.PENDING.value, server_default=WorkStatus.PENDING.value
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default="5")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    cost_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0, server_default="0")
    scheduled_for: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_work_items_claim", "status", "priority", "scheduled_for"),
        Index("ix_work_items_batch", "batch_id"),
        Index("ix_work_items_completed", "status", "completed_at"),
    )


# ────────────────────────────────────────────────────────────
# ENGINE AUTHORITY
# ────────────────────────────────────────────────────────────
class EngineAuthority(Base):
    __tablename__ = "engine_authority"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    engine: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    reliability_score: Mapped[float] = mapped_column(Float, nullable=False, default=80.0)
    citation_completeness: Mapped[float] = mapped_column(Float, nullable=False, default=80.0)
    freshness_index: Mapped[float] = mapped_column(Float, nullable=False, default=80.0)
    # Registered freshness; a successful query restores freshness_index to it after decay
    baseline_freshness_index: Mapped[float] = mapped_column(Float, nullable=False, default=80.0)
    authority_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EngineStatus.HEALTHY.value, server_default=EngineStatus.HEALTHY.value
    )
    status_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    successful_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    citation_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    citations_present: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    avg_response_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timed_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_successful_query: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_failure: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_decay_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}


class EngineSnapshot(Base):
    __tablename__ = "engine_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    engine: Mapped[str] = mapped_column(String(64), nullable=False)
    snapshot_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reliability_score: Mapped[float] = mapped_column(Float, nullable=False)
    citation_completeness: Mapped[float] = mapped_column(Float, nullable=False)
    freshness_index: Mapped[float] = mapped_column(Float, nullable=False)
    authority_weight: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    total_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_response_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_engine_snapshots_engine_captured", "engine", "captured_at"),
    )


class EngineOutage(Base):
    __tablename__ = "engine_outages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    engine: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fallback_snapshot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("engine_snapshots.id", ondelete="SET NULL"), nullable=True
    )
    resolution_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        # At most one open outage per engine
        Index(
            "uq_engine_outages_open",
            "engine",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
            sqlite_where=text("ended_at IS NULL"),
        ),
        Index("ix_engine_outages_engine_started", "engine", "started_at"),
    )


class AuthorityAuditLog(Base):
    __tablename__ = "authority_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    engine: Mapped[str] = mapped_column(String(64), nullable=False)
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    new_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    previous_reliability: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    new_reliability: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    explanation: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_authority_audit_engine_created", "engine", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# CONSENSUS
# ────────────────────────────────────────────────────────────
class EngineResult(Base):
    __tablename__ = "engine_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    prompt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    engine: Mapped[str] = mapped_column(String(64), nullable=False)
    work_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    brand_mentioned: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    sentiment: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    citation_present: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    authority_weight_at_query: Mapped[float] = mapped_column(Float, nullable=False)
    is_degraded_response: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_engine_results_prompt_engine", "prompt_id", "engine", "created_at"),
    )


class EngineDisagreement(Base):
    __tablename__ = "engine_disagreements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    prompt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    engine_a: Mapped[str] = mapped_column(String(64), nullable=False)
    engine_b: Mapped[str] = mapped_column(String(64), nullable=False)
    disagreement_type: Mapped[str] = mapped_column(String(32), nullable=False)
    engine_a_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    engine_b_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    winner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_method: Mapped[str] = mapped_column(String(32), nullable=False)
    resolution_explanation: Mapped[str] = mapped_column(Text, nullable=False)
    authority_impact_a: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    authority_impact_b: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_engine_disagreements_prompt", "prompt_id"),
    )


# ────────────────────────────────────────────────────────────
# BILLING / COST
# ────────────────────────────────────────────────────────────
class OrganizationBilling(Base):
    __tablename__ = "organization_billing"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    daily_cost_limit: Mapped[Optional[float]] = mapped_column(Money, nullable=True)
    monthly_cost_limit: Mapped[Optional[float]] = mapped_column(Money, nullable=True)
    current_day_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0.0, server_default="0")
    current_month_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0.0, server_default="0")
    pending_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0.0, server_default="0")
    current_month_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class CostEvent(Base):
    __tablename__ = "cost_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    work_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    engine: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    cost_usd: Mapped[float] = mapped_column(Money, nullable=False, default=0.0)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_cost_events_org_created", "organization_id", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# INSIGHTS / SLA
# ────────────────────────────────────────────────────────────
class PrioritizedInsight(Base):
    __tablename__ = "prioritized_insights"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InsightStatus.PENDING.value, server_default=InsightStatus.PENDING.value
    )
    deadline: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    sla_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    escalated_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_insights_sla_sweep", "overdue", "deadline"),
        Index("ix_insights_owner_created", "owner", "created_at"),
    )
