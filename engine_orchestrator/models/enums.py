"""
Python enums for every enumerated column.
Values are what gets stored in the database.
"""

from enum import Enum


class JobType(str, Enum):
    PROMPT_ANALYSIS = "prompt_analysis"
    SCORE_RECALC = "score_recalc"
    CITATION_VERIFY = "citation_verify"
    AUTHORITY_UPDATE = "authority_update"


class WorkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EngineStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    MAINTENANCE = "maintenance"


class SnapshotType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"


class OutageResolution(str, Enum):
    AUTO_RECOVERED = "auto_recovered"
    MANUAL_INTERVENTION = "manual_intervention"
    PROVIDER_FIX = "provider_fix"


class DisagreementType(str, Enum):
    BRAND_MENTION = "brand_mention"
    SENTIMENT = "sentiment"


class ResolutionMethod(str, Enum):
    AUTHORITY_WEIGHTED = "authority_weighted"
    TIE_BREAK = "tie_break"


class AuditChangeType(str, Enum):
    RELIABILITY_CHANGE = "reliability_change"
    FRESHNESS_DECAY = "freshness_decay"
    CONVERGENCE_BOOST = "convergence_boost"
    DIVERGENCE_PENALTY = "divergence_penalty"
    MANUAL_OVERRIDE = "manual_override"
    AUTO_RECOVERY = "auto_recovery"


class AuditTrigger(str, Enum):
    SYSTEM = "system"
    DECAY_JOB = "decay_job"
    QUERY_RESULT = "query_result"
    ADMIN = "admin"


class InsightStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


OPEN_INSIGHT_STATUSES = (
    InsightStatus.PENDING.value,
    InsightStatus.ACKNOWLEDGED.value,
    InsightStatus.IN_PROGRESS.value,
)


class NotificationType(str, Enum):
    ENGINE_OUTAGE = "engine_outage"
    ENGINE_RECOVERED = "engine_recovered"
    SLA_BREACH = "sla_breach"
    JOB_DEAD_LETTERED = "job_dead_lettered"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
