"""
Prometheus metrics for the engine orchestration service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Batches ──────────────────────────────────────────────────
batches_submitted_total = Counter(
    "batches_submitted_total",
    "Total batches admitted to the work queue",
    ["job_type"],
)

batches_rejected_total = Counter(
    "batches_rejected_total",
    "Total batch submissions rejected",
    ["job_type", "reason"],
)

work_items_enqueued_total = Counter(
    "work_items_enqueued_total",
    "Total work items created",
    ["job_type"],
)

# ── Job Runner ───────────────────────────────────────────────
work_items_claimed_total = Counter(
    "work_items_claimed_total",
    "Total work items claimed by runners",
)

work_item_outcomes_total = Counter(
    "work_item_outcomes_total",
    "Work item state transitions after execution",
    ["job_type", "outcome"],
)

handler_duration_seconds = Histogram(
    "handler_duration_seconds",
    "Time spent inside a job handler",
    ["job_type"],
    buckets=[0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

work_queue_depth = Gauge(
    "work_queue_depth",
    "Current number of work items per status",
    ["status"],
)

# ── Engines ──────────────────────────────────────────────────
engine_query_latency_seconds = Histogram(
    "engine_query_latency_seconds",
    "Latency of engine client calls",
    ["engine", "outcome"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

engine_authority_weight = Gauge(
    "engine_authority_weight",
    "Current authority weight per engine",
    ["engine"],
)

engine_status_transitions_total = Counter(
    "engine_status_transitions_total",
    "Engine health state changes",
    ["engine", "from_status", "to_status"],
)

engine_outages_opened_total = Counter(
    "engine_outages_opened_total",
    "Outages opened per engine",
    ["engine"],
)

authority_write_conflicts_total = Counter(
    "authority_write_conflicts_total",
    "Optimistic concurrency conflicts on authority rows",
    ["engine"],
)

# ── Consensus ────────────────────────────────────────────────
disagreements_recorded_total = Counter(
    "disagreements_recorded_total",
    "Disagreement rows recorded",
    ["disagreement_type"],
)

convergence_scores = Histogram(
    "convergence_scores",
    "Distribution of convergence scores",
    buckets=[0, 25, 50, 75, 100],
)

# ── SLA ──────────────────────────────────────────────────────
sla_escalations_total = Counter(
    "sla_escalations_total",
    "Insights escalated as overdue",
)

# ── Costs ────────────────────────────────────────────────────
work_item_cost_usd = Counter(
    "work_item_cost_usd_total",
    "Cumulative cost of executed work items in USD",
    ["engine", "operation"],
)

# ── Notifications ────────────────────────────────────────────
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Notification sink deliveries that raised",
    ["notification_type"],
)
