"""
Authority weight model.

authority_weight = clamp(BASE + R*rel + C*cit + F*fresh, FLOOR, CEILING)
with the metrics expressed as fractions of 100, then overridden by the
consecutive-failure thresholds:

    failures >= UNAVAILABLE_FAILURE_THRESHOLD  -> UNAVAILABLE_WEIGHT
    failures >= DEGRADED_FAILURE_THRESHOLD     -> DEGRADED_WEIGHT

With default settings the formula alone tops out at exactly 1.5 and never
drops below 0.8, so the overrides keep the weight monotone non-increasing
in consecutive failures.
"""

from typing import Optional

from engine_orchestrator.config import settings
from engine_orchestrator.models.enums import EngineStatus


def clamp_weight(weight: float) -> float:
    return max(settings.AUTHORITY_WEIGHT_FLOOR, min(settings.AUTHORITY_WEIGHT_CEILING, weight))


def formula_weight(reliability: float, citation: float, freshness: float) -> float:
    """Weight from metrics alone, ignoring failure overrides."""
    raw = (
        settings.AUTHORITY_BASE_WEIGHT
        + settings.AUTHORITY_RELIABILITY_FACTOR * (reliability / 100.0)
        + settings.AUTHORITY_CITATION_FACTOR * (citation / 100.0)
        + settings.AUTHORITY_FRESHNESS_FACTOR * (freshness / 100.0)
    )
    return round(clamp_weight(raw), 4)


def compute_authority_weight(
    reliability: float,
    citation: float,
    freshness: float,
    consecutive_failures: int,
) -> float:
    """The deterministic authority weight for a set of metrics."""
    if consecutive_failures >= settings.UNAVAILABLE_FAILURE_THRESHOLD:
        return settings.UNAVAILABLE_WEIGHT
    if consecutive_failures >= settings.DEGRADED_FAILURE_THRESHOLD:
        return settings.DEGRADED_WEIGHT
    return formula_weight(reliability, citation, freshness)


def derive_status(consecutive_failures: int, current_status: str = EngineStatus.HEALTHY.value) -> EngineStatus:
    """Health state from consecutive failures. Maintenance is operator-owned and sticks."""
    if current_status == EngineStatus.MAINTENANCE.value:
        return EngineStatus.MAINTENANCE
    if consecutive_failures >= settings.UNAVAILABLE_FAILURE_THRESHOLD:
        return EngineStatus.UNAVAILABLE
    if consecutive_failures >= settings.DEGRADED_FAILURE_THRESHOLD:
        return EngineStatus.DEGRADED
    return EngineStatus.HEALTHY


def status_message(status: EngineStatus, consecutive_failures: int) -> Optional[str]:
    if status == EngineStatus.UNAVAILABLE:
        return f"{consecutive_failures} consecutive failures; scores use fallback estimates"
    if status == EngineStatus.DEGRADED:
        return f"{consecutive_failures} consecutive failures"
    if status == EngineStatus.MAINTENANCE:
        return "Under maintenance"
    return None


def has_failure_override(consecutive_failures: int) -> bool:
    return consecutive_failures >= settings.DEGRADED_FAILURE_THRESHOLD


def nudged_weight(
    weight: float,
    delta: float,
    reliability: float,
    citation: float,
    freshness: float,
) -> float:
    """Apply a consensus nudge, kept within MAX_NUDGE_DRIFT of the formula weight."""
    baseline = formula_weight(reliability, citation, freshness)
    low = max(settings.AUTHORITY_WEIGHT_FLOOR, baseline - settings.MAX_NUDGE_DRIFT)
    high = min(settings.AUTHORITY_WEIGHT_CEILING, baseline + settings.MAX_NUDGE_DRIFT)
    return round(min(high, max(low, weight + delta)), 4)


def decayed_weight(weight: float, baseline: float) -> float:
    """Move DECAY_RATE of the way from the current weight toward the baseline."""
    moved = weight + (baseline - weight) * settings.DECAY_RATE
    if abs(moved - baseline) < 0.0005:
        moved = baseline
    return round(clamp_weight(moved), 4)


def trust_level(weight: float) -> str:
    if weight >= 1.1:
        return "high"
    if weight >= 0.9:
        return "medium"
    return "low"
