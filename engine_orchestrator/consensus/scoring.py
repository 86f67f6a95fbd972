"""
Pure scoring rules for consensus and confidence.
"""

from typing import Iterable

from engine_orchestrator.config import settings
from engine_orchestrator.models.enums import ConfidenceLevel, EngineStatus


def weighted_average(pairs: Iterable[tuple[float, float]]) -> float:
    """Mean of (score, weight) pairs weighted by weight. 0 when the weights sum to 0."""
    pairs = list(pairs)
    total_weight = sum(weight for _, weight in pairs)
    if total_weight <= 0:
        return 0.0
    return round(sum(score * weight for score, weight in pairs) / total_weight, 2)


def confidence_level(tracked_total: int, tracked_healthy: int, flagged_degraded: int) -> ConfidenceLevel:
    """
    high   - every tracked engine healthy and nothing in this result flagged degraded
    medium - at least HIGH_CONFIDENCE_HEALTHY_RATIO of tracked engines healthy
    low    - otherwise
    """
    if tracked_healthy == tracked_total and flagged_degraded == 0:
        return ConfidenceLevel.HIGH
    if tracked_healthy >= tracked_total * settings.HIGH_CONFIDENCE_HEALTHY_RATIO:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def status_impact(status: str, weight: float) -> float:
    """How much one contributing engine's health discounts a derived score."""
    if status == EngineStatus.UNAVAILABLE.value:
        return weight * settings.UNAVAILABLE_IMPACT_FACTOR
    if status == EngineStatus.DEGRADED.value:
        return weight * settings.DEGRADED_IMPACT_FACTOR
    return 0.0


def propagation_factors(total_impact: float) -> tuple[float, float]:
    """(reliability percentage, confidence multiplier) for an accumulated impact."""
    reliability = round(max(0.0, 100.0 - total_impact * 100.0), 2)
    multiplier = round(max(settings.MIN_CONFIDENCE_MULTIPLIER, 1.0 - total_impact), 4)
    return reliability, multiplier


def convergence_recommendation(convergence_score: float) -> str:
    if convergence_score >= settings.CONVERGENCE_HIGH_THRESHOLD:
        return "High convergence - engine answers are consistent"
    if convergence_score >= settings.CONVERGENCE_REVIEW_THRESHOLD:
        return "Moderate convergence - review the flagged disagreements"
    return "Significant divergence - manual verification recommended"
