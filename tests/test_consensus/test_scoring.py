"""
Tests for the pure scoring rules.
"""

import pytest

from engine_orchestrator.consensus.scoring import (
    confidence_level,
    convergence_recommendation,
    propagation_factors,
    status_impact,
    weighted_average,
)
from engine_orchestrator.models.enums import ConfidenceLevel


class TestWeightedAverage:
    def test_weights_applied(self):
        assert weighted_average([(80, 1.2), (60, 0.5)]) == pytest.approx(74.12)

    def test_empty_is_zero(self):
        assert weighted_average([]) == 0.0


class TestConfidenceLevel:
    def test_all_healthy(self):
        assert confidence_level(6, 6, 0) == ConfidenceLevel.HIGH

    def test_mostly_healthy(self):
        assert confidence_level(6, 5, 1) == ConfidenceLevel.MEDIUM

    def test_mostly_unhealthy(self):
        assert confidence_level(6, 3, 1) == ConfidenceLevel.LOW


class TestPropagation:
    def test_impacts(self):
        assert status_impact("unavailable", 1.0) == pytest.approx(0.3)
        assert status_impact("degraded", 1.0) == pytest.approx(0.1)
        assert status_impact("healthy", 1.5) == 0.0
        assert status_impact("maintenance", 1.5) == 0.0

    def test_no_impact(self):
        assert propagation_factors(0.0) == (100.0, 1.0)

    def test_multiplier_floor(self):
        reliability, multiplier = propagation_factors(0.9)
        assert reliability == pytest.approx(10.0)
        assert multiplier == 0.5


class TestRecommendation:
    @pytest.mark.parametrize(
        "score, prefix",
        [(100, "High"), (80, "High"), (50, "Moderate"), (49.9, "Significant")],
    )
    def test_bands(self, score, prefix):
        assert convergence_recommendation(score).startswith(prefix)
