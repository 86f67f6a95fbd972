"""
Tests for the authority weight model.
"""

import pytest

from engine_orchestrator.authority.weights import (
    compute_authority_weight,
    decayed_weight,
    derive_status,
    formula_weight,
    has_failure_override,
    nudged_weight,
    trust_level,
)
from engine_orchestrator.models.enums import EngineStatus


class TestFormulaWeight:
    """Test the metric formula without failure overrides."""

    def test_all_zero_is_base(self):
        assert formula_weight(0, 0, 0) == 0.8

    def test_all_perfect_hits_ceiling(self):
        assert formula_weight(100, 100, 100) == 1.5

    def test_mixed_metrics(self):
        assert formula_weight(50, 50, 100) == pytest.approx(1.2)

    @pytest.mark.parametrize("field", ["reliability", "citation", "freshness"])
    def test_monotone_in_each_metric(self, field):
        base = {"reliability": 60, "citation": 60, "freshness": 60}
        raised = dict(base, **{field: 90})
        assert formula_weight(**raised) > formula_weight(**base)


class TestFailureOverrides:
    """Test consecutive-failure thresholds."""

    def test_below_degraded_threshold_uses_formula(self):
        assert compute_authority_weight(80, 80, 80, 2) == formula_weight(80, 80, 80)

    def test_degraded_weight(self):
        assert compute_authority_weight(100, 100, 100, 3) == 0.75

    def test_unavailable_weight(self):
        assert compute_authority_weight(100, 100, 100, 5) == 0.5
        assert compute_authority_weight(100, 100, 100, 12) == 0.5

    def test_non_increasing_in_failures(self):
        weights = [compute_authority_weight(90, 90, 90, n) for n in range(8)]
        assert weights == sorted(weights, reverse=True)

    def test_override_flag(self):
        assert not has_failure_override(2)
        assert has_failure_override(3)


class TestDeriveStatus:
    def test_thresholds(self):
        assert derive_status(0) == EngineStatus.HEALTHY
        assert derive_status(2) == EngineStatus.HEALTHY
        assert derive_status(3) == EngineStatus.DEGRADED
        assert derive_status(5) == EngineStatus.UNAVAILABLE

    def test_maintenance_is_sticky(self):
        assert derive_status(7, EngineStatus.MAINTENANCE.value) == EngineStatus.MAINTENANCE
        assert derive_status(0, EngineStatus.MAINTENANCE.value) == EngineStatus.MAINTENANCE


class TestNudgesAndDecay:
    def test_nudge_moves_weight(self):
        assert nudged_weight(1.2, 0.01, 50, 50, 100) == pytest.approx(1.21)
        assert nudged_weight(0.8, -0.01, 0, 0, 0) == pytest.approx(0.79)

    def test_nudge_bounded_by_drift(self):
        # Formula weight 1.2; drift is capped at 0.1 either side
        assert nudged_weight(1.3, 0.05, 50, 50, 100) == pytest.approx(1.3)
        assert nudged_weight(1.1, -0.05, 50, 50, 100) == pytest.approx(1.1)

    def test_nudge_never_leaves_floor_or_ceiling(self):
        assert nudged_weight(1.5, 0.01, 100, 100, 100) == 1.5
        assert nudged_weight(0.5, -0.01, 0, 0, 0) >= 0.5

    def test_decay_moves_quarter_of_the_way(self):
        assert decayed_weight(1.4, 1.0) == pytest.approx(1.3)

    def test_decay_snaps_when_close(self):
        assert decayed_weight(1.0002, 1.0) == 1.0


class TestTrustLevel:
    def test_bands(self):
        assert trust_level(1.2) == "high"
        assert trust_level(1.0) == "medium"
        assert trust_level(0.75) == "low"
