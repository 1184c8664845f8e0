"""
Experiment Statistics Tests (Unit)
==================================

WHAT: Unit tests for the normal distribution helpers, sample size, power,
      significance testing, sequential looks and deterministic bucketing.
WHY: Every experiment decision (winner, stop early, sample size advice) is
     derived from these functions; they must be accurate and deterministic.

NOTE:
These tests live outside `backend/conversionlab/tests/` to avoid loading the
integration-test `conftest.py`, which configures a database and environment
variables not required here.

REFERENCES:
- backend/conversionlab/services/statistics.py
- backend/conversionlab/services/experiment_service.py:stable_bucket
"""

import math
import random
from collections import Counter
from types import SimpleNamespace

import pytest

from conversionlab.exceptions import InvalidParameter
from conversionlab.services import statistics
from conversionlab.services.experiment_service import pick_variant, stable_bucket
from conversionlab.services.statistics import Checkpoint, VariantCounts


# =============================================================================
# Normal distribution
# =============================================================================

def test_normal_inverse_matches_known_quantiles() -> None:
    assert statistics.normal_inverse(0.975) == pytest.approx(1.959964, abs=1e-6)
    assert statistics.normal_inverse(0.8) == pytest.approx(0.841621, abs=1e-6)
    assert statistics.normal_inverse(0.5) == 0.0


def test_normal_inverse_is_symmetric() -> None:
    for p in (0.001, 0.05, 0.2, 0.4):
        assert statistics.normal_inverse(p) == pytest.approx(-statistics.normal_inverse(1.0 - p), abs=1e-9)


@pytest.mark.parametrize("p", [0.0, 1.0, -0.1, 1.5])
def test_normal_inverse_rejects_out_of_range(p) -> None:
    with pytest.raises(InvalidParameter):
        statistics.normal_inverse(p)


def test_critical_value_for_95_percent() -> None:
    assert statistics.critical_value(95) == pytest.approx(1.96, abs=1e-3)
    assert statistics.critical_value(99.9) == pytest.approx(3.290527, abs=1e-6)


def test_upper_tail_far_from_center() -> None:
    assert statistics.normal_upper_tail(8.0) == pytest.approx(6.22096e-16, rel=1e-4)
    assert statistics.normal_cdf(0.0) == 0.5


def test_half_life_decay() -> None:
    week = 7 * 24 * 3600
    assert statistics.half_life_decay(0, week) == 1.0
    assert statistics.half_life_decay(week, week) == pytest.approx(0.5)
    assert statistics.half_life_decay(2 * week, week) == pytest.approx(0.25)
    # Touchpoints stamped after the conversion count as fresh
    assert statistics.half_life_decay(-week, week) == 1.0
    with pytest.raises(InvalidParameter):
        statistics.half_life_decay(10, 0)


# =============================================================================
# Sample size and power
# =============================================================================

def test_sample_size_for_reference_inputs() -> None:
    """10% baseline, +5% relative lift, 95% confidence, 80% power."""
    n = statistics.recommend_sample_size(0.10, 0.05, 95, 80)
    assert 57000 <= n <= 58500
    assert statistics.recommend_sample_size(0.10, 0.05, 95, 80) == n


def test_sample_size_monotonicity() -> None:
    base = statistics.recommend_sample_size(0.10, 0.10)
    assert statistics.recommend_sample_size(0.10, 0.05) > base
    assert statistics.recommend_sample_size(0.10, 0.20) < base
    assert statistics.recommend_sample_size(0.10, 0.10, power=90) > base
    assert statistics.recommend_sample_size(0.10, 0.10, confidence=99) > base


@pytest.mark.parametrize("kwargs", [
    {"baseline_rate": 0.0, "min_effect": 0.1},
    {"baseline_rate": 1.0, "min_effect": 0.1},
    {"baseline_rate": 0.1, "min_effect": 0.0},
    {"baseline_rate": 0.1, "min_effect": -0.1},
    {"baseline_rate": 0.1, "min_effect": 0.1, "confidence": 100},
    {"baseline_rate": 0.1, "min_effect": 0.1, "power": 0},
    # p2 capped at 0.99 leaves no room above the baseline
    {"baseline_rate": 0.995, "min_effect": 0.5},
])
def test_sample_size_rejects_invalid_inputs(kwargs) -> None:
    with pytest.raises(InvalidParameter):
        statistics.recommend_sample_size(**kwargs)


@pytest.mark.parametrize("args", [
    (0.0, 0.1, 100, 100),
    (0.1, 1.0, 100, 100),
    (0.1, 0.12, 0, 100),
    (0.1, 0.12, 100, -5),
])
def test_power_is_zero_for_degenerate_inputs(args) -> None:
    assert statistics.calculate_power(*args) == 0.0


def test_power_is_zero_for_invalid_confidence() -> None:
    assert statistics.calculate_power(0.1, 0.12, 100, 100, confidence=100) == 0.0


def test_power_grows_with_sample_size() -> None:
    small = statistics.calculate_power(0.10, 0.12, 500, 500)
    large = statistics.calculate_power(0.10, 0.12, 5000, 5000)
    assert 0.0 < small < large <= 1.0
    assert large > 0.8


def test_power_at_recommended_sample_size_is_near_target() -> None:
    n = statistics.recommend_sample_size(0.10, 0.20, 95, 80)
    assert statistics.calculate_power(0.10, 0.12, n, n) == pytest.approx(0.8, abs=0.03)


def test_power_curve_keys_and_skipped_effects() -> None:
    curve = statistics.power_curve(0.10, 1000, 1000)
    assert list(curve) == ["1.0%", "2.0%", "5.0%", "10.0%", "15.0%", "20.0%"]
    assert curve["20.0%"] > curve["1.0%"]

    # 0.9 * 1.15 and 0.9 * 1.2 would exceed a rate of 1
    assert list(statistics.power_curve(0.9, 1000, 1000)) == ["1.0%", "2.0%", "5.0%", "10.0%"]


def test_minimum_detectable_effect() -> None:
    assert statistics.minimum_detectable_effect(0, 0.1) == 0.0
    assert statistics.minimum_detectable_effect(1000, 0.0) == 0.0
    assert statistics.minimum_detectable_effect(1000, 0.1) > statistics.minimum_detectable_effect(10000, 0.1)


def test_estimate_test_duration() -> None:
    assert statistics.estimate_test_duration(3841, 2, 1000) == 8
    assert statistics.estimate_test_duration(3841, 2, 0) == 0
    assert statistics.estimate_test_duration(0, 2, 1000) == 0


# =============================================================================
# Significance
# =============================================================================

def test_significant_lift() -> None:
    control = VariantCounts(1000, 100, "control")
    variant = VariantCounts(1000, 150, "bold")

    result = statistics.evaluate_significance(control, variant, 95)

    assert result.z_score == pytest.approx(3.38, abs=0.01)
    assert result.p_value < 0.001
    assert result.significant is True
    assert result.winner == "bold"
    assert result.improvement == pytest.approx(0.5)
    low, high = result.confidence_interval
    assert low < 0.05 < high
    assert low > 0


def test_no_difference_is_not_significant() -> None:
    result = statistics.evaluate_significance(VariantCounts(1000, 100), VariantCounts(1000, 104))
    assert result.significant is False
    assert result.winner is None


def test_degenerate_counts() -> None:
    empty = statistics.evaluate_significance(VariantCounts(0, 0), VariantCounts(0, 0))
    assert empty.z_score == 0.0
    assert empty.p_value == 1.0
    assert empty.significant is False
    assert empty.improvement is None
    assert empty.confidence_interval == (0.0, 0.0)

    # Everyone converted in both arms: no variance
    saturated = statistics.evaluate_significance(VariantCounts(50, 50), VariantCounts(50, 50))
    assert saturated.z_score == 0.0


def test_evaluate_significance_rejects_bad_confidence() -> None:
    with pytest.raises(InvalidParameter):
        statistics.evaluate_significance(VariantCounts(10, 1), VariantCounts(10, 2), confidence=0)


def test_false_positive_rate_on_identical_arms() -> None:
    """A/A tests at 95% confidence should flag ~5% of runs."""
    rng = random.Random(20261019)
    trials, n, p = 1000, 2000, 0.1

    false_positives = 0
    for _ in range(trials):
        a = sum(1 for _ in range(n) if rng.random() < p)
        b = sum(1 for _ in range(n) if rng.random() < p)
        if statistics.evaluate_significance(VariantCounts(n, a), VariantCounts(n, b), 95).significant:
            false_positives += 1

    assert 0.025 <= false_positives / trials <= 0.075


# =============================================================================
# Sequential testing
# =============================================================================

def test_spending_function_shape() -> None:
    alpha = 0.05
    assert statistics.obrien_fleming_spending(0.0, alpha) == 0.0
    assert statistics.obrien_fleming_spending(0.1, alpha) < 1e-6
    assert statistics.obrien_fleming_spending(1.0, alpha) == pytest.approx(alpha, abs=1e-3)
    spent = [statistics.obrien_fleming_spending(t / 10, alpha) for t in range(1, 11)]
    assert spent == sorted(spent)


def test_no_data_look_never_crosses() -> None:
    result = statistics.sequential_test([Checkpoint(0, 0, 0, 0)], planned_sample_size=1000)

    assert math.isinf(result.looks[0].boundary)
    assert result.looks[0].crossed is False
    assert result.decision == "continue"


def test_early_look_with_moderate_effect_continues() -> None:
    result = statistics.sequential_test([Checkpoint(1000, 100, 1000, 150)], planned_sample_size=4000)

    assert result.looks[0].information_fraction == 0.25
    assert result.looks[0].boundary > 3.5
    assert result.decision == "continue"
    assert result.can_stop_early is False


def test_large_effect_stops_for_efficacy() -> None:
    result = statistics.sequential_test([Checkpoint(500, 50, 500, 100)], planned_sample_size=1000)

    assert result.decision == "stop_efficacy"
    assert result.can_stop_early is True
    assert "variant" in result.recommendation


def test_reaching_planned_sample_without_crossing() -> None:
    checkpoints = [Checkpoint(250 * k, 25 * k, 250 * k, 25 * k, label=f"day-{k}") for k in range(1, 5)]

    result = statistics.sequential_test(checkpoints, planned_sample_size=1000)

    assert result.decision == "stop_no_difference"
    assert [look.label for look in result.looks] == ["day-1", "day-2", "day-3", "day-4"]
    # Total alpha spent across all looks stays within the overall alpha
    assert result.looks[-1].alpha_spent == pytest.approx(0.05, abs=1e-3)


def test_sequential_without_checkpoints() -> None:
    result = statistics.sequential_test([], planned_sample_size=1000)
    assert result.decision == "continue"
    assert result.looks == []
    assert result.recommendation.startswith("No data yet")


def test_sequential_rejects_bad_plan() -> None:
    with pytest.raises(InvalidParameter):
        statistics.sequential_test([], planned_sample_size=0)


def test_repeated_looks_keep_false_positive_rate_nominal() -> None:
    """A/A tests checked daily for 10 days must stop for efficacy in <= ~5% of runs.

    The same data tested at a fixed 95% threshold after every look flags far
    more runs, which is the peeking problem the spending function prevents.
    """
    rng = random.Random(20261020)
    trials, days, daily, p = 1000, 10, 200, 0.1

    sequential_stops = 0
    naive_stops = 0
    for _ in range(trials):
        checkpoints = []
        a = b = 0
        for day in range(1, days + 1):
            a += sum(1 for _ in range(daily) if rng.random() < p)
            b += sum(1 for _ in range(daily) if rng.random() < p)
            checkpoints.append(Checkpoint(day * daily, a, day * daily, b, label=f"day-{day}"))

        result = statistics.sequential_test(checkpoints, planned_sample_size=days * daily)
        if result.decision == "stop_efficacy":
            sequential_stops += 1
        if any(
            statistics.evaluate_significance(
                VariantCounts(c.control_sessions, c.control_conversions),
                VariantCounts(c.variant_sessions, c.variant_conversions),
            ).significant
            for c in checkpoints
        ):
            naive_stops += 1

    assert sequential_stops / trials <= 0.065
    assert naive_stops > sequential_stops


# =============================================================================
# Bucketing
# =============================================================================

def test_stable_bucket_is_deterministic() -> None:
    assert stable_bucket("exp-1", "visitor-42") == stable_bucket("exp-1", "visitor-42")
    assert 0 <= stable_bucket("exp-1", "visitor-42") < 100


def test_bucket_distribution_follows_allocation() -> None:
    """Chi-square goodness of fit of a 50/30/20 split over 100k sessions."""
    variants = [
        SimpleNamespace(name="a", traffic_allocation=50),
        SimpleNamespace(name="b", traffic_allocation=30),
        SimpleNamespace(name="c", traffic_allocation=20),
    ]
    sessions = 100_000
    counts = Counter(
        pick_variant(variants, stable_bucket("exp-chi", f"session-{i}")).name for i in range(sessions)
    )

    chi_square = sum(
        (counts[v.name] - sessions * v.traffic_allocation / 100) ** 2 / (sessions * v.traffic_allocation / 100)
        for v in variants
    )
    # Critical value for 2 degrees of freedom at p = 0.001
    assert chi_square < 13.816


def test_zero_allocation_variant_never_picked() -> None:
    variants = [
        SimpleNamespace(name="a", traffic_allocation=0),
        SimpleNamespace(name="b", traffic_allocation=100),
    ]
    assert {pick_variant(variants, bucket).name for bucket in range(100)} == {"b"}
