"""Experiment statistics (pure functions).

WHAT:
    Sample-size recommendation, statistical power, two-proportion
    significance testing, confidence intervals, effect sizes and a
    group-sequential test for repeated looks at a running experiment.

WHY:
    Both the experiment engine and the stateless calculator endpoints need the
    same math. Keeping it free of sessions, models and FastAPI lets it be unit
    tested in isolation (see tests_unit/test_statistics.py).

REFERENCES:
    - scipy.stats.norm (normal CDF, survival function and quantile)
    - Cohen, "Statistical Power Analysis for the Behavioral Sciences" (effect size h)
    - Lan & DeMets (1983), "Discrete sequential boundaries for clinical trials"
    - conversionlab/services/experiment_service.py (main consumer)

Conventions:
    - confidence and power are percentages in (0, 100)
    - rates are proportions in [0, 1]
    - degenerate inputs (n = 0, rate 0 or 1) return neutral numbers, never NaN
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from scipy import stats

from ..exceptions import InvalidParameter


# Relative effects used for power curves (1%, 2%, 5%, 10%, 15%, 20%)
DEFAULT_POWER_CURVE_EFFECTS: Tuple[float, ...] = (0.01, 0.02, 0.05, 0.10, 0.15, 0.20)


SAMPLE_SIZE_ASSUMPTIONS = [
    "50/50 traffic split between variants",
    "Two-sided test",
    "Normal approximation to binomial",
]


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class VariantCounts:
    """Observed sessions and conversions for one arm of an experiment."""
    sessions: int
    conversions: int
    name: Optional[str] = None

    @property
    def rate(self) -> float:
        if self.sessions <= 0:
            return 0.0
        return self.conversions / self.sessions


@dataclass
class SignificanceResult:
    """Outcome of a two-proportion z-test between control and variant."""
    z_score: float
    p_value: float
    significant: bool
    winner: Optional[str]
    control_rate: float
    variant_rate: float
    improvement: Optional[float]
    effect_size: float
    confidence: float
    confidence_interval: Tuple[float, float]


@dataclass
class Checkpoint:
    """Cumulative counts at one look of a sequential test."""
    control_sessions: int
    control_conversions: int
    variant_sessions: int
    variant_conversions: int
    label: Optional[str] = None


@dataclass
class SequentialLook:
    information_fraction: float
    z_score: float
    boundary: float
    alpha_spent: float
    crossed: bool
    label: Optional[str] = None


@dataclass
class SequentialTestResult:
    """Decision after evaluating all looks taken so far.

    decision is one of: continue, stop_efficacy, stop_no_difference
    """
    can_stop_early: bool
    current_power: float
    recommendation: str
    decision: str
    information_fraction: float
    alpha: float
    looks: List[SequentialLook] = field(default_factory=list)


# =============================================================================
# NORMAL DISTRIBUTION HELPERS
# =============================================================================

def normal_cdf(z: float) -> float:
    """Standard normal CDF."""
    return float(stats.norm.cdf(z))


def normal_upper_tail(z: float) -> float:
    """P(Z > z), accurate far into the tail."""
    return float(stats.norm.sf(z))


def _upper_tail_quantile(q: float) -> float:
    """z such that P(Z > z) = q; infinite when nothing is left to spend."""
    if q <= 0.0:
        return math.inf
    return float(stats.norm.isf(q))


def normal_inverse(p: float) -> float:
    """Quantile of the standard normal distribution.

    Raises:
        InvalidParameter: If p is not strictly between 0 and 1
    """
    if not 0.0 < p < 1.0:
        raise InvalidParameter(f"Probability must be between 0 and 1, got {p}", field="p")
    return float(stats.norm.ppf(p))


def critical_value(confidence: float) -> float:
    """Two-tailed critical z for a confidence percentage (95 -> ~1.96)."""
    alpha = 1.0 - confidence / 100.0
    return normal_inverse(1.0 - alpha / 2.0)


def half_life_decay(age_seconds: float, half_life_seconds: float) -> float:
    """Exponential decay factor 2^(-age / half_life).

    Negative ages (touchpoints stamped after the conversion) count as zero.
    """
    if half_life_seconds <= 0:
        raise InvalidParameter("Half-life must be positive", field="half_life")
    return math.pow(2.0, -max(age_seconds, 0.0) / half_life_seconds)


def _check_percentage(value: float, name: str) -> None:
    if not 0.0 < value < 100.0:
        raise InvalidParameter(f"Invalid {name} level (must be between 0 and 100)", field=name)


# =============================================================================
# SAMPLE SIZE AND POWER
# =============================================================================

def recommend_sample_size(
    baseline_rate: float,
    min_effect: float,
    confidence: float = 95.0,
    power: float = 80.0,
) -> int:
    """Sessions needed per variant to detect a relative lift of min_effect.

    Two-proportion normal approximation with p2 = baseline * (1 + min_effect)
    capped at 0.99.

    Args:
        baseline_rate: Control conversion rate, strictly between 0 and 1
        min_effect: Relative improvement to detect (0.05 = +5%)
        confidence: Confidence level percentage
        power: Desired power percentage

    Raises:
        InvalidParameter: For any input outside its domain
    """
    if not 0.0 < baseline_rate < 1.0:
        raise InvalidParameter("Invalid baseline rate (must be between 0 and 1)", field="baseline_rate")
    if min_effect <= 0:
        raise InvalidParameter("Invalid minimum effect (must be positive)", field="min_effect")
    _check_percentage(confidence, "confidence")
    _check_percentage(power, "power")

    p1 = baseline_rate
    p2 = min(baseline_rate * (1.0 + min_effect), 0.99)
    if p2 <= p1:
        raise InvalidParameter(
            "Baseline rate is too high to detect a positive effect",
            field="baseline_rate",
        )

    z_alpha = critical_value(confidence)
    z_beta = normal_inverse(power / 100.0)
    pooled = (p1 + p2) / 2.0

    numerator = (
        z_alpha * math.sqrt(2.0 * pooled * (1.0 - pooled))
        + z_beta * math.sqrt(p1 * (1.0 - p1) + p2 * (1.0 - p2))
    ) ** 2
    denominator = (p2 - p1) ** 2
    return int(math.ceil(numerator / denominator))


def cohens_h(p1: float, p2: float) -> float:
    """Arcsine effect size between two proportions; 0 outside (0, 1)."""
    if not (0.0 < p1 < 1.0 and 0.0 < p2 < 1.0):
        return 0.0
    return 2.0 * math.asin(math.sqrt(p2)) - 2.0 * math.asin(math.sqrt(p1))


def calculate_power(
    p1: float,
    p2: float,
    n1: int,
    n2: int,
    confidence: float = 95.0,
) -> float:
    """Probability of detecting the difference between p1 and p2.

    Returns 0.0 instead of failing when rates are outside (0, 1), a sample
    size is not positive, or confidence is outside (0, 100).
    """
    if not (0.0 < p1 < 1.0 and 0.0 < p2 < 1.0):
        return 0.0
    if n1 <= 0 or n2 <= 0:
        return 0.0
    if not 0.0 < confidence < 100.0:
        return 0.0

    se = math.sqrt(1.0 / n1 + 1.0 / n2)
    delta = abs(cohens_h(p1, p2)) / se
    power = normal_cdf(delta - critical_value(confidence))
    return min(max(power, 0.0), 1.0)


def power_curve(
    baseline_rate: float,
    n1: int,
    n2: int,
    confidence: float = 95.0,
    effects: Iterable[float] = DEFAULT_POWER_CURVE_EFFECTS,
) -> Dict[str, float]:
    """Power at several relative effects, keyed like "5.0%".

    Effects that would push the variant rate to 1 or above are skipped.
    """
    curve: Dict[str, float] = {}
    for effect in effects:
        test_rate = baseline_rate * (1.0 + effect)
        if test_rate >= 1.0:
            continue
        curve[f"{effect * 100:.1f}%"] = calculate_power(baseline_rate, test_rate, n1, n2, confidence)
    return curve


def minimum_detectable_effect(
    n_per_variant: int,
    baseline_rate: float,
    confidence: float = 95.0,
    power: float = 80.0,
) -> float:
    """Smallest absolute rate difference detectable with the given sample."""
    if n_per_variant <= 0 or not 0.0 < baseline_rate < 1.0:
        return 0.0
    _check_percentage(confidence, "confidence")
    _check_percentage(power, "power")
    z_alpha = critical_value(confidence)
    z_beta = normal_inverse(power / 100.0)
    return (z_alpha + z_beta) * math.sqrt(2.0 * baseline_rate * (1.0 - baseline_rate) / n_per_variant)


def estimate_test_duration(
    sample_size_per_variant: int,
    variants: int,
    daily_sessions: float,
) -> int:
    """Whole days needed to collect the sample across all variants."""
    if daily_sessions <= 0 or sample_size_per_variant <= 0:
        return 0
    return int(math.ceil(sample_size_per_variant * max(variants, 1) / daily_sessions))


# =============================================================================
# SIGNIFICANCE
# =============================================================================

def confidence_interval(
    p1: float,
    p2: float,
    n1: int,
    n2: int,
    confidence: float = 95.0,
) -> Tuple[float, float]:
    """Unpooled Wald interval for p2 - p1."""
    if n1 <= 0 or n2 <= 0:
        return (0.0, 0.0)
    se = math.sqrt(p1 * (1.0 - p1) / n1 + p2 * (1.0 - p2) / n2)
    diff = p2 - p1
    margin = critical_value(confidence) * se
    return (diff - margin, diff + margin)


def two_proportion_z(control: VariantCounts, variant: VariantCounts) -> float:
    """Pooled two-proportion z statistic; 0 for degenerate input."""
    n1, n2 = control.sessions, variant.sessions
    if n1 <= 0 or n2 <= 0:
        return 0.0
    pooled = (control.conversions + variant.conversions) / (n1 + n2)
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n1 + 1.0 / n2))
    if se == 0:
        return 0.0
    return (variant.rate - control.rate) / se


def evaluate_significance(
    control: VariantCounts,
    variant: VariantCounts,
    confidence: float = 95.0,
) -> SignificanceResult:
    """Two-tailed two-proportion z-test of variant against control.

    significant is True when p < alpha; winner names the arm with the higher
    rate only when the difference is significant.
    """
    _check_percentage(confidence, "confidence")
    alpha = 1.0 - confidence / 100.0

    z = two_proportion_z(control, variant)
    p_value = min(1.0, 2.0 * normal_upper_tail(abs(z)))
    significant = p_value < alpha

    winner = None
    if significant:
        winner = variant.name if variant.rate > control.rate else control.name

    improvement = None
    if control.rate > 0:
        improvement = (variant.rate - control.rate) / control.rate

    return SignificanceResult(
        z_score=z,
        p_value=p_value,
        significant=significant,
        winner=winner,
        control_rate=control.rate,
        variant_rate=variant.rate,
        improvement=improvement,
        effect_size=cohens_h(control.rate, variant.rate),
        confidence=confidence,
        confidence_interval=confidence_interval(
            control.rate, variant.rate, control.sessions, variant.sessions, confidence
        ),
    )


# =============================================================================
# SEQUENTIAL TESTING
# =============================================================================

def obrien_fleming_spending(information_fraction: float, alpha: float) -> float:
    """Lan-DeMets O'Brien-Fleming-type cumulative alpha spent at t.

    alpha(t) = 2 - 2 * Phi(z_{1-alpha/2} / sqrt(t)), so alpha(1) = alpha and
    almost nothing is spent at early looks.
    """
    if information_fraction <= 0:
        return 0.0
    t = min(information_fraction, 1.0)
    z = _upper_tail_quantile(alpha / 2.0)
    return 2.0 * normal_upper_tail(z / math.sqrt(t))


def sequential_test(
    checkpoints: Sequence[Checkpoint],
    planned_sample_size: int,
    confidence: float = 95.0,
) -> SequentialTestResult:
    """Evaluate repeated looks with O'Brien-Fleming alpha spending.

    Each look spends only the increment alpha(t_k) - alpha(t_{k-1}) at a
    nominal two-sided boundary z_k = Phi^-1(1 - increment / 2). Summing the
    increments bounds the overall false-positive rate by alpha no matter how
    many looks are taken. Information fraction t is the smaller arm's
    sessions over the planned per-variant sample size.

    Args:
        checkpoints: Cumulative counts, oldest first
        planned_sample_size: Target sessions per variant
        confidence: Overall confidence level percentage
    """
    _check_percentage(confidence, "confidence")
    if planned_sample_size <= 0:
        raise InvalidParameter("Planned sample size must be positive", field="planned_sample_size")
    alpha = 1.0 - confidence / 100.0

    looks: List[SequentialLook] = []
    spent = 0.0
    previous_t = 0.0
    decision = "continue"

    for checkpoint in checkpoints:
        control = VariantCounts(checkpoint.control_sessions, checkpoint.control_conversions, "control")
        variant = VariantCounts(checkpoint.variant_sessions, checkpoint.variant_conversions, "variant")
        t = min(1.0, min(control.sessions, variant.sessions) / planned_sample_size)
        z = two_proportion_z(control, variant)

        increment = 0.0
        if t > previous_t:
            cumulative = obrien_fleming_spending(t, alpha)
            increment = max(cumulative - spent, 0.0)
            spent = cumulative
            previous_t = t
        boundary = _upper_tail_quantile(increment / 2.0) if increment > 0 else math.inf
        crossed = abs(z) >= boundary

        looks.append(SequentialLook(
            information_fraction=t,
            z_score=z,
            boundary=boundary,
            alpha_spent=spent,
            crossed=crossed,
            label=checkpoint.label,
        ))

        if crossed:
            decision = "stop_efficacy"
            break
        if t >= 1.0:
            decision = "stop_no_difference"
            break

    current_power = 0.0
    information = 0.0
    if looks:
        last = checkpoints[len(looks) - 1]
        information = looks[-1].information_fraction
        current_power = calculate_power(
            last.control_conversions / last.control_sessions if last.control_sessions else 0.0,
            last.variant_conversions / last.variant_sessions if last.variant_sessions else 0.0,
            last.control_sessions,
            last.variant_sessions,
            confidence,
        )

    if not looks:
        recommendation = "No data yet. Keep the experiment running."
    elif decision == "stop_efficacy":
        direction = "variant" if looks[-1].z_score > 0 else "control"
        recommendation = (
            f"Stop early: the {direction} crossed the sequential boundary "
            f"(|z|={abs(looks[-1].z_score):.2f} >= {looks[-1].boundary:.2f})."
        )
    elif decision == "stop_no_difference":
        recommendation = "Planned sample size reached without a significant difference. Stop the experiment."
    else:
        recommendation = (
            f"Continue: {information:.0%} of the planned sample collected and "
            f"no boundary crossed yet."
        )

    return SequentialTestResult(
        can_stop_early=decision == "stop_efficacy" and information < 1.0,
        current_power=current_power,
        recommendation=recommendation,
        decision=decision,
        information_fraction=information,
        alpha=alpha,
        looks=looks,
    )
