"""Multi-touch attribution weighting.

WHAT: Splits credit for one conversion across the touchpoints of its journey
WHY: Persistence and journey loading live in attribution_service; keeping the
     weighting pure lets every model be tested with plain datetimes
REFERENCES:
  - conversionlab/services/attribution_service.py: Uses these functions
  - conversionlab/services/statistics.py:half_life_decay: Time decay math
  - tests_unit/test_attribution_models.py: Unit tests

Models (journey T1..Tn, oldest first):
  - first_touch: T1 gets everything
  - last_touch: Tn gets everything
  - linear: 1/n each
  - time_decay: proportional to 2^(-age / half_life), age measured back from the conversion
  - position_based: 40% T1, 40% Tn, 20% shared by the middle (n=1 -> 1, n=2 -> 0.5/0.5)
  - data_driven: pluggable strategy, linear until one is configured
"""

import enum
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ..exceptions import ValidationError
from .statistics import half_life_decay


SECONDS_PER_DAY = 24 * 60 * 60

# first/last share for position_based journeys with 3+ touchpoints
POSITION_ENDPOINT_SHARE = 0.4


class AttributionModelEnum(str, enum.Enum):
    """Attribution model types."""
    first_touch = "first_touch"
    last_touch = "last_touch"
    linear = "linear"
    time_decay = "time_decay"
    position_based = "position_based"
    data_driven = "data_driven"


ALL_MODELS: List[AttributionModelEnum] = list(AttributionModelEnum)

# Strategy signature: (touch_times, conversion_time) -> weights summing to 1
DataDrivenStrategy = Callable[[Sequence[datetime], datetime], List[float]]


def parse_model(value) -> AttributionModelEnum:
    """Resolve a model name, rejecting anything unknown."""
    if isinstance(value, AttributionModelEnum):
        return value
    try:
        return AttributionModelEnum(value)
    except ValueError:
        allowed = ", ".join(m.value for m in AttributionModelEnum)
        raise ValidationError(f"Unknown attribution model '{value}' (expected one of: {allowed})", field="model")


def linear_weights(n: int) -> List[float]:
    if n <= 0:
        return []
    return [1.0 / n] * n


def position_based_weights(n: int) -> List[float]:
    if n <= 0:
        return []
    if n == 1:
        return [1.0]
    if n == 2:
        return [0.5, 0.5]
    middle = (1.0 - 2 * POSITION_ENDPOINT_SHARE) / (n - 2)
    return [POSITION_ENDPOINT_SHARE] + [middle] * (n - 2) + [POSITION_ENDPOINT_SHARE]


def time_decay_weights(
    touch_times: Sequence[datetime],
    conversion_time: datetime,
    half_life_days: float = 7.0,
) -> List[float]:
    """Exponential half-life weights, normalized to 1."""
    if not touch_times:
        return []
    half_life = half_life_days * SECONDS_PER_DAY
    raw = [
        half_life_decay((conversion_time - t).total_seconds(), half_life)
        for t in touch_times
    ]
    total = sum(raw)
    return [r / total for r in raw]


def compute_weights(
    model,
    touch_times: Sequence[datetime],
    conversion_time: datetime,
    half_life_days: float = 7.0,
    data_driven: Optional[DataDrivenStrategy] = None,
) -> List[float]:
    """Weights for each touchpoint under the given model.

    Args:
        model: AttributionModelEnum or its string value
        touch_times: Touchpoint timestamps in journey order
        conversion_time: When the conversion happened
        half_life_days: Time decay half-life
        data_driven: Optional strategy used for the data_driven model

    Returns:
        One weight per touchpoint, summing to 1 (empty journey -> [])
    """
    model = parse_model(model)
    n = len(touch_times)
    if n == 0:
        return []

    if model == AttributionModelEnum.first_touch:
        return [1.0] + [0.0] * (n - 1)
    if model == AttributionModelEnum.last_touch:
        return [0.0] * (n - 1) + [1.0]
    if model == AttributionModelEnum.linear:
        return linear_weights(n)
    if model == AttributionModelEnum.time_decay:
        return time_decay_weights(touch_times, conversion_time, half_life_days)
    if model == AttributionModelEnum.position_based:
        return position_based_weights(n)

    # data_driven
    if data_driven is None:
        return linear_weights(n)
    weights = list(data_driven(touch_times, conversion_time))
    if len(weights) != n:
        raise ValidationError(
            f"Data-driven strategy returned {len(weights)} weights for {n} touchpoints",
            field="model",
        )
    total = sum(weights)
    if total <= 0:
        return linear_weights(n)
    return [w / total for w in weights]


def allocate(weights: Sequence[float], value: float) -> List[float]:
    """Split value by weights; the last non-zero share absorbs float residue.

    Guarantees sum(result) == value exactly for any non-empty weights.
    """
    if not weights:
        return []
    values = [w * value for w in weights]
    anchor = max(i for i, w in enumerate(weights) if w > 0) if any(w > 0 for w in weights) else len(weights) - 1
    values[anchor] = value - sum(v for i, v in enumerate(values) if i != anchor)
    return values


def recommend_model(touchpoint_count: int, journey_days: float) -> AttributionModelEnum:
    """Pick the model that best explains a journey of this shape.

    One touch is all first touch; two touches split evenly; long journeys
    favor recency; everything else credits the opener and the closer.
    """
    if touchpoint_count <= 1:
        return AttributionModelEnum.first_touch
    if touchpoint_count == 2:
        return AttributionModelEnum.linear
    if journey_days > 7:
        return AttributionModelEnum.time_decay
    return AttributionModelEnum.position_based
