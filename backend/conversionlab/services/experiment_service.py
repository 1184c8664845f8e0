"""Experiment engine service.

WHAT:
    A/B test lifecycle, deterministic variant assignment, conversion recording
    and on-demand scoring (significance, power, sample size, sequential looks).

WHY:
    Assignment must be sticky and identical across concurrent callers without
    a lock. The bucket is a pure function of (experiment_id, session_id); the
    first persisted assignment row wins and is returned from then on, so a
    session keeps its variant even if two requests race.

STATE MACHINE:
    draft --start--> running --pause--> paused --resume/start--> running
    running/paused --stop--> completed (terminal)

    Transitions are conditional UPDATEs (WHERE status IN ...), so concurrent
    transitions are serialized by the row.

REFERENCES:
    - conversionlab/services/statistics.py
    - conversionlab/routers/experiments.py
    - conversionlab/tests/test_experiment_service.py
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..deps import Settings, get_settings
from ..event_schema import utcnow
from ..exceptions import (
    AssignmentNotFoundError,
    InvalidState,
    NotFoundError,
    NotRunning,
    ValidationError,
)
from ..models import (
    ConversionGoal,
    Experiment,
    ExperimentEvent,
    ExperimentEventTypeEnum,
    ExperimentStatusEnum,
    Variant,
)
from . import statistics
from .statistics import Checkpoint, SignificanceResult, VariantCounts

logger = logging.getLogger(__name__)

BUCKETS = 100


# =============================================================================
# INPUT / RESULT TYPES
# =============================================================================

@dataclass
class VariantSpec:
    name: str
    short_code: str
    traffic_allocation: int
    is_control: bool = False


@dataclass
class VariantStats:
    variant_id: UUID
    name: str
    short_code: str
    is_control: bool
    traffic_allocation: int
    sessions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    significance: Optional[SignificanceResult] = None

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.sessions if self.sessions else 0.0

    @property
    def average_value(self) -> float:
        return self.revenue / self.conversions if self.conversions else 0.0

    def counts(self) -> VariantCounts:
        return VariantCounts(self.sessions, self.conversions, self.name)


@dataclass
class ExperimentResults:
    experiment_id: UUID
    name: str
    status: str
    confidence: float
    sample_size: int
    variants: List[VariantStats]
    significant: bool
    winner: Optional[str]
    recommendation: str

    @property
    def total_sessions(self) -> int:
        return sum(v.sessions for v in self.variants)

    @property
    def total_conversions(self) -> int:
        return sum(v.conversions for v in self.variants)

    @property
    def overall_rate(self) -> float:
        return self.total_conversions / self.total_sessions if self.total_sessions else 0.0

    @property
    def control(self) -> Optional[VariantStats]:
        return next((v for v in self.variants if v.is_control), None)

    @property
    def best_challenger(self) -> Optional[VariantStats]:
        challengers = [v for v in self.variants if not v.is_control]
        if not challengers:
            return None
        return max(challengers, key=lambda v: v.conversion_rate)


@dataclass
class SampleSizeRecommendation:
    per_variant_n: int
    total_n: int
    variants: int
    baseline_rate: float
    baseline_source: str  # "observed", "default" or "input"
    min_effect: float
    confidence: float
    power: float
    daily_sessions: float
    estimated_duration_days: int
    duration_low_traffic_days: int
    duration_high_traffic_days: int
    assumptions: List[str] = field(default_factory=list)


@dataclass
class PowerAnalysis:
    current_power: float
    observed_effect: Optional[float]
    minimum_detectable_effect: float
    power_curve: Dict[str, float]
    control: VariantStats
    variant: VariantStats
    confidence: float


# =============================================================================
# PURE HELPERS
# =============================================================================

def stable_bucket(experiment_id: Any, session_id: str) -> int:
    """Bucket in [0, 100) from SHA-256 of "experiment_id:session_id"."""
    digest = hashlib.sha256(f"{experiment_id}:{session_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % BUCKETS


def pick_variant(variants: Sequence[Any], bucket: int):
    """Walk variants in their stable order, accumulating allocation ranges."""
    cumulative = 0
    for variant in variants:
        cumulative += variant.traffic_allocation
        if bucket < cumulative:
            return variant
    raise InvalidState("Traffic allocations do not cover every bucket")


def _coerce_variant(raw: Any) -> VariantSpec:
    if isinstance(raw, VariantSpec):
        return raw
    if isinstance(raw, dict):
        data = raw
    else:
        data = {
            "name": getattr(raw, "name", None),
            "short_code": getattr(raw, "short_code", None),
            "traffic_allocation": getattr(raw, "traffic_allocation", None),
            "is_control": getattr(raw, "is_control", False),
        }
    return VariantSpec(
        name=(data.get("name") or "").strip(),
        short_code=(data.get("short_code") or "").strip(),
        traffic_allocation=data.get("traffic_allocation"),
        is_control=bool(data.get("is_control", False)),
    )


def validate_variants(variants: Iterable[Any]) -> List[VariantSpec]:
    """Check a variant set: >=2 variants, allocations sum to 100, one control,
    unique names and short codes.

    Raises:
        ValidationError: On the first violated rule
    """
    specs = [_coerce_variant(v) for v in variants]

    if len(specs) < 2:
        raise ValidationError("An experiment needs at least 2 variants", field="variants")

    for spec in specs:
        if not spec.name:
            raise ValidationError("Variant name is required", field="variants")
        if not spec.short_code:
            raise ValidationError(f"Variant '{spec.name}' needs a short_code", field="variants")
        allocation = spec.traffic_allocation
        if isinstance(allocation, bool) or not isinstance(allocation, int) or not 0 <= allocation <= 100:
            raise ValidationError(
                f"Variant '{spec.name}' traffic_allocation must be an integer between 0 and 100",
                field="variants",
            )

    total = sum(spec.traffic_allocation for spec in specs)
    if total != 100:
        raise ValidationError(f"Traffic allocations must sum to 100, got {total}", field="variants")

    controls = sum(1 for spec in specs if spec.is_control)
    if controls != 1:
        raise ValidationError(f"Exactly one control variant is required, got {controls}", field="variants")

    names = [spec.name for spec in specs]
    if len(set(names)) != len(names):
        raise ValidationError("Variant names must be unique", field="variants")
    codes = [spec.short_code for spec in specs]
    if len(set(codes)) != len(codes):
        raise ValidationError("Variant short codes must be unique", field="variants")

    return specs


def sample_size_recommendation(
    baseline_rate: float,
    min_effect: float,
    confidence: float = 95.0,
    power: float = 80.0,
    variants: int = 2,
    daily_sessions: float = 1000.0,
    baseline_source: str = "input",
) -> SampleSizeRecommendation:
    """Per-variant sample size plus duration estimates at +/-20% traffic."""
    per_variant = statistics.recommend_sample_size(baseline_rate, min_effect, confidence, power)
    assumptions = list(statistics.SAMPLE_SIZE_ASSUMPTIONS)
    if variants != 2:
        assumptions[0] = f"Equal traffic split across {variants} variants"

    return SampleSizeRecommendation(
        per_variant_n=per_variant,
        total_n=per_variant * variants,
        variants=variants,
        baseline_rate=baseline_rate,
        baseline_source=baseline_source,
        min_effect=min_effect,
        confidence=confidence,
        power=power,
        daily_sessions=daily_sessions,
        estimated_duration_days=statistics.estimate_test_duration(per_variant, variants, daily_sessions),
        duration_low_traffic_days=statistics.estimate_test_duration(per_variant, variants, daily_sessions * 0.8),
        duration_high_traffic_days=statistics.estimate_test_duration(per_variant, variants, daily_sessions * 1.2),
        assumptions=assumptions,
    )


# =============================================================================
# SERVICE
# =============================================================================

class ExperimentService:
    """Experiment lifecycle, assignment and scoring over one session."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_experiment(self, experiment_id: UUID, owner_id: Optional[str] = None) -> Experiment:
        query = self.db.query(Experiment).filter(Experiment.id == experiment_id)
        if owner_id is not None:
            query = query.filter(Experiment.owner_id == owner_id)
        experiment = query.first()
        if not experiment:
            raise NotFoundError("experiment", experiment_id)
        return experiment

    def list_experiments(self, owner_id: str, status: Optional[str] = None) -> List[Experiment]:
        query = self.db.query(Experiment).filter(Experiment.owner_id == owner_id)
        if status:
            query = query.filter(Experiment.status == ExperimentStatusEnum(status))
        return query.order_by(Experiment.created_at.desc()).all()

    def _variants(self, experiment_id: UUID) -> List[Variant]:
        return (
            self.db.query(Variant)
            .filter(Variant.experiment_id == experiment_id)
            .order_by(Variant.position, Variant.created_at)
            .all()
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def create_experiment(
        self,
        owner_id: str,
        name: str,
        variants: Iterable[Any],
        experiment_type: str = "ab",
        conversion_goal_id: Optional[UUID] = None,
        sample_size: int = 1000,
        confidence: Optional[float] = None,
        description: Optional[str] = None,
    ) -> Experiment:
        """Validate everything, then write the experiment and its variants in one commit."""
        if not name or not name.strip():
            raise ValidationError("Experiment name is required", field="name")
        confidence = self.settings.DEFAULT_CONFIDENCE if confidence is None else confidence
        if not 0 < confidence < 100:
            raise ValidationError("confidence must be between 0 and 100", field="confidence")
        if sample_size < 1:
            raise ValidationError("sample_size must be at least 1", field="sample_size")
        specs = validate_variants(variants)

        if conversion_goal_id is not None:
            goal = self.db.query(ConversionGoal).filter(ConversionGoal.id == conversion_goal_id).first()
            if not goal:
                raise NotFoundError("conversion_goal", conversion_goal_id)

        experiment = Experiment(
            owner_id=owner_id,
            name=name.strip(),
            experiment_type=experiment_type or "ab",
            description=description,
            status=ExperimentStatusEnum.draft,
            sample_size=sample_size,
            confidence=confidence,
            conversion_goal_id=conversion_goal_id,
        )
        experiment.variants = [
            Variant(
                name=spec.name,
                short_code=spec.short_code,
                traffic_allocation=spec.traffic_allocation,
                is_control=spec.is_control,
                position=index,
            )
            for index, spec in enumerate(specs)
        ]
        self.db.add(experiment)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(experiment)

        logger.info(
            "[EXPERIMENT] Created experiment",
            extra={"experiment_id": str(experiment.id), "owner_id": owner_id, "variants": len(specs)},
        )
        return experiment

    def update_variants(self, experiment_id: UUID, variants: Iterable[Any], owner_id: Optional[str] = None) -> Experiment:
        """Replace the variant set of a draft experiment.

        Raises:
            InvalidState: Once the experiment has started, since edits would
                break assignment stickiness
        """
        experiment = self.get_experiment(experiment_id, owner_id)
        if experiment.status != ExperimentStatusEnum.draft:
            raise InvalidState(
                f"Variants can only be edited while the experiment is draft (status: {experiment.status.value})",
                current_status=experiment.status.value,
            )
        specs = validate_variants(variants)

        try:
            self.db.query(Variant).filter(Variant.experiment_id == experiment.id).delete(synchronize_session=False)
            self.db.flush()
            self.db.expire(experiment, ["variants"])
            for index, spec in enumerate(specs):
                self.db.add(Variant(
                    experiment_id=experiment.id,
                    name=spec.name,
                    short_code=spec.short_code,
                    traffic_allocation=spec.traffic_allocation,
                    is_control=spec.is_control,
                    position=index,
                ))
            experiment.updated_at = utcnow()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(experiment)

        logger.info("[EXPERIMENT] Replaced variants for %s (%d variants)", experiment.id, len(specs))
        return experiment

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(
        self,
        experiment: Experiment,
        allowed_from: Sequence[ExperimentStatusEnum],
        to_status: ExperimentStatusEnum,
        action: str,
        extra_values: Optional[Dict[Any, Any]] = None,
    ) -> Experiment:
        if experiment.status not in allowed_from:
            raise InvalidState(
                f"Cannot {action} an experiment that is {experiment.status.value}",
                current_status=experiment.status.value,
            )

        values = {Experiment.status: to_status, Experiment.updated_at: utcnow()}
        values.update(extra_values or {})
        updated = (
            self.db.query(Experiment)
            .filter(Experiment.id == experiment.id, Experiment.status.in_(list(allowed_from)))
            .update(values, synchronize_session=False)
        )
        if not updated:
            # Another writer moved the row first
            self.db.rollback()
            self.db.refresh(experiment)
            raise InvalidState(
                f"Cannot {action} an experiment that is {experiment.status.value}",
                current_status=experiment.status.value,
            )
        self.db.commit()
        self.db.refresh(experiment)

        logger.info(
            "[EXPERIMENT] %s -> %s",
            experiment.id, to_status.value,
            extra={"experiment_id": str(experiment.id), "action": action},
        )
        return experiment

    def start_experiment(self, experiment_id: UUID, owner_id: Optional[str] = None) -> Experiment:
        experiment = self.get_experiment(experiment_id, owner_id)
        if experiment.status not in (ExperimentStatusEnum.draft, ExperimentStatusEnum.paused):
            raise InvalidState(
                f"Cannot start an experiment that is {experiment.status.value}",
                current_status=experiment.status.value,
            )
        try:
            validate_variants(self._variants(experiment.id))
        except ValidationError as e:
            raise InvalidState(f"Invalid variant configuration: {e.message}", current_status=experiment.status.value)

        extra = {}
        if experiment.started_at is None:
            extra[Experiment.started_at] = utcnow()
        return self._transition(
            experiment,
            (ExperimentStatusEnum.draft, ExperimentStatusEnum.paused),
            ExperimentStatusEnum.running,
            "start",
            extra,
        )

    def pause_experiment(self, experiment_id: UUID, owner_id: Optional[str] = None) -> Experiment:
        experiment = self.get_experiment(experiment_id, owner_id)
        return self._transition(
            experiment, (ExperimentStatusEnum.running,), ExperimentStatusEnum.paused, "pause"
        )

    def resume_experiment(self, experiment_id: UUID, owner_id: Optional[str] = None) -> Experiment:
        experiment = self.get_experiment(experiment_id, owner_id)
        return self._transition(
            experiment, (ExperimentStatusEnum.paused,), ExperimentStatusEnum.running, "resume"
        )

    def stop_experiment(self, experiment_id: UUID, owner_id: Optional[str] = None) -> Experiment:
        """Complete the experiment and record the winner, if any. Events are kept."""
        experiment = self.get_experiment(experiment_id, owner_id)
        winner = None
        if experiment.status in (ExperimentStatusEnum.running, ExperimentStatusEnum.paused):
            winner = self.get_results(experiment.id).winner
        return self._transition(
            experiment,
            (ExperimentStatusEnum.running, ExperimentStatusEnum.paused),
            ExperimentStatusEnum.completed,
            "stop",
            {Experiment.ended_at: utcnow(), Experiment.winner: winner},
        )

    # ------------------------------------------------------------------
    # Assignment and conversions
    # ------------------------------------------------------------------

    def _require_running(self, experiment_id: UUID) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatusEnum.running:
            raise NotRunning(experiment_id, experiment.status.value)
        return experiment

    def _assignment(self, experiment_id: UUID, session_id: str) -> Optional[ExperimentEvent]:
        return (
            self.db.query(ExperimentEvent)
            .filter(
                ExperimentEvent.experiment_id == experiment_id,
                ExperimentEvent.session_id == session_id,
                ExperimentEvent.event_type == ExperimentEventTypeEnum.assignment,
            )
            .first()
        )

    def assign_variant(self, experiment_id: UUID, session_id: str) -> Variant:
        """Deterministic, sticky variant for a session.

        Raises:
            ValidationError: Empty session id
            NotFoundError: Unknown experiment
            NotRunning: Experiment is not running
        """
        if not session_id or not session_id.strip():
            raise ValidationError("session_id is required", field="session_id")
        experiment = self._require_running(experiment_id)

        existing = self._assignment(experiment.id, session_id)
        if existing:
            return existing.variant

        variant = pick_variant(self._variants(experiment.id), stable_bucket(experiment.id, session_id))
        event = ExperimentEvent(
            experiment_id=experiment.id,
            variant_id=variant.id,
            session_id=session_id,
            event_type=ExperimentEventTypeEnum.assignment,
            conversion_value=0.0,
            timestamp=utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(event)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._assignment(experiment.id, session_id)
            if existing is None:
                raise
            logger.info("[EXPERIMENT] Concurrent assignment for session %s resolved to stored variant", session_id)
            return existing.variant

        logger.debug("[EXPERIMENT] Assigned %s to %s in %s", session_id, variant.name, experiment.id)
        return variant

    def record_conversion(
        self,
        experiment_id: UUID,
        variant_id: UUID,
        session_id: str,
        value: float = 0.0,
    ) -> bool:
        """Record a session's conversion once.

        Returns:
            True if recorded now, False if the session had already converted

        Raises:
            NotFoundError: Unknown experiment or variant
            AssignmentNotFoundError: Session was never assigned
            ValidationError: Variant differs from the session's assignment
            NotRunning: Experiment is not running
        """
        if not session_id or not session_id.strip():
            raise ValidationError("session_id is required", field="session_id")
        if value is not None and value < 0:
            raise ValidationError("Conversion value cannot be negative", field="value")
        experiment = self._require_running(experiment_id)

        variant = (
            self.db.query(Variant)
            .filter(Variant.id == variant_id, Variant.experiment_id == experiment.id)
            .first()
        )
        if not variant:
            raise NotFoundError("variant", variant_id)

        assignment = self._assignment(experiment.id, session_id)
        if not assignment:
            raise AssignmentNotFoundError(experiment.id, session_id)
        if assignment.variant_id != variant.id:
            raise ValidationError(
                f"Session {session_id} is assigned to a different variant",
                field="variant_id",
            )

        event = ExperimentEvent(
            experiment_id=experiment.id,
            variant_id=variant.id,
            session_id=session_id,
            event_type=ExperimentEventTypeEnum.conversion,
            conversion_value=value or 0.0,
            timestamp=utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(event)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug("[EXPERIMENT] Duplicate conversion for %s ignored", session_id)
            return False

        logger.info(
            "[EXPERIMENT] Recorded conversion",
            extra={"experiment_id": str(experiment.id), "variant": variant.name, "value": value},
        )
        return True

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _variant_stats(self, experiment: Experiment) -> List[VariantStats]:
        stats = {
            v.id: VariantStats(
                variant_id=v.id,
                name=v.name,
                short_code=v.short_code,
                is_control=v.is_control,
                traffic_allocation=v.traffic_allocation,
            )
            for v in self._variants(experiment.id)
        }
        rows = (
            self.db.query(
                ExperimentEvent.variant_id,
                ExperimentEvent.event_type,
                func.count(ExperimentEvent.id),
                func.coalesce(func.sum(ExperimentEvent.conversion_value), 0),
            )
            .filter(ExperimentEvent.experiment_id == experiment.id)
            .group_by(ExperimentEvent.variant_id, ExperimentEvent.event_type)
            .all()
        )
        for variant_id, event_type, count, total in rows:
            entry = stats.get(variant_id)
            if entry is None:
                continue
            if event_type == ExperimentEventTypeEnum.assignment:
                entry.sessions = int(count)
            else:
                entry.conversions = int(count)
                entry.revenue = float(total)
        return list(stats.values())

    def get_results(self, experiment_id: UUID, owner_id: Optional[str] = None) -> ExperimentResults:
        """Per-variant stats with a significance test of each variant vs control."""
        experiment = self.get_experiment(experiment_id, owner_id)
        variants = self._variant_stats(experiment)
        control = next((v for v in variants if v.is_control), None)

        if control is not None:
            for variant in variants:
                if variant.is_control:
                    continue
                variant.significance = statistics.evaluate_significance(
                    control.counts(), variant.counts(), experiment.confidence
                )

        challengers = [v for v in variants if not v.is_control and v.significance is not None]
        significant = any(v.significance.significant for v in challengers)
        winning = [
            v for v in challengers
            if v.significance.significant and v.conversion_rate > control.conversion_rate
        ]

        winner = None
        if winning:
            winner = max(winning, key=lambda v: v.conversion_rate).name
        elif challengers and all(
            v.significance.significant and v.conversion_rate < control.conversion_rate for v in challengers
        ):
            winner = control.name

        results = ExperimentResults(
            experiment_id=experiment.id,
            name=experiment.name,
            status=experiment.status.value,
            confidence=experiment.confidence,
            sample_size=experiment.sample_size,
            variants=variants,
            significant=significant,
            winner=winner,
            recommendation="",
        )
        results.recommendation = self._recommendation(results)
        return results

    def _recommendation(self, results: ExperimentResults) -> str:
        if results.winner:
            winner = next(v for v in results.variants if v.name == results.winner)
            if winner.is_control:
                return f"Control '{winner.name}' significantly outperforms every variant. Keep the control."
            lift = winner.significance.improvement if winner.significance else None
            lift_text = f" ({lift:+.1%} vs control)" if lift is not None else ""
            return f"Variant '{winner.name}' is a significant winner{lift_text}. Consider rolling it out."

        smallest = min((v.sessions for v in results.variants), default=0)
        if smallest < results.sample_size:
            progress = smallest / results.sample_size if results.sample_size else 0.0
            return f"Keep running: {progress:.0%} of the target sample per variant collected."
        return "No significant difference detected at the target sample size."

    def recommend_sample_size(
        self,
        experiment_id: UUID,
        min_effect: float,
        power: Optional[float] = None,
        owner_id: Optional[str] = None,
    ) -> SampleSizeRecommendation:
        """Sample size from the experiment's observed control rate and confidence."""
        experiment = self.get_experiment(experiment_id, owner_id)
        results = self.get_results(experiment.id)
        control = results.control

        baseline_source = "observed"
        baseline = control.conversion_rate if control else 0.0
        if not 0.0 < baseline < 1.0:
            baseline = self.settings.DEFAULT_BASELINE_RATE
            baseline_source = "default"

        daily_sessions = float(self.settings.DEFAULT_DAILY_SESSIONS)
        if experiment.started_at and results.total_sessions:
            elapsed_days = max((utcnow() - experiment.started_at) / timedelta(days=1), 1.0)
            daily_sessions = results.total_sessions / elapsed_days

        return sample_size_recommendation(
            baseline_rate=baseline,
            min_effect=min_effect,
            confidence=experiment.confidence,
            power=self.settings.DEFAULT_POWER if power is None else power,
            variants=len(results.variants),
            daily_sessions=daily_sessions,
            baseline_source=baseline_source,
        )

    def power_analysis(self, experiment_id: UUID, owner_id: Optional[str] = None) -> PowerAnalysis:
        """Current power of control vs the best-performing variant."""
        experiment = self.get_experiment(experiment_id, owner_id)
        results = self.get_results(experiment.id)
        control, best = results.control, results.best_challenger
        if control is None or best is None:
            raise ValidationError("Power analysis needs a control and at least one variant")

        observed_effect = None
        if control.conversion_rate > 0:
            observed_effect = (best.conversion_rate - control.conversion_rate) / control.conversion_rate

        return PowerAnalysis(
            current_power=statistics.calculate_power(
                control.conversion_rate, best.conversion_rate,
                control.sessions, best.sessions, experiment.confidence,
            ),
            observed_effect=observed_effect,
            minimum_detectable_effect=statistics.minimum_detectable_effect(
                min(control.sessions, best.sessions),
                control.conversion_rate,
                experiment.confidence,
                self.settings.DEFAULT_POWER,
            ),
            power_curve=statistics.power_curve(
                control.conversion_rate, control.sessions, best.sessions, experiment.confidence
            ),
            control=control,
            variant=best,
            confidence=experiment.confidence,
        )

    def daily_checkpoints(self, experiment_id: UUID, control_id: UUID, variant_id: UUID) -> List[Checkpoint]:
        """Cumulative control/variant counts at the end of each day with events."""
        day = func.date(ExperimentEvent.timestamp)
        rows = (
            self.db.query(day, ExperimentEvent.variant_id, ExperimentEvent.event_type, func.count(ExperimentEvent.id))
            .filter(
                ExperimentEvent.experiment_id == experiment_id,
                ExperimentEvent.variant_id.in_([control_id, variant_id]),
            )
            .group_by(day, ExperimentEvent.variant_id, ExperimentEvent.event_type)
            .all()
        )

        per_day: Dict[str, Dict[str, int]] = {}
        for row_day, row_variant, event_type, count in rows:
            arm = "control" if row_variant == control_id else "variant"
            kind = "sessions" if event_type == ExperimentEventTypeEnum.assignment else "conversions"
            bucket = per_day.setdefault(str(row_day), {})
            bucket[f"{arm}_{kind}"] = bucket.get(f"{arm}_{kind}", 0) + int(count)

        checkpoints: List[Checkpoint] = []
        running = {"control_sessions": 0, "control_conversions": 0, "variant_sessions": 0, "variant_conversions": 0}
        for label in sorted(per_day):
            for key, count in per_day[label].items():
                running[key] += count
            checkpoints.append(Checkpoint(label=label, **running))
        return checkpoints

    def sequential_analysis(self, experiment_id: UUID, owner_id: Optional[str] = None) -> statistics.SequentialTestResult:
        """Sequential test of control vs the best variant, one look per day."""
        experiment = self.get_experiment(experiment_id, owner_id)
        results = self.get_results(experiment.id)
        control, best = results.control, results.best_challenger
        if control is None or best is None:
            raise ValidationError("Sequential analysis needs a control and at least one variant")

        checkpoints = self.daily_checkpoints(experiment.id, control.variant_id, best.variant_id)
        return statistics.sequential_test(checkpoints, experiment.sample_size, experiment.confidence)
