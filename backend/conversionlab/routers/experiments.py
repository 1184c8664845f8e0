"""Experiment endpoints.

WHAT:
    - Experiment configuration and lifecycle (owner scoped)
    - Variant assignment and conversion recording (visitor traffic)
    - Results, power analysis, sequential analysis, sample-size advice
    - A stateless sample-size calculator

WHY:
    Thin HTTP layer over ExperimentService. Engine errors propagate to the
    EngineError handler registered in main.create_app.

REFERENCES:
    - conversionlab/services/experiment_service.py
    - conversionlab/services/statistics.py
"""

import logging
import math
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_owner_id, get_session_id, get_settings
from ..exceptions import ValidationError
from ..models import ExperimentStatusEnum
from ..services.experiment_service import (
    ExperimentResults,
    ExperimentService,
    SampleSizeRecommendation,
    sample_size_recommendation,
)
from ..services.statistics import SequentialTestResult
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/experiments",
    tags=["Experiments"],
)


def get_experiment_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ExperimentService:
    return ExperimentService(db, settings)


# =============================================================================
# RESPONSE MAPPING
# =============================================================================

def results_to_schema(results: ExperimentResults) -> schemas.ExperimentResultsOut:
    return schemas.ExperimentResultsOut(
        experiment_id=results.experiment_id,
        name=results.name,
        status=results.status,
        confidence=results.confidence,
        sample_size=results.sample_size,
        per_variant_stats=[
            schemas.VariantStatsOut.model_validate(v, from_attributes=True) for v in results.variants
        ],
        total_sessions=results.total_sessions,
        total_conversions=results.total_conversions,
        overall_conversion_rate=results.overall_rate,
        significant=results.significant,
        winner=results.winner,
        recommendation=results.recommendation,
    )


def _sample_size_to_schema(rec: SampleSizeRecommendation) -> schemas.SampleSizeOut:
    return schemas.SampleSizeOut(
        per_variant_n=rec.per_variant_n,
        total_n=rec.total_n,
        variants=rec.variants,
        baseline_rate=rec.baseline_rate,
        baseline_source=rec.baseline_source,
        min_effect=rec.min_effect,
        confidence=rec.confidence,
        power=rec.power,
        daily_sessions=rec.daily_sessions,
        estimated_duration=schemas.DurationEstimate(
            days=rec.estimated_duration_days,
            low_traffic_days=rec.duration_low_traffic_days,
            high_traffic_days=rec.duration_high_traffic_days,
        ),
        assumptions=rec.assumptions,
    )


def _sequential_to_schema(result: SequentialTestResult) -> schemas.SequentialTestOut:
    return schemas.SequentialTestOut(
        can_stop_early=result.can_stop_early,
        current_power=result.current_power,
        recommendation=result.recommendation,
        decision=result.decision,
        information_fraction=result.information_fraction,
        alpha=result.alpha,
        looks=[
            schemas.SequentialLookOut(
                label=look.label,
                information_fraction=look.information_fraction,
                z_score=look.z_score,
                # JSON has no infinity
                boundary=None if math.isinf(look.boundary) else look.boundary,
                alpha_spent=look.alpha_spent,
                crossed=look.crossed,
            )
            for look in result.looks
        ],
    )


def _require_session(body_session: Optional[str], header_session: Optional[str]) -> str:
    session_id = (body_session or "").strip() or header_session
    if not session_id:
        raise ValidationError("session_id is required (body or X-Session-Id header)", field="session_id")
    return session_id


# =============================================================================
# STATELESS CALCULATOR
# =============================================================================

@router.get("/sample-size", response_model=schemas.SampleSizeOut)
def calculate_sample_size(
    baseline_rate: float = Query(0.1, gt=0, lt=1, description="Control conversion rate"),
    min_effect: float = Query(0.05, gt=0, description="Relative improvement to detect"),
    confidence: float = Query(95.0, gt=0, lt=100),
    power: float = Query(80.0, gt=0, lt=100),
    variants: int = Query(2, ge=2, le=20),
    daily_sessions: Optional[float] = Query(None, gt=0, description="Expected sessions per day across all variants"),
    settings: Settings = Depends(get_settings),
):
    """Sessions needed per variant, with duration estimates."""
    rec = sample_size_recommendation(
        baseline_rate=baseline_rate,
        min_effect=min_effect,
        confidence=confidence,
        power=power,
        variants=variants,
        daily_sessions=daily_sessions or float(settings.DEFAULT_DAILY_SESSIONS),
    )
    return _sample_size_to_schema(rec)


# =============================================================================
# CONFIGURATION AND LIFECYCLE
# =============================================================================

@router.post("", response_model=schemas.ExperimentOut, status_code=status.HTTP_201_CREATED)
def create_experiment(
    payload: schemas.ExperimentCreate,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    experiment = service.create_experiment(
        owner_id=owner_id,
        name=payload.name,
        variants=payload.variants,
        experiment_type=payload.experiment_type,
        conversion_goal_id=payload.conversion_goal_id,
        sample_size=payload.sample_size,
        confidence=payload.confidence,
        description=payload.description,
    )
    return experiment


@router.get("", response_model=List[schemas.ExperimentOut])
def list_experiments(
    status_filter: Optional[ExperimentStatusEnum] = Query(None, alias="status"),
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return service.list_experiments(owner_id, status_filter.value if status_filter else None)


@router.get("/{experiment_id}", response_model=schemas.ExperimentOut)
def get_experiment(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return service.get_experiment(experiment_id, owner_id)


@router.put("/{experiment_id}/variants", response_model=schemas.ExperimentOut)
def update_variants(
    experiment_id: UUID,
    payload: schemas.VariantsUpdate,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    """Replace variants. Only allowed while the experiment is draft."""
    return service.update_variants(experiment_id, payload.variants, owner_id)


@router.post("/{experiment_id}/start", response_model=schemas.ExperimentOut)
def start_experiment(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return service.start_experiment(experiment_id, owner_id)


@router.post("/{experiment_id}/pause", response_model=schemas.ExperimentOut)
def pause_experiment(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return service.pause_experiment(experiment_id, owner_id)


@router.post("/{experiment_id}/resume", response_model=schemas.ExperimentOut)
def resume_experiment(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return service.resume_experiment(experiment_id, owner_id)


@router.post("/{experiment_id}/stop", response_model=schemas.ExperimentOut)
def stop_experiment(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return service.stop_experiment(experiment_id, owner_id)


# =============================================================================
# VISITOR TRAFFIC
# =============================================================================

@router.post("/{experiment_id}/assign", response_model=schemas.AssignmentOut)
def assign_variant(
    experiment_id: UUID,
    payload: Optional[schemas.AssignRequest] = Body(None),
    header_session: Optional[str] = Depends(get_session_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    """Sticky variant for the session (same answer on every call)."""
    session_id = _require_session(payload.session_id if payload else None, header_session)
    variant = service.assign_variant(experiment_id, session_id)
    return schemas.AssignmentOut(
        experiment_id=experiment_id,
        session_id=session_id,
        variant_id=variant.id,
        variant_name=variant.name,
        short_code=variant.short_code,
    )


@router.post("/{experiment_id}/conversions", response_model=schemas.ExperimentConversionOut)
def record_conversion(
    experiment_id: UUID,
    payload: schemas.ExperimentConversionIn,
    header_session: Optional[str] = Depends(get_session_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    """Record a conversion once per session; repeats return recorded=false."""
    session_id = _require_session(payload.session_id, header_session)
    recorded = service.record_conversion(experiment_id, payload.variant_id, session_id, payload.value)
    return schemas.ExperimentConversionOut(recorded=recorded)


# =============================================================================
# SCORING
# =============================================================================

@router.get("/{experiment_id}/results", response_model=schemas.ExperimentResultsOut)
def get_results(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return results_to_schema(service.get_results(experiment_id, owner_id))


@router.get("/{experiment_id}/power", response_model=schemas.PowerAnalysisOut)
def get_power_analysis(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    analysis = service.power_analysis(experiment_id, owner_id)
    return schemas.PowerAnalysisOut(
        current_power=analysis.current_power,
        observed_effect=analysis.observed_effect,
        minimum_detectable_effect=analysis.minimum_detectable_effect,
        power_curve=analysis.power_curve,
        sample_sizes=schemas.ArmSummary(control=analysis.control.sessions, variant=analysis.variant.sessions),
        conversion_rates=schemas.ArmSummary(
            control=analysis.control.conversion_rate, variant=analysis.variant.conversion_rate
        ),
        confidence=analysis.confidence,
    )


@router.get("/{experiment_id}/sequential", response_model=schemas.SequentialTestOut)
def get_sequential_analysis(
    experiment_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    return _sequential_to_schema(service.sequential_analysis(experiment_id, owner_id))


@router.get("/{experiment_id}/sample-size", response_model=schemas.SampleSizeOut)
def get_experiment_sample_size(
    experiment_id: UUID,
    min_effect: float = Query(0.05, gt=0),
    power: Optional[float] = Query(None, gt=0, lt=100),
    owner_id: str = Depends(get_owner_id),
    service: ExperimentService = Depends(get_experiment_service),
):
    """Sample size based on the experiment's observed control rate."""
    return _sample_size_to_schema(service.recommend_sample_size(experiment_id, min_effect, power, owner_id))
