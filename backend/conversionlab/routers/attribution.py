"""Attribution endpoints.

WHAT:
    Provides API endpoints for:
    - Conversion journeys (touchpoints inside the attribution window)
    - Calculating and storing credit under one model
    - Per-conversion model comparison report
    - Channel (source/medium) attribution and cross-model comparison
    - Batch attribution of many conversions

WHY:
    Users need to see which channels get credit for a conversion and how
    that picture changes between models before trusting one of them.

REFERENCES:
    - conversionlab/services/attribution_service.py
    - conversionlab/services/reporting.py
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session, sessionmaker

from ..database import get_db, get_session_factory
from ..deps import Settings, get_owner_id, get_settings
from ..services.attribution_models import AttributionModelEnum
from ..services.attribution_service import AttributionService, ConversionJourney
from ..services.reporting import ReportingService
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/attribution",
    tags=["Attribution"],
)


def get_attribution_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> AttributionService:
    return AttributionService(db, settings)


def get_reporting_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> ReportingService:
    return ReportingService(session_factory, settings)


# =============================================================================
# RESPONSE MAPPING
# =============================================================================

def journey_to_schema(journey: ConversionJourney) -> schemas.JourneyOut:
    conversion = journey.conversion
    return schemas.JourneyOut(
        conversion_id=conversion.conversion_id,
        session_id=conversion.session_id,
        conversion_value=float(conversion.conversion_value or 0),
        conversion_time=conversion.conversion_time,
        attribution_window=journey.attribution_window,
        journey_minutes=journey.journey_minutes,
        truncated=journey.truncated,
        touchpoints=[schemas.TouchpointOut.model_validate(tp) for tp in journey.touchpoints],
    )


def _credits_to_schema(credits) -> List[schemas.TouchpointCreditOut]:
    return [schemas.TouchpointCreditOut.model_validate(c, from_attributes=True) for c in credits]


# =============================================================================
# CONVERSION-LEVEL ENDPOINTS
# =============================================================================

@router.get("/journeys/{conversion_id}", response_model=schemas.JourneyOut)
def get_journey(
    conversion_id: str,
    owner_id: str = Depends(get_owner_id),
    service: AttributionService = Depends(get_attribution_service),
):
    """Touchpoints that led to the conversion, oldest first."""
    return journey_to_schema(service.get_conversion_journey(conversion_id, owner_id))


@router.post("/conversions/{conversion_id}/calculate", response_model=List[schemas.TouchpointCreditOut])
def calculate_attribution(
    conversion_id: str,
    model: AttributionModelEnum = Query(AttributionModelEnum.last_touch),
    owner_id: str = Depends(get_owner_id),
    service: AttributionService = Depends(get_attribution_service),
):
    """Compute and store credit for one model (replaces earlier credit for that model)."""
    credits = service.calculate_attribution(conversion_id, model, owner_id)
    logger.info("[ATTRIBUTION] %s credited with %s (%d touchpoints)", conversion_id, model.value, len(credits))
    return _credits_to_schema(credits)


@router.get("/conversions/{conversion_id}/report", response_model=schemas.AttributionReportOut)
def get_attribution_report(
    conversion_id: str,
    owner_id: str = Depends(get_owner_id),
    service: AttributionService = Depends(get_attribution_service),
):
    """Credit under every model, side by side, with a recommended model."""
    report = service.get_attribution_report(conversion_id, owner_id)
    return schemas.AttributionReportOut(
        conversion_id=report.conversion_id,
        total_value=report.total_value,
        journey=journey_to_schema(report.journey),
        per_model_breakdown={model: _credits_to_schema(c) for model, c in report.breakdown.items()},
        model_comparison=report.model_totals,
        recommended_model=report.recommended_model,
        errors=report.errors,
    )


@router.post("/conversions/batch", response_model=schemas.BatchAttributionOut)
def attribute_batch(
    payload: schemas.BatchAttributionIn,
    model: AttributionModelEnum = Query(AttributionModelEnum.last_touch),
    owner_id: str = Depends(get_owner_id),
    reporting: ReportingService = Depends(get_reporting_service),
):
    """Attribute many conversions in parallel; per-conversion failures are returned."""
    result = reporting.attribute_conversions(payload.conversion_ids, model, owner_id)
    return schemas.BatchAttributionOut.model_validate(result, from_attributes=True)


# =============================================================================
# CHANNEL-LEVEL ENDPOINTS
# =============================================================================

@router.get("/channels/{short_code}", response_model=schemas.ChannelAttributionReportOut)
def get_channel_attribution(
    short_code: str,
    days: int = Query(30, ge=1, le=365),
    model: AttributionModelEnum = Query(AttributionModelEnum.last_touch),
    owner_id: str = Depends(get_owner_id),
    reporting: ReportingService = Depends(get_reporting_service),
):
    """Stored credit grouped by source/medium, highest value first."""
    report = reporting.channel_report(short_code, days, model, owner_id)
    return schemas.ChannelAttributionReportOut.model_validate(report, from_attributes=True)


@router.get("/channels/{short_code}/compare", response_model=schemas.ModelComparisonOut)
def compare_models(
    short_code: str,
    days: int = Query(30, ge=1, le=365),
    owner_id: str = Depends(get_owner_id),
    reporting: ReportingService = Depends(get_reporting_service),
):
    """Total credit and top channels under each model."""
    report = reporting.model_comparison(short_code, days, owner_id)
    return schemas.ModelComparisonOut.model_validate(report, from_attributes=True)
