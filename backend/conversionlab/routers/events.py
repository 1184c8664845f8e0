"""Event ingestion endpoints.

WHAT:
    - POST /v1/events/clicks: record a touchpoint for a session
    - POST /v1/events/conversions: track a conversion for a goal

WHY:
    Both endpoints receive beacons from the edge, which can retry. Clicks
    dedupe on event_id and conversions on conversion_id, so a retry returns
    the stored row instead of writing a second one.

REFERENCES:
    - conversionlab/event_schema.py (shared event shapes)
    - conversionlab/workers/arq_enqueue.py (optional background attribution)
"""

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_settings
from ..event_schema import ClickEvent, ConversionEvent
from ..services.attribution_models import AttributionModelEnum
from ..services.attribution_service import AttributionService
from ..services.conversion_service import ConversionService
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/events",
    tags=["Events"],
)


@router.post("/clicks", response_model=schemas.TouchpointOut, status_code=status.HTTP_201_CREATED)
def record_click(
    event: ClickEvent,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Append a touchpoint to the session's journey (order assigned server-side)."""
    return AttributionService(db, settings).record_touchpoint(event)


@router.post("/conversions", response_model=schemas.TrackConversionOut)
async def track_conversion(
    event: ConversionEvent,
    attribute: bool = Query(False, description="Enqueue background attribution for new conversions"),
    model: AttributionModelEnum = Query(AttributionModelEnum.last_touch),
    db: Session = Depends(get_db),
):
    """Record a conversion once per conversion_id.

    With attribute=true a new conversion is queued for attribution under
    `model`. Queue failures are logged; the conversion is still recorded.
    """
    conversion, created = ConversionService(db).track_conversion(event)

    job_id = None
    if attribute and created:
        try:
            from ..workers.arq_enqueue import enqueue_attribution_job

            job = await enqueue_attribution_job(conversion.conversion_id, model.value)
            job_id = job.get("job_id")
        except Exception as e:
            logger.warning("[EVENTS] Could not enqueue attribution for %s: %s", conversion.conversion_id, e)

    return schemas.TrackConversionOut(
        conversion=schemas.ConversionOut.model_validate(conversion),
        created=created,
        attribution_job_id=job_id,
    )
