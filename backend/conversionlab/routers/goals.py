"""Conversion goal endpoints (owner scoped)."""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_owner_id
from ..services.conversion_service import ConversionService
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/goals",
    tags=["Goals"],
)


def get_conversion_service(db: Session = Depends(get_db)) -> ConversionService:
    return ConversionService(db)


@router.post("", response_model=schemas.GoalOut, status_code=status.HTTP_201_CREATED)
def create_goal(
    payload: schemas.GoalCreate,
    owner_id: str = Depends(get_owner_id),
    service: ConversionService = Depends(get_conversion_service),
):
    return service.create_goal(
        owner_id=owner_id,
        name=payload.name,
        goal_type=payload.goal_type,
        target_url=payload.target_url,
        custom_event_name=payload.custom_event_name,
        goal_value=payload.goal_value,
        attribution_window=payload.attribution_window,
    )


@router.get("", response_model=List[schemas.GoalOut])
def list_goals(
    owner_id: str = Depends(get_owner_id),
    service: ConversionService = Depends(get_conversion_service),
):
    return service.list_goals(owner_id)


# Declared before /{goal_id} so "stats" is not parsed as a UUID
@router.get("/stats", response_model=List[schemas.GoalStatsOut])
def get_goal_stats(
    short_code: str = Query(..., min_length=1),
    days: int = Query(30, ge=1, le=365),
    owner_id: str = Depends(get_owner_id),
    service: ConversionService = Depends(get_conversion_service),
):
    """Conversions, value and time-to-convert per active goal for a short code."""
    return [
        schemas.GoalStatsOut.model_validate(s, from_attributes=True)
        for s in service.get_conversion_stats(owner_id, short_code, days)
    ]


@router.get("/{goal_id}", response_model=schemas.GoalOut)
def get_goal(
    goal_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ConversionService = Depends(get_conversion_service),
):
    return service.get_goal(goal_id, owner_id)


@router.patch("/{goal_id}", response_model=schemas.GoalOut)
def update_goal(
    goal_id: UUID,
    payload: schemas.GoalUpdate,
    owner_id: str = Depends(get_owner_id),
    service: ConversionService = Depends(get_conversion_service),
):
    """Partial update. Rejected once a conversion references the goal."""
    return service.update_goal(owner_id, goal_id, **payload.model_dump(exclude_unset=True))


@router.delete("/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(
    goal_id: UUID,
    owner_id: str = Depends(get_owner_id),
    service: ConversionService = Depends(get_conversion_service),
):
    service.delete_goal(owner_id, goal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
