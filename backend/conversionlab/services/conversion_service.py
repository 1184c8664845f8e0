"""Conversion goals and conversion tracking.

WHAT: Goal configuration (CRUD + validation) and idempotent recording of
      external conversion events, plus per-goal conversion statistics
WHY: Attribution needs a conversion (value, session, time) and the goal's
     attribution window before it can reconstruct a journey
REFERENCES:
  - conversionlab/routers/goals.py, conversionlab/routers/events.py: Callers
  - conversionlab/services/attribution_service.py: Reads conversions and goals
  - conversionlab/tests/test_conversion_service.py
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..event_schema import ConversionEvent, utcnow
from ..exceptions import InvalidState, NotFoundError, ValidationError
from ..models import Conversion, ConversionGoal, GoalTypeEnum, Touchpoint

logger = logging.getLogger(__name__)

MIN_WINDOW_DAYS = 1
MAX_WINDOW_DAYS = 365

UPDATABLE_GOAL_FIELDS = (
    "name", "goal_type", "target_url", "custom_event_name", "goal_value", "attribution_window", "is_active",
)
# Fields a partial update may set back to null
CLEARABLE_GOAL_FIELDS = ("target_url", "custom_event_name")


@dataclass
class GoalStats:
    goal_id: UUID
    goal_name: str
    total_conversions: int
    total_value: float
    avg_value: float
    avg_time_to_convert: float  # minutes
    conversion_rate: float      # percent of clicks on the short code


def validate_day_range(days: int, field: str = "days") -> None:
    if not MIN_WINDOW_DAYS <= days <= MAX_WINDOW_DAYS:
        raise ValidationError(f"{field} must be between {MIN_WINDOW_DAYS} and {MAX_WINDOW_DAYS}", field=field)


def validate_goal_config(
    name: Optional[str],
    goal_type: Any,
    target_url: Optional[str],
    custom_event_name: Optional[str],
    goal_value: Any,
    attribution_window: int,
) -> GoalTypeEnum:
    """Check a goal definition before it is written.

    Returns:
        The parsed goal type
    """
    if not name or not name.strip():
        raise ValidationError("Goal name is required", field="name")
    try:
        goal_type = GoalTypeEnum(goal_type)
    except ValueError:
        raise ValidationError(f"Invalid goal_type: {goal_type}", field="goal_type")

    if goal_type == GoalTypeEnum.url_visit and not target_url:
        raise ValidationError("target_url is required for url_visit goals", field="target_url")
    if goal_type == GoalTypeEnum.custom_event and not custom_event_name:
        raise ValidationError("custom_event_name is required for custom_event goals", field="custom_event_name")
    if goal_value is not None and float(goal_value) < 0:
        raise ValidationError("goal_value cannot be negative", field="goal_value")
    if not MIN_WINDOW_DAYS <= attribution_window <= MAX_WINDOW_DAYS:
        raise ValidationError("attribution_window must be between 1 and 365 days", field="attribution_window")
    return goal_type


class ConversionService:
    """Conversion goals and conversion events for one database session."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def create_goal(
        self,
        owner_id: str,
        name: str,
        goal_type: Any,
        target_url: Optional[str] = None,
        custom_event_name: Optional[str] = None,
        goal_value: float = 0.0,
        attribution_window: int = 30,
    ) -> ConversionGoal:
        parsed_type = validate_goal_config(
            name, goal_type, target_url, custom_event_name, goal_value, attribution_window
        )
        goal = ConversionGoal(
            owner_id=owner_id,
            name=name.strip(),
            goal_type=parsed_type,
            target_url=target_url,
            custom_event_name=custom_event_name,
            goal_value=goal_value or 0,
            attribution_window=attribution_window,
            is_active=True,
        )
        self.db.add(goal)
        self.db.commit()
        self.db.refresh(goal)

        logger.info(
            "[CONVERSION] Created goal",
            extra={"goal_id": str(goal.id), "owner_id": owner_id, "goal_type": parsed_type.value},
        )
        return goal

    def list_goals(self, owner_id: str) -> List[ConversionGoal]:
        return (
            self.db.query(ConversionGoal)
            .filter(ConversionGoal.owner_id == owner_id)
            .order_by(ConversionGoal.created_at.desc())
            .all()
        )

    def get_goal(self, goal_id: UUID, owner_id: Optional[str] = None) -> ConversionGoal:
        """Load a goal; owner_id, when given, must match."""
        query = self.db.query(ConversionGoal).filter(ConversionGoal.id == goal_id)
        if owner_id is not None:
            query = query.filter(ConversionGoal.owner_id == owner_id)
        goal = query.first()
        if not goal:
            raise NotFoundError("conversion_goal", goal_id)
        return goal

    def _is_referenced(self, goal_id: UUID) -> bool:
        return (
            self.db.query(Conversion.id).filter(Conversion.goal_id == goal_id).first() is not None
        )

    def update_goal(self, owner_id: str, goal_id: UUID, **changes) -> ConversionGoal:
        """Apply partial changes to an unreferenced goal.

        Raises:
            InvalidState: If a conversion already references the goal
        """
        goal = self.get_goal(goal_id, owner_id)
        unknown = set(changes) - set(UPDATABLE_GOAL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown goal fields: {', '.join(sorted(unknown))}")
        if self._is_referenced(goal.id):
            raise InvalidState("Goal is referenced by conversions and can no longer be changed")

        not_nullable = sorted(k for k, v in changes.items() if v is None and k not in CLEARABLE_GOAL_FIELDS)
        if not_nullable:
            raise ValidationError(f"{not_nullable[0]} cannot be null", field=not_nullable[0])

        merged = {field: getattr(goal, field) for field in UPDATABLE_GOAL_FIELDS}
        merged.update(changes)
        merged["goal_type"] = validate_goal_config(
            merged["name"],
            merged["goal_type"],
            merged["target_url"],
            merged["custom_event_name"],
            merged["goal_value"],
            merged["attribution_window"],
        )

        for field, value in merged.items():
            setattr(goal, field, value)
        goal.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(goal)

        logger.info("[CONVERSION] Updated goal %s (%s)", goal.id, ", ".join(sorted(changes)))
        return goal

    def delete_goal(self, owner_id: str, goal_id: UUID) -> None:
        goal = self.get_goal(goal_id, owner_id)
        if self._is_referenced(goal.id):
            raise InvalidState("Goal is referenced by conversions and cannot be deleted")
        self.db.delete(goal)
        self.db.commit()
        logger.info("[CONVERSION] Deleted goal %s", goal_id)

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def get_conversion(self, conversion_id: str) -> Conversion:
        conversion = (
            self.db.query(Conversion).filter(Conversion.conversion_id == conversion_id).first()
        )
        if not conversion:
            raise NotFoundError("conversion", conversion_id)
        return conversion

    def _first_touch_time(self, short_code: str, session_id: str):
        return (
            self.db.query(func.min(Touchpoint.touchpoint_time))
            .filter(Touchpoint.session_id == session_id, Touchpoint.short_code == short_code)
            .scalar()
        )

    def track_conversion(self, event: ConversionEvent) -> Tuple[Conversion, bool]:
        """Record a conversion once per external conversion_id.

        Returns:
            (conversion, created). Retries with a known conversion_id return
            the stored row and created=False.
        """
        existing = (
            self.db.query(Conversion).filter(Conversion.conversion_id == event.conversion_id).first()
        )
        if existing:
            logger.info("[CONVERSION] Duplicate conversion %s ignored", event.conversion_id)
            return existing, False

        goal = self.db.query(ConversionGoal).filter(ConversionGoal.id == event.goal_id).first()
        if not goal:
            raise NotFoundError("conversion_goal", event.goal_id)
        if not goal.is_active:
            raise ValidationError(f"Conversion goal {goal.id} is inactive", field="goal_id")

        conversion_time = event.timestamp or utcnow()
        value = event.value if event.value is not None else float(goal.goal_value or 0)

        time_to_conversion = None
        first_touch = self._first_touch_time(event.short_code, event.session_id)
        if first_touch is not None and first_touch <= conversion_time:
            time_to_conversion = int((conversion_time - first_touch) / timedelta(minutes=1))

        conversion = Conversion(
            conversion_id=event.conversion_id,
            goal_id=goal.id,
            short_code=event.short_code,
            session_id=event.session_id,
            conversion_type=goal.goal_type,
            conversion_value=value,
            conversion_time=conversion_time,
            attribution_model="last_touch",
            time_to_conversion=time_to_conversion,
        )

        try:
            with self.db.begin_nested():
                self.db.add(conversion)
            self.db.commit()
        except IntegrityError:
            # Concurrent retry of the same conversion won the insert
            self.db.rollback()
            return self.get_conversion(event.conversion_id), False

        self.db.refresh(conversion)
        logger.info(
            "[CONVERSION] Tracked conversion",
            extra={
                "conversion_id": event.conversion_id,
                "goal_id": str(goal.id),
                "short_code": event.short_code,
                "value": value,
            },
        )
        return conversion, True

    def get_conversion_stats(self, owner_id: str, short_code: str, days: int = 30) -> List[GoalStats]:
        """Per active goal: conversions, value and time-to-convert for a short code."""
        validate_day_range(days)
        since = utcnow() - timedelta(days=days)

        rows = (
            self.db.query(
                ConversionGoal.id,
                ConversionGoal.name,
                func.count(Conversion.id),
                func.coalesce(func.sum(Conversion.conversion_value), 0),
                func.coalesce(func.avg(Conversion.conversion_value), 0),
                func.coalesce(func.avg(Conversion.time_to_conversion), 0),
            )
            .outerjoin(
                Conversion,
                (Conversion.goal_id == ConversionGoal.id)
                & (Conversion.short_code == short_code)
                & (Conversion.conversion_time >= since),
            )
            .filter(ConversionGoal.owner_id == owner_id, ConversionGoal.is_active.is_(True))
            .group_by(ConversionGoal.id, ConversionGoal.name)
            .order_by(func.count(Conversion.id).desc())
            .all()
        )

        total_clicks = (
            self.db.query(func.count(Touchpoint.id))
            .filter(Touchpoint.short_code == short_code, Touchpoint.touchpoint_time >= since)
            .scalar()
        ) or 0

        stats: List[GoalStats] = []
        for goal_id, name, count, total, avg_value, avg_minutes in rows:
            rate = (count / total_clicks * 100.0) if total_clicks else 0.0
            stats.append(GoalStats(
                goal_id=goal_id,
                goal_name=name,
                total_conversions=int(count),
                total_value=float(total),
                avg_value=float(avg_value),
                avg_time_to_convert=float(avg_minutes),
                conversion_rate=rate,
            ))
        return stats
