"""Attribution engine service.

WHAT:
    Records touchpoints, rebuilds the journey that led to a conversion,
    applies an attribution model and persists the per-touchpoint credit.
    Also aggregates stored credit by channel (source/medium).

WHY:
    Weighting is pure (attribution_models.py). This service owns everything
    that touches the database: ordering touchpoints safely under concurrent
    beacons, bounding journeys, and replacing credit idempotently per model.

CONCURRENCY:
    touchpoint_order is "max + 1" inserted inside a savepoint. Two writers for
    the same session collide on uq_touchpoint_session_order; the loser rolls
    back its savepoint and retries with the next number.

    A touchpoint credits at most one conversion. Storing credit claims the
    journey with a conditional UPDATE; a conversion that loses the race gets
    WriteConflictError and sees a journey without those touchpoints next time.

REFERENCES:
    - conversionlab/services/attribution_models.py
    - conversionlab/services/reporting.py (channel and model reports)
    - conversionlab/workers/arq_worker.py (attribute_conversion_job)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..deps import Settings, get_settings
from ..event_schema import DIRECT_SOURCE, NO_MEDIUM, ClickEvent, utcnow
from ..exceptions import EmptyJourneyError, EngineError, NotFoundError, WriteConflictError
from ..models import Conversion, ConversionGoal, Touchpoint, TouchpointAttribution
from .attribution_models import (
    ALL_MODELS,
    AttributionModelEnum,
    DataDrivenStrategy,
    allocate,
    compute_weights,
    parse_model,
    recommend_model,
)
from .conversion_service import validate_day_range

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ConversionJourney:
    conversion: Conversion
    attribution_window: int
    touchpoints: List[Touchpoint]
    # Touchpoints in the window beyond the cap (oldest dropped)
    truncated: int = 0

    @property
    def journey_minutes(self) -> int:
        if not self.touchpoints:
            return 0
        first = self.touchpoints[0].touchpoint_time
        return int((self.conversion.conversion_time - first) / timedelta(minutes=1))

    @property
    def journey_days(self) -> float:
        return self.journey_minutes / (24 * 60)


@dataclass
class TouchpointCredit:
    touchpoint_id: UUID
    touchpoint_order: int
    short_code: str
    source: str
    medium: str
    attribution_model: str
    weight: float
    attribution_value: float


@dataclass
class AttributionReport:
    conversion_id: str
    total_value: float
    journey: ConversionJourney
    breakdown: Dict[str, List[TouchpointCredit]] = field(default_factory=dict)
    model_totals: Dict[str, float] = field(default_factory=dict)
    recommended_model: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class ChannelAttributionRow:
    source: str
    medium: str
    touchpoints: int
    conversions: int
    attribution_value: float

    @property
    def channel(self) -> str:
        return f"{self.source}/{self.medium}"

    @property
    def conversion_rate(self) -> float:
        if not self.touchpoints:
            return 0.0
        return self.conversions / self.touchpoints * 100.0


# =============================================================================
# SERVICE
# =============================================================================

class AttributionService:
    """Touchpoint recording and multi-touch attribution over one session."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        data_driven: Optional[DataDrivenStrategy] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.data_driven = data_driven

    # ------------------------------------------------------------------
    # Touchpoints
    # ------------------------------------------------------------------

    def _next_order(self, session_id: str) -> int:
        current = (
            self.db.query(func.max(Touchpoint.touchpoint_order))
            .filter(Touchpoint.session_id == session_id)
            .scalar()
        )
        return (current or 0) + 1

    def _by_event_id(self, event_id: Optional[str]) -> Optional[Touchpoint]:
        if not event_id:
            return None
        return self.db.query(Touchpoint).filter(Touchpoint.event_id == event_id).first()

    def record_touchpoint(self, event: ClickEvent) -> Touchpoint:
        """Append a touchpoint to the session's journey.

        Order is always assigned here; clients never choose it. A replayed
        event_id returns the touchpoint stored the first time.

        Raises:
            WriteConflictError: If every retry collided with a concurrent insert
        """
        existing = self._by_event_id(event.event_id)
        if existing:
            return existing

        attempts = max(self.settings.TOUCHPOINT_INSERT_RETRIES, 1)
        for attempt in range(1, attempts + 1):
            touchpoint = Touchpoint(
                session_id=event.session_id,
                short_code=event.short_code,
                referrer=event.referrer,
                campaign_source=event.campaign.source,
                campaign_medium=event.campaign.medium,
                campaign_name=event.campaign.name,
                campaign_term=event.campaign.term,
                campaign_content=event.campaign.content,
                touchpoint_order=self._next_order(event.session_id),
                touchpoint_time=event.timestamp,
                event_id=event.event_id,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(touchpoint)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                existing = self._by_event_id(event.event_id)
                if existing:
                    return existing
                logger.info(
                    "[ATTRIBUTION] Touchpoint order conflict for session %s (attempt %d/%d)",
                    event.session_id, attempt, attempts,
                )
                continue

            logger.info(
                "[ATTRIBUTION] Recorded touchpoint",
                extra={
                    "session_id": event.session_id,
                    "short_code": event.short_code,
                    "touchpoint_order": touchpoint.touchpoint_order,
                    "source": event.campaign.source,
                },
            )
            return touchpoint

        raise WriteConflictError(
            f"Could not assign a touchpoint order for session {event.session_id} after {attempts} attempts"
        )

    # ------------------------------------------------------------------
    # Journeys and attribution
    # ------------------------------------------------------------------

    def _get_conversion(self, conversion_id: str, owner_id: Optional[str] = None) -> Tuple[Conversion, ConversionGoal]:
        """Load a conversion with its goal; owner_id, when given, must own the goal."""
        query = (
            self.db.query(Conversion, ConversionGoal)
            .outerjoin(ConversionGoal, ConversionGoal.id == Conversion.goal_id)
            .filter(Conversion.conversion_id == conversion_id)
        )
        if owner_id is not None:
            query = query.filter(ConversionGoal.owner_id == owner_id)
        row = query.first()
        if not row:
            raise NotFoundError("conversion", conversion_id)

        conversion, goal = row
        if goal is None:
            raise NotFoundError("conversion_goal", conversion.goal_id)
        return conversion, goal

    def get_conversion_journey(self, conversion_id: str, owner_id: Optional[str] = None) -> ConversionJourney:
        """Touchpoints of the converting session inside the goal's window.

        Ordered by touchpoint_order and capped at MAX_JOURNEY_TOUCHPOINTS
        (the most recent ones are kept). Touchpoints already claimed by
        another conversion belong to that conversion and are left out.
        """
        conversion, goal = self._get_conversion(conversion_id, owner_id)
        window = goal.attribution_window
        window_start = conversion.conversion_time - timedelta(days=window)

        base = self.db.query(Touchpoint).filter(
            Touchpoint.session_id == conversion.session_id,
            Touchpoint.touchpoint_time >= window_start,
            Touchpoint.touchpoint_time <= conversion.conversion_time,
            or_(Touchpoint.conversion_id.is_(None), Touchpoint.conversion_id == conversion_id),
        )
        cap = self.settings.MAX_JOURNEY_TOUCHPOINTS
        recent = base.order_by(Touchpoint.touchpoint_order.desc()).limit(cap + 1).all()

        truncated = 0
        if len(recent) > cap:
            truncated = base.count() - cap
            recent = recent[:cap]
            logger.warning(
                "[ATTRIBUTION] Journey for %s capped at %d touchpoints (%d dropped)",
                conversion_id, cap, truncated,
            )

        return ConversionJourney(
            conversion=conversion,
            attribution_window=window,
            touchpoints=list(reversed(recent)),
            truncated=truncated,
        )

    def _credits(self, journey: ConversionJourney, model: AttributionModelEnum) -> List[TouchpointCredit]:
        touchpoints = journey.touchpoints
        weights = compute_weights(
            model,
            [tp.touchpoint_time for tp in touchpoints],
            journey.conversion.conversion_time,
            half_life_days=self.settings.TIME_DECAY_HALF_LIFE_DAYS,
            data_driven=self.data_driven,
        )
        values = allocate(weights, float(journey.conversion.conversion_value or 0))
        return [
            TouchpointCredit(
                touchpoint_id=tp.id,
                touchpoint_order=tp.touchpoint_order,
                short_code=tp.short_code,
                source=tp.campaign_source or DIRECT_SOURCE,
                medium=tp.campaign_medium or NO_MEDIUM,
                attribution_model=model.value,
                weight=weight,
                attribution_value=value,
            )
            for tp, weight, value in zip(touchpoints, weights, values)
        ]

    def _store_credits(self, journey: ConversionJourney, model: AttributionModelEnum, credits: List[TouchpointCredit]) -> None:
        """Claim the journey's touchpoints and replace this model's rows, in one transaction.

        Raises:
            WriteConflictError: Another conversion claimed a touchpoint after the journey was read
        """
        conversion_id = journey.conversion.conversion_id
        touchpoint_ids = [c.touchpoint_id for c in credits]

        claimed = self.db.execute(
            update(Touchpoint)
            .where(
                Touchpoint.id.in_(touchpoint_ids),
                or_(Touchpoint.conversion_id.is_(None), Touchpoint.conversion_id == conversion_id),
            )
            .values(conversion_id=conversion_id)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != len(touchpoint_ids):
            raise WriteConflictError(
                f"Touchpoints of conversion {conversion_id} were claimed by another conversion"
            )

        self.db.query(TouchpointAttribution).filter(
            TouchpointAttribution.attribution_model == model.value,
            TouchpointAttribution.touchpoint_id.in_(touchpoint_ids),
        ).delete(synchronize_session=False)

        for credit in credits:
            self.db.add(TouchpointAttribution(
                touchpoint_id=credit.touchpoint_id,
                conversion_id=conversion_id,
                attribution_model=model.value,
                attribution_value=credit.attribution_value,
                weight=credit.weight,
            ))
        for tp in journey.touchpoints:
            tp.conversion_id = conversion_id

    def calculate_attribution(self, conversion_id: str, model, owner_id: Optional[str] = None) -> List[TouchpointCredit]:
        """Apply a model to the conversion's journey and persist the credit.

        Recomputing the same model replaces the previous rows.

        Raises:
            ValidationError: Unknown model
            NotFoundError: Unknown conversion
            EmptyJourneyError: No touchpoints in the attribution window
            WriteConflictError: A touchpoint was claimed by another conversion meanwhile
        """
        model = parse_model(model)
        journey = self.get_conversion_journey(conversion_id, owner_id)
        return self._calculate_for_journey(journey, model)

    def _calculate_for_journey(self, journey: ConversionJourney, model: AttributionModelEnum) -> List[TouchpointCredit]:
        if not journey.touchpoints:
            raise EmptyJourneyError(journey.conversion.conversion_id)

        credits = self._credits(journey, model)
        try:
            self._store_credits(journey, model, credits)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "[ATTRIBUTION] Attributed conversion",
            extra={
                "conversion_id": journey.conversion.conversion_id,
                "model": model.value,
                "touchpoints": len(credits),
            },
        )
        return credits

    def get_attribution_report(self, conversion_id: str, owner_id: Optional[str] = None) -> AttributionReport:
        """Journey plus credit under every model, for comparison.

        A model that fails is listed in errors; the rest of the report is
        still produced.
        """
        journey = self.get_conversion_journey(conversion_id, owner_id)
        report = AttributionReport(
            conversion_id=conversion_id,
            total_value=float(journey.conversion.conversion_value or 0),
            journey=journey,
        )

        for model in ALL_MODELS:
            try:
                credits = self._calculate_for_journey(journey, model)
            except EngineError as e:
                report.errors[model.value] = e.to_user_message()
                continue
            report.breakdown[model.value] = credits
            report.model_totals[model.value] = sum(c.attribution_value for c in credits)

        report.recommended_model = recommend_model(len(journey.touchpoints), journey.journey_days).value
        return report

    # ------------------------------------------------------------------
    # Channel aggregation
    # ------------------------------------------------------------------

    def _channel_query(self, short_code: str, days: int, model: AttributionModelEnum, owner_id: Optional[str] = None):
        since = utcnow() - timedelta(days=days)
        source = func.coalesce(Touchpoint.campaign_source, DIRECT_SOURCE)
        medium = func.coalesce(Touchpoint.campaign_medium, NO_MEDIUM)
        query = (
            self.db.query(
                source.label("source"),
                medium.label("medium"),
                func.count(Touchpoint.id.distinct()).label("touchpoints"),
                func.count(Conversion.conversion_id.distinct()).label("conversions"),
                func.coalesce(func.sum(TouchpointAttribution.attribution_value), 0).label("value"),
            )
            .select_from(TouchpointAttribution)
            .join(Touchpoint, Touchpoint.id == TouchpointAttribution.touchpoint_id)
            .join(Conversion, Conversion.conversion_id == TouchpointAttribution.conversion_id)
            .filter(
                TouchpointAttribution.attribution_model == model.value,
                Conversion.short_code == short_code,
                Conversion.conversion_time >= since,
            )
        )
        if owner_id is not None:
            query = query.join(ConversionGoal, ConversionGoal.id == Conversion.goal_id).filter(
                ConversionGoal.owner_id == owner_id
            )
        return query, source, medium

    def list_channels(self, short_code: str, days: int, model, owner_id: Optional[str] = None) -> List[Tuple[str, str]]:
        """Distinct (source, medium) pairs with stored credit in the window."""
        model = parse_model(model)
        validate_day_range(days)
        query, source, medium = self._channel_query(short_code, days, model, owner_id)
        rows = query.with_entities(source, medium).distinct().all()
        return [(row[0], row[1]) for row in rows]

    def channel_aggregate(
        self,
        short_code: str,
        days: int,
        model,
        source_value: str,
        medium_value: str,
        owner_id: Optional[str] = None,
    ) -> ChannelAttributionRow:
        """Aggregate for a single channel."""
        model = parse_model(model)
        validate_day_range(days)
        query, source, medium = self._channel_query(short_code, days, model, owner_id)
        row = query.filter(source == source_value, medium == medium_value).one()
        return ChannelAttributionRow(
            source=source_value,
            medium=medium_value,
            touchpoints=int(row.touchpoints or 0),
            conversions=int(row.conversions or 0),
            attribution_value=float(row.value or 0),
        )

    def get_channel_attribution(self, short_code: str, days: int, model, owner_id: Optional[str] = None) -> List[ChannelAttributionRow]:
        """Stored credit for a short code's conversions, grouped by source/medium.

        Raises:
            ValidationError: days outside 1-365 or unknown model
        """
        model = parse_model(model)
        validate_day_range(days)
        query, source, medium = self._channel_query(short_code, days, model, owner_id)
        rows = query.group_by(source, medium).all()

        channels = [
            ChannelAttributionRow(
                source=row.source,
                medium=row.medium,
                touchpoints=int(row.touchpoints or 0),
                conversions=int(row.conversions or 0),
                attribution_value=float(row.value or 0),
            )
            for row in rows
        ]
        channels.sort(key=lambda c: c.attribution_value, reverse=True)
        return channels

    def pending_conversion_ids(self, short_code: str, days: int, model, owner_id: Optional[str] = None) -> List[str]:
        """Conversions in the window that have no stored credit for the model yet.

        Oldest first, so an earlier conversion claims shared touchpoints first.
        """
        model = parse_model(model)
        validate_day_range(days)
        since = utcnow() - timedelta(days=days)
        attributed = select(TouchpointAttribution.conversion_id).where(
            TouchpointAttribution.attribution_model == model.value
        )
        query = self.db.query(Conversion.conversion_id).filter(
            Conversion.short_code == short_code,
            Conversion.conversion_time >= since,
            Conversion.conversion_id.not_in(attributed),
        )
        if owner_id is not None:
            query = query.join(ConversionGoal, ConversionGoal.id == Conversion.goal_id).filter(
                ConversionGoal.owner_id == owner_id
            )
        rows = query.order_by(Conversion.conversion_time, Conversion.conversion_id).all()
        return [row[0] for row in rows]
