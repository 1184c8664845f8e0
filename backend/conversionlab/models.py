"""SQLAlchemy ORM models and enums.

This module defines the analytics schema using UUID primary keys and explicit
relationships. Experiment events and conversions are append-only; uniqueness
constraints make every recording operation safe to retry.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, Float, Text, Boolean,
    UniqueConstraint, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base

from .event_schema import utcnow


# Single Base used by the entire application
Base = declarative_base()


def _enum_column(enum_cls, **kwargs):
    return Column(Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj]), **kwargs)


# Enums ---------------------------------------------------------

class GoalTypeEnum(str, enum.Enum):
    url_visit = "url_visit"
    custom_event = "custom_event"
    form_submit = "form_submit"
    purchase = "purchase"


class ExperimentStatusEnum(str, enum.Enum):
    """Experiment lifecycle.

    draft -> running <-> paused; running/paused -> completed (terminal)
    """
    draft = "draft"
    running = "running"
    paused = "paused"
    completed = "completed"


class ExperimentEventTypeEnum(str, enum.Enum):
    assignment = "assignment"
    conversion = "conversion"


# Conversion tracking ---------------------------------------------

class ConversionGoal(Base):
    """What counts as a conversion for an owner's links.

    WHAT: Goal definition with value and attribution look-back window
    WHY: Conversions reference a goal; the goal's window bounds the journey
    """
    __tablename__ = "conversion_goals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    goal_type = _enum_column(GoalTypeEnum, nullable=False)
    target_url = Column(String, nullable=True)         # url_visit
    custom_event_name = Column(String, nullable=True)  # custom_event
    goal_value = Column(Numeric(12, 2), nullable=False, default=0)
    attribution_window = Column(Integer, nullable=False, default=30)  # days
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    conversions = relationship("Conversion", back_populates="goal")

    def __str__(self):
        return f"{self.name} ({self.goal_type})"


class Conversion(Base):
    """One external conversion event. Immutable once written."""
    __tablename__ = "conversions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # External id supplied by the caller; retries reuse it
    conversion_id = Column(String, nullable=False, unique=True)
    goal_id = Column(UUID(as_uuid=True), ForeignKey("conversion_goals.id"), nullable=False)
    short_code = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    conversion_type = _enum_column(GoalTypeEnum, nullable=False)
    conversion_value = Column(Numeric(12, 2), nullable=False, default=0)
    conversion_time = Column(DateTime, nullable=False)
    attribution_model = Column(String, nullable=False, default="last_touch")
    # Minutes between the session's first touch and the conversion
    time_to_conversion = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    goal = relationship("ConversionGoal", back_populates="conversions")

    def __str__(self):
        return f"Conversion {self.conversion_id} - {self.conversion_value}"


# Attribution -----------------------------------------------------

class Touchpoint(Base):
    """One marketing interaction in a session's journey.

    touchpoint_order is assigned by the server, strictly increasing per
    session. Only conversion_id is ever updated after insert.
    """
    __tablename__ = "attribution_touchpoints"
    __table_args__ = (
        UniqueConstraint("session_id", "touchpoint_order", name="uq_touchpoint_session_order"),
        Index("ix_touchpoints_session_time", "session_id", "touchpoint_time"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(String, nullable=False)
    short_code = Column(String, nullable=False, index=True)
    referrer = Column(String, nullable=True)

    campaign_source = Column(String, nullable=True)
    campaign_medium = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    campaign_term = Column(String, nullable=True)
    campaign_content = Column(String, nullable=True)

    touchpoint_order = Column(Integer, nullable=False)
    touchpoint_time = Column(DateTime, nullable=False)
    conversion_id = Column(String, nullable=True)
    # Client-generated id for deduplication
    event_id = Column(String, nullable=True, unique=True)

    created_at = Column(DateTime, default=utcnow)

    attributions = relationship("TouchpointAttribution", back_populates="touchpoint", cascade="all, delete-orphan")

    def __str__(self):
        source = self.campaign_source or self.referrer or "direct"
        return f"#{self.touchpoint_order} {self.session_id} from {source}"


class TouchpointAttribution(Base):
    """Credit assigned to one touchpoint by one model. Recomputed per model."""
    __tablename__ = "touchpoint_attributions"
    __table_args__ = (
        UniqueConstraint("touchpoint_id", "attribution_model", name="uq_touchpoint_attribution_model"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    touchpoint_id = Column(
        UUID(as_uuid=True), ForeignKey("attribution_touchpoints.id", ondelete="CASCADE"), nullable=False
    )
    conversion_id = Column(String, nullable=False, index=True)
    attribution_model = Column(String, nullable=False)
    attribution_value = Column(Float, nullable=False, default=0.0)
    weight = Column(Float, nullable=False, default=0.0)  # 0.0-1.0

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    touchpoint = relationship("Touchpoint", back_populates="attributions")


# Experiments -----------------------------------------------------

class Experiment(Base):
    """An A/B test over a set of variants."""
    __tablename__ = "experiments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    experiment_type = Column(String, nullable=False, default="ab")
    description = Column(Text, nullable=True)
    status = _enum_column(ExperimentStatusEnum, nullable=False, default=ExperimentStatusEnum.draft)
    # Target sessions per variant
    sample_size = Column(Integer, nullable=False, default=1000)
    confidence = Column(Float, nullable=False, default=95.0)
    conversion_goal_id = Column(UUID(as_uuid=True), ForeignKey("conversion_goals.id"), nullable=True)
    winner = Column(String, nullable=True)

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.position",
    )
    conversion_goal = relationship("ConversionGoal")

    def __str__(self):
        return f"{self.name} [{self.status}]"


class Variant(Base):
    """One arm of an experiment. Allocations across an experiment sum to 100."""
    __tablename__ = "experiment_variants"
    __table_args__ = (
        UniqueConstraint("experiment_id", "name", name="uq_variant_name"),
        UniqueConstraint("experiment_id", "short_code", name="uq_variant_short_code"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    experiment_id = Column(UUID(as_uuid=True), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    short_code = Column(String, nullable=False)
    traffic_allocation = Column(Integer, nullable=False)  # percent
    is_control = Column(Boolean, nullable=False, default=False)
    # Creation order; bucket ranges are laid out in this order
    position = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)

    experiment = relationship("Experiment", back_populates="variants")

    def __str__(self):
        return f"{self.name} ({self.traffic_allocation}%)"


class ExperimentEvent(Base):
    """Append-only assignment/conversion log.

    The assignment row is the canonical record of which variant a session saw.
    """
    __tablename__ = "experiment_events"
    __table_args__ = (
        UniqueConstraint("experiment_id", "session_id", "event_type", name="uq_experiment_session_event"),
        Index("ix_experiment_events_variant_type", "experiment_id", "variant_id", "event_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    experiment_id = Column(UUID(as_uuid=True), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(UUID(as_uuid=True), ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String, nullable=False)
    event_type = _enum_column(ExperimentEventTypeEnum, nullable=False)
    conversion_value = Column(Float, nullable=False, default=0.0)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    variant = relationship("Variant")

    def __str__(self):
        return f"{self.event_type} - {self.session_id}"
