"""Versioned event schema shared by attribution and experiments.

WHAT:
    Pydantic models for the click and conversion events that reach the
    engine, plus the single campaign (utm_*) parser both engines use.

WHY:
    Attribution needs campaign fields for channel grouping and experiments
    need the same session identity. Parsing them in one place keeps the two
    paths from drifting apart.

REFERENCES:
    - conversionlab/routers/events.py: Accepts these payloads
    - conversionlab/services/attribution_service.py: Consumes ClickEvent
    - conversionlab/services/conversion_service.py: Consumes ConversionEvent
"""

from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


SCHEMA_VERSION = 1

DIRECT_SOURCE = "Direct"
NO_MEDIUM = "None"

_UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CampaignFields(BaseModel):
    """Marketing campaign attributes carried by a click."""
    source: Optional[str] = Field(None, max_length=255)
    medium: Optional[str] = Field(None, max_length=255)
    name: Optional[str] = Field(None, max_length=255)
    term: Optional[str] = Field(None, max_length=255)
    content: Optional[str] = Field(None, max_length=255)

    @field_validator("source", "medium", "name", "term", "content", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @classmethod
    def from_utm(cls, params: Mapping[str, Any]) -> "CampaignFields":
        """Build from utm_* query parameters (unknown keys ignored)."""
        return cls(
            source=params.get("utm_source"),
            medium=params.get("utm_medium"),
            name=params.get("utm_campaign"),
            term=params.get("utm_term"),
            content=params.get("utm_content"),
        )

    @property
    def channel_source(self) -> str:
        return self.source or DIRECT_SOURCE

    @property
    def channel_medium(self) -> str:
        return self.medium or NO_MEDIUM


class _VersionedEvent(BaseModel):
    schema_version: Literal[1] = SCHEMA_VERSION


class ClickEvent(_VersionedEvent):
    """A click/redirect event: one touchpoint in a session's journey.

    utm_* keys may be sent flat (as they appear on the landing URL) or as a
    nested campaign object.
    """
    session_id: str = Field(..., min_length=1, max_length=255)
    short_code: str = Field(..., min_length=1, max_length=64)
    timestamp: datetime = Field(default_factory=utcnow)
    referrer: Optional[str] = None
    campaign: CampaignFields = Field(default_factory=CampaignFields)
    # Client-generated id for deduplicating retried beacons
    event_id: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="before")
    @classmethod
    def _collect_utm(cls, data: Any) -> Any:
        if isinstance(data, dict) and any(key in data for key in _UTM_KEYS):
            data = dict(data)
            utm = {key: data.pop(key) for key in _UTM_KEYS if key in data}
            if "campaign" not in data:
                data["campaign"] = CampaignFields.from_utm(utm)
        return data

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class ConversionEvent(_VersionedEvent):
    """An external conversion for a tracked goal."""
    conversion_id: str = Field(..., min_length=1, max_length=255)
    goal_id: UUID
    short_code: str = Field(..., min_length=1, max_length=64)
    session_id: str = Field(..., min_length=1, max_length=255)
    value: Optional[float] = Field(None, ge=0)
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)
