"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from uuid import UUID
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .models import ExperimentStatusEnum, GoalTypeEnum


# Experiments -----------------------------------------------------

class VariantIn(BaseModel):
    """One variant in an experiment definition."""

    name: str = Field(min_length=1, max_length=100, description="Variant name, unique per experiment")
    short_code: str = Field(min_length=1, max_length=64, description="Short link served to this variant")
    traffic_allocation: int = Field(ge=0, le=100, description="Percent of sessions routed here")
    is_control: bool = False


class ExperimentCreate(BaseModel):
    """Payload for creating an experiment (starts in draft)."""

    name: str = Field(min_length=1, max_length=255)
    experiment_type: str = Field("ab", max_length=50)
    description: Optional[str] = None
    variants: List[VariantIn]
    conversion_goal_id: Optional[UUID] = None
    sample_size: int = Field(1000, ge=1, description="Target sessions per variant")
    confidence: float = Field(95.0, gt=0, lt=100, description="Confidence level in percent")

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Landing page headline",
                "variants": [
                    {"name": "control", "short_code": "lp-a", "traffic_allocation": 50, "is_control": True},
                    {"name": "bold", "short_code": "lp-b", "traffic_allocation": 50},
                ],
                "sample_size": 5000,
                "confidence": 95,
            }
        }
    }


class VariantsUpdate(BaseModel):
    variants: List[VariantIn]


class VariantOut(BaseModel):
    id: UUID
    name: str
    short_code: str
    traffic_allocation: int
    is_control: bool
    position: int

    model_config = {"from_attributes": True}


class ExperimentOut(BaseModel):
    id: UUID
    owner_id: str
    name: str
    experiment_type: str
    description: Optional[str] = None
    status: ExperimentStatusEnum
    sample_size: int
    confidence: float
    conversion_goal_id: Optional[UUID] = None
    winner: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    variants: List[VariantOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class AssignRequest(BaseModel):
    """Session id may come in the body or the X-Session-Id header."""

    session_id: Optional[str] = Field(None, max_length=255)


class AssignmentOut(BaseModel):
    experiment_id: UUID
    session_id: str
    variant_id: UUID
    variant_name: str
    short_code: str


class ExperimentConversionIn(BaseModel):
    variant_id: UUID
    session_id: Optional[str] = Field(None, max_length=255)
    value: float = Field(0.0, ge=0)


class ExperimentConversionOut(BaseModel):
    recorded: bool = Field(description="False when the session had already converted")


class SignificanceOut(BaseModel):
    z_score: float
    p_value: float
    significant: bool
    winner: Optional[str] = None
    control_rate: float
    variant_rate: float
    improvement: Optional[float] = None
    effect_size: float
    confidence: float
    confidence_interval: List[float]

    model_config = {"from_attributes": True}


class VariantStatsOut(BaseModel):
    variant_id: UUID
    name: str
    short_code: str
    is_control: bool
    traffic_allocation: int
    sessions: int
    conversions: int
    conversion_rate: float
    revenue: float
    average_value: float
    significance: Optional[SignificanceOut] = None

    model_config = {"from_attributes": True}


class ExperimentResultsOut(BaseModel):
    experiment_id: UUID
    name: str
    status: str
    confidence: float
    sample_size: int
    per_variant_stats: List[VariantStatsOut]
    total_sessions: int
    total_conversions: int
    overall_conversion_rate: float
    significant: bool
    winner: Optional[str] = None
    recommendation: str


class DurationEstimate(BaseModel):
    days: int
    low_traffic_days: int
    high_traffic_days: int


class SampleSizeOut(BaseModel):
    per_variant_n: int
    total_n: int
    variants: int
    baseline_rate: float
    baseline_source: str
    min_effect: float
    confidence: float
    power: float
    daily_sessions: float
    estimated_duration: DurationEstimate
    assumptions: List[str]


class ArmSummary(BaseModel):
    control: float
    variant: float


class PowerAnalysisOut(BaseModel):
    current_power: float
    observed_effect: Optional[float] = None
    minimum_detectable_effect: float
    power_curve: Dict[str, float]
    sample_sizes: ArmSummary
    conversion_rates: ArmSummary
    confidence: float


class SequentialLookOut(BaseModel):
    label: Optional[str] = None
    information_fraction: float
    z_score: float
    boundary: Optional[float] = Field(None, description="None when the look spends no alpha")
    alpha_spent: float
    crossed: bool


class SequentialTestOut(BaseModel):
    can_stop_early: bool
    current_power: float
    recommendation: str
    decision: str
    information_fraction: float
    alpha: float
    policy: str = "obrien_fleming_alpha_spending"
    looks: List[SequentialLookOut]


# Goals -----------------------------------------------------------

class GoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    goal_type: GoalTypeEnum
    target_url: Optional[str] = None
    custom_event_name: Optional[str] = None
    goal_value: float = Field(0.0, ge=0)
    attribution_window: int = Field(30, ge=1, le=365, description="Look-back window in days")


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    goal_type: Optional[GoalTypeEnum] = None
    target_url: Optional[str] = None
    custom_event_name: Optional[str] = None
    goal_value: Optional[float] = Field(None, ge=0)
    attribution_window: Optional[int] = Field(None, ge=1, le=365)
    is_active: Optional[bool] = None


class GoalOut(BaseModel):
    id: UUID
    owner_id: str
    name: str
    goal_type: GoalTypeEnum
    target_url: Optional[str] = None
    custom_event_name: Optional[str] = None
    goal_value: float
    attribution_window: int
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class GoalStatsOut(BaseModel):
    goal_id: UUID
    goal_name: str
    total_conversions: int
    total_value: float
    avg_value: float
    avg_time_to_convert: float
    conversion_rate: float

    model_config = {"from_attributes": True}


# Events ----------------------------------------------------------

class TouchpointOut(BaseModel):
    id: UUID
    session_id: str
    short_code: str
    touchpoint_order: int
    touchpoint_time: datetime
    referrer: Optional[str] = None
    campaign_source: Optional[str] = None
    campaign_medium: Optional[str] = None
    campaign_name: Optional[str] = None
    campaign_term: Optional[str] = None
    campaign_content: Optional[str] = None
    conversion_id: Optional[str] = None

    model_config = {"from_attributes": True}


class ConversionOut(BaseModel):
    id: UUID
    conversion_id: str
    goal_id: UUID
    short_code: str
    session_id: str
    conversion_type: GoalTypeEnum
    conversion_value: float
    conversion_time: datetime
    attribution_model: str
    time_to_conversion: Optional[int] = None

    model_config = {"from_attributes": True}


class TrackConversionOut(BaseModel):
    conversion: ConversionOut
    created: bool = Field(description="False when the conversion_id was already recorded")
    attribution_job_id: Optional[str] = Field(None, description="Background attribution job, when requested")


# Attribution -----------------------------------------------------

class TouchpointCreditOut(BaseModel):
    touchpoint_id: UUID
    touchpoint_order: int
    short_code: str
    source: str
    medium: str
    attribution_model: str
    weight: float
    attribution_value: float

    model_config = {"from_attributes": True}


class JourneyOut(BaseModel):
    conversion_id: str
    session_id: str
    conversion_value: float
    conversion_time: datetime
    attribution_window: int
    journey_minutes: int
    truncated: int
    touchpoints: List[TouchpointOut]


class AttributionReportOut(BaseModel):
    conversion_id: str
    total_value: float
    journey: JourneyOut
    per_model_breakdown: Dict[str, List[TouchpointCreditOut]]
    model_comparison: Dict[str, float]
    recommended_model: Optional[str] = None
    errors: Dict[str, str] = Field(default_factory=dict)

    model_config = {"protected_namespaces": ()}


class ChannelAttributionOut(BaseModel):
    channel: str
    source: str
    medium: str
    touchpoints: int
    conversions: int
    attribution_value: float
    conversion_rate: float

    model_config = {"from_attributes": True}


class ReportWarningOut(BaseModel):
    scope: str
    message: str

    model_config = {"from_attributes": True}


class ChannelAttributionReportOut(BaseModel):
    short_code: str
    days: int
    model: str
    channels: List[ChannelAttributionOut]
    total_attributed_value: float
    warnings: List[ReportWarningOut]

    model_config = {"from_attributes": True}


class ModelSummaryOut(BaseModel):
    model: str
    total_value: float
    top_channels: List[ChannelAttributionOut]

    model_config = {"from_attributes": True}


class ModelComparisonOut(BaseModel):
    short_code: str
    days: int
    models: List[ModelSummaryOut]
    warnings: List[ReportWarningOut]

    model_config = {"from_attributes": True}


class BatchAttributionIn(BaseModel):
    conversion_ids: List[str] = Field(min_length=1, max_length=1000)


class BatchAttributionOut(BaseModel):
    succeeded: Dict[str, int]
    failed: Dict[str, str]

    model_config = {"from_attributes": True}


# Health ----------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "ok"
