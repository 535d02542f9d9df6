from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, conint, field_validator, model_validator


class ExperimentStatusEnum(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class VariantEnum(str, Enum):
    CONTROL = "control"
    TREATMENT = "treatment"


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------


class CreateExperimentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    traffic_percent: int = Field(100, ge=0, le=100, description="Share of sessions eligible")
    control_percent: int = Field(50, ge=0, le=100, description="Share of eligible sessions in control")
    target_countries: Optional[List[str]] = None
    target_user_types: Optional[List[str]] = None
    primary_metric: str = Field("pay_cvr", max_length=64)
    secondary_metrics: Optional[List[str]] = None
    guardrail_metrics: Optional[List[str]] = None
    mde_percent: float = Field(1.5, gt=0, le=100, description="MDE in percentage points")
    confidence_level: float = Field(0.95, description="Fraction (0.95) or percent (95)")
    statistical_power: float = Field(0.80, description="Fraction (0.8) or percent (80)")
    attribution_window_hours: int = Field(24, ge=1)

    @field_validator("confidence_level", "statistical_power")
    @classmethod
    def to_fraction(cls, v: float) -> float:
        fraction = v / 100 if v > 1 else v
        if not 0 < fraction < 1:
            raise ValueError("must be between 0 and 1 (or 0 and 100 as a percentage)")
        return fraction


class UpdateExperimentRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=256)
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    traffic_percent: Optional[int] = Field(None, ge=0, le=100)
    control_percent: Optional[int] = Field(None, ge=0, le=100)
    target_countries: Optional[List[str]] = None
    target_user_types: Optional[List[str]] = None
    primary_metric: Optional[str] = Field(None, max_length=64)
    secondary_metrics: Optional[List[str]] = None
    guardrail_metrics: Optional[List[str]] = None
    mde_percent: Optional[float] = Field(None, gt=0, le=100)
    confidence_level: Optional[float] = None
    statistical_power: Optional[float] = None
    attribution_window_hours: Optional[int] = Field(None, ge=1)

    @field_validator("confidence_level", "statistical_power")
    @classmethod
    def to_fraction(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return v
        fraction = v / 100 if v > 1 else v
        if not 0 < fraction < 1:
            raise ValueError("must be between 0 and 1 (or 0 and 100 as a percentage)")
        return fraction


class UpdateStatusRequest(BaseModel):
    status: ExperimentStatusEnum


class ExperimentResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    hypothesis: Optional[str]
    status: ExperimentStatusEnum
    traffic_percent: int
    control_percent: int
    target_countries: Optional[List[str]]
    target_user_types: Optional[List[str]]
    primary_metric: str
    secondary_metrics: Optional[List[str]]
    guardrail_metrics: Optional[List[str]]
    mde_percent: float
    confidence_level: float
    statistical_power: float
    attribution_window_hours: int
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class ExperimentListResponse(BaseModel):
    experiments: List[ExperimentResponse]
    total: int


# ---------------------------------------------------------------------------
# Assignment and exposure
# ---------------------------------------------------------------------------


class AssignRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=64)
    user_id: Optional[str] = Field(None, max_length=64)


class AssignResponse(BaseModel):
    experiment_id: str
    session_id: str
    variant_id: VariantEnum
    already_assigned: bool


class ExposureRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=64)


class ExposureResponse(BaseModel):
    experiment_id: str
    session_id: str
    recorded: bool


class VariantAssignmentStats(BaseModel):
    variant_id: str
    total_assigned: int
    total_exposed: int


class AssignmentStatsResponse(BaseModel):
    experiment_id: str
    variants: List[VariantAssignmentStats]


# ---------------------------------------------------------------------------
# Tracking events
# ---------------------------------------------------------------------------


class TrackingEventCreate(BaseModel):
    event_name: str = Field(..., min_length=1, max_length=64)
    session_id: str = Field(..., min_length=1, max_length=64)
    timestamp: Optional[datetime] = None
    user_id: Optional[str] = Field(None, max_length=64)
    hotel_id: Optional[int] = None
    room_id: Optional[int] = None
    order_id: Optional[int] = None
    experiment_id: Optional[str] = Field(None, max_length=64)
    variant_id: Optional[str] = Field(None, max_length=32)
    confidence_bucket: Optional[str] = Field(None, max_length=32)
    properties: Optional[Dict[str, Any]] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = Field(None, max_length=32)
    country: Optional[str] = Field(None, max_length=64)
    language: Optional[str] = Field(None, max_length=16)


class TrackingEventResponse(BaseModel):
    id: int
    event_name: str
    session_id: str
    user_id: Optional[str]
    timestamp: datetime
    hotel_id: Optional[int]
    room_id: Optional[int]
    order_id: Optional[int]
    experiment_id: Optional[str]
    variant_id: Optional[str]
    confidence_bucket: Optional[str]
    properties: Optional[Dict[str, Any]]
    device_type: Optional[str]
    country: Optional[str]
    language: Optional[str]

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Funnel analytics
# ---------------------------------------------------------------------------


class FunnelStageDefinition(BaseModel):
    name: str = Field(..., min_length=1)
    event_name: str = Field(..., min_length=1)


class FunnelRequest(BaseModel):
    stages: Optional[List[FunnelStageDefinition]] = Field(
        None, description="Ordered stages; defaults to the booking funnel"
    )
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None


class FunnelStageResponse(BaseModel):
    name: str
    event_name: str
    count: int
    conversion_rate: Optional[float]
    dropoff_rate: Optional[float]


class FunnelResponse(BaseModel):
    experiment_id: Optional[str]
    variant_id: Optional[str]
    stages: List[FunnelStageResponse]


class DailyFunnelStatResponse(BaseModel):
    date: date
    event_name: str
    variant_id: Optional[str]
    event_count: int
    unique_sessions: int


class EventCountResponse(BaseModel):
    event_name: str
    variant_id: Optional[str]
    count: int


class KPIResponse(BaseModel):
    key: str
    name: str
    kpi_type: str
    numerator_event: str
    denominator_event: str
    numerator: int
    denominator: int
    value: Optional[float]


# ---------------------------------------------------------------------------
# Statistics calculators
# ---------------------------------------------------------------------------


class SampleSizeRequest(BaseModel):
    mde_percent: float = Field(..., gt=0, description="MDE in percentage points")
    confidence_level: float = Field(0.95, description="90/95/99, as percent or fraction")
    power: float = Field(0.80, description="80/90, as percent or fraction")
    baseline_rate: float = Field(..., gt=0, description="Baseline conversion rate")


class SampleSizeResponse(BaseModel):
    sample_size_per_arm: int
    total_sample_size: int


class VariantStatsRequest(BaseModel):
    users: int = Field(..., ge=0)
    conversions: int = Field(..., ge=0)

    @model_validator(mode="after")
    def conversions_within_users(self):
        if self.conversions > self.users:
            raise ValueError("conversions cannot exceed users")
        return self


class LiftRequest(BaseModel):
    control: VariantStatsRequest
    treatment: VariantStatsRequest
    confidence_level: float = Field(0.95, description="Fraction or percent")


class LiftResponse(BaseModel):
    control_users: int
    control_conversions: int
    treatment_users: int
    treatment_conversions: int
    control_rate: float
    treatment_rate: float
    absolute_lift: float
    relative_lift: Optional[float]
    z_score: float
    p_value: float
    confidence_level: float
    interval_lower: Optional[float]
    interval_upper: Optional[float]
    significant: bool


class SRMRequest(BaseModel):
    observed_counts: Dict[str, conint(ge=0)]
    allocation_ratio: Dict[str, float] = Field(
        default_factory=lambda: {"control": 50.0, "treatment": 50.0}
    )


class SRMResponse(BaseModel):
    # inf (traffic in a zero-weight arm) serializes as null
    chi2: float = Field(..., description="Chi-square statistic; null when traffic reaches a 0% arm")
    p_value: float
    passed: bool
    alpha: float
    observed: Dict[str, int]
    expected: Dict[str, float]


class ExperimentResultResponse(BaseModel):
    experiment_id: str
    status: ExperimentStatusEnum
    conversion_event: str
    exposed_only: bool
    lift: LiftResponse
    srm: SRMResponse
    guardrail_warnings: List[str]
    computed_at: datetime
