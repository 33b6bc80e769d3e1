from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional


class _Report(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FieldMetric(_Report):
    # derived on read, never persisted
    field_name: str = Field(..., alias="fieldName")
    visits: int = 0
    abandons: int = 0
    abandonment_rate: float = Field(0.0, alias="abandonmentRate", ge=0.0, le=1.0)
    avg_duration: float = Field(0.0, alias="avgDuration", description="ms")
    focus_count: int = Field(0, alias="focusCount")
    blur_count: int = Field(0, alias="blurCount")
    input_count: int = Field(0, alias="inputCount")
    skip_rate: float = Field(0.0, alias="skipRate", ge=0.0, le=1.0)
    hesitation_score: float = Field(0.0, alias="hesitationScore", ge=0.0, le=1.0)


class KillerField(_Report):
    field_name: str = Field(..., alias="fieldName")
    visits: int
    abandons: int
    abandonment_rate: float = Field(..., alias="abandonmentRate")
    severity: Literal["critical", "high", "medium", "low"]


class GlobalStats(_Report):
    total_events: int = Field(0, alias="totalEvents")
    unique_sessions: int = Field(0, alias="uniqueSessions")
    submits: int = 0
    abandons: int = 0
    window_days: int = Field(7, alias="windowDays")
    avg_session_duration: float = Field(0.0, alias="avgSessionDuration", description="ms")
    completion_rate: float = Field(0.0, alias="completionRate", description="percent")
    bounce_rate: float = Field(0.0, alias="bounceRate", description="percent")


class Tip(_Report):
    rule: Literal["killer_field", "high_hesitation", "silently_skipped", "no_conversions", "all_clear"]
    field_name: Optional[str] = Field(None, alias="fieldName")
    priority: Literal["high", "medium", "low"]
    message: str


class InsightReport(_Report):
    killer_field: Optional[KillerField] = Field(None, alias="killerField")
    tips: List[Tip] = Field(default_factory=list)
    stats: GlobalStats
    field_metrics: List[FieldMetric] = Field(default_factory=list, alias="fieldMetrics")
