from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict


class VariantDefinition(BaseModel):
    """Configuration for a single variant in a test."""

    name: str
    # Weights are checked by the service so that bad sets raise InvalidTestConfiguration
    weight: float = Field(1.0, description="Relative sampling weight; 0 stops new assignments.")
    # Content ids, subject lines, ... passed through untouched
    configuration_json: Optional[Dict] = None


class ABTestCriteria(BaseModel):
    """Stopping criteria recorded with a test."""

    target_metric: Literal["open_rate", "click_rate", "response_rate", "conversion_rate"] = "conversion_rate"
    minimum_sample_size: int = Field(1000, ge=1)
    confidence_level: float = Field(0.95, ge=0.80, le=0.99)
    test_duration_days: int = Field(14, ge=1)
    winner_threshold: float = Field(5.0, ge=0.0, description="Minimum improvement percentage.")


class ABTestCreateModel(BaseModel):
    """Input for creating a test."""

    template_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: str = "follow_up"
    channel: str = "email"
    variants: List[VariantDefinition]
    criteria: ABTestCriteria = Field(default_factory=ABTestCriteria)


class VariantModel(BaseModel):
    variant_id: str
    name: str
    position: int
    weight: float
    configuration_json: Optional[Dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ABTestModel(BaseModel):
    """A test definition as stored."""

    test_id: str = Field(..., description="Unique ID for the test.")
    name: str
    description: Optional[str] = None
    template_id: str
    category: str
    channel: str
    status: Literal["active", "concluded"]
    variants: List[VariantModel]
    criteria: ABTestCriteria
    results: Optional["ABTestResults"] = None
    created_at: datetime
    updated_at: datetime
    concluded_at: Optional[datetime] = None


# --- Reporting and Analytics ---


class StatisticalResult(BaseModel):
    """Per-variant analysis, recomputed on every query."""

    variant_id: str
    sample_size: int
    conversions: int = Field(..., description="Distinct participants with a conversion event.")
    conversion_rate: float
    confidence_interval: List[float] = Field(..., min_length=2, max_length=2)
    statistical_significance: float
    relative_improvement: float
    event_counts: Dict[str, int] = Field(
        default_factory=dict, description="Total events per type, repeats included."
    )


class ABTestAnalytics(BaseModel):
    test_id: str
    duration_seconds: float
    total_participants: int
    variants: List[StatisticalResult]
    winner: Optional[str] = None
    confidence_level: float
    recommendation: Literal["continue", "conclude", "insufficient_data"]


class VariantResultSnapshot(BaseModel):
    variant_id: str
    sent: int
    opens: int
    clicks: int
    replies: int
    conversions: int
    open_rate: float
    click_rate: float
    reply_rate: float
    conversion_rate: float


class ABTestResults(BaseModel):
    """Results frozen when a test is concluded."""

    test_id: str
    total_sent: int
    variants: List[VariantResultSnapshot]
    winner: Optional[str] = None
    confidence: float
    improvement: float
    completed_at: datetime
    is_significant: bool


class ABTestPerformance(BaseModel):
    participant_growth: List[int] = Field(..., description="Cumulative participants per hour.")
    conversion_trends: Dict[str, List[int]] = Field(
        ..., description="Cumulative conversion events per hour, keyed by variant id."
    )
    statistical_power: int


class ABTestStatistics(BaseModel):
    active_tests: int
    total_participants: int
    total_conversions: int
    average_conversion_rate: float


class CleanupSummary(BaseModel):
    tests_cleaned: int = 0
    assignments_removed: int = 0
    events_removed: int = 0


ABTestModel.model_rebuild()
