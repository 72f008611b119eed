"""
Record types for hour-of-day bid multipliers

Enums inherit from `str` so they drop straight into BigQuery rows.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional


HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7
NEUTRAL_MULTIPLIER = 1.0


class DaypartingMode(str, Enum):
    """OFF disables output, SHADOW records only, APPLY scales bids"""
    OFF = "OFF"
    SHADOW = "SHADOW"
    APPLY = "APPLY"


class ConfidenceLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INSUFFICIENT = "INSUFFICIENT"

    @property
    def rank(self) -> int:
        """Higher is more reliable"""
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    ConfidenceLevel.INSUFFICIENT: 0,
    ConfidenceLevel.LOW: 1,
    ConfidenceLevel.MEDIUM: 2,
    ConfidenceLevel.HIGH: 3,
}


class HourClassification(str, Enum):
    PEAK = "PEAK"
    GOOD = "GOOD"
    AVERAGE = "AVERAGE"
    POOR = "POOR"
    DEAD = "DEAD"


class SafetyAction(str, Enum):
    APPLY = "APPLY"
    REDUCE = "REDUCE"
    SKIP = "SKIP"
    ROLLBACK = "ROLLBACK"

    @property
    def severity(self) -> int:
        return _ACTION_SEVERITY[self]


# SKIP and ROLLBACK block equally; ties go to the earlier check
_ACTION_SEVERITY = {
    SafetyAction.APPLY: 0,
    SafetyAction.REDUCE: 1,
    SafetyAction.SKIP: 2,
    SafetyAction.ROLLBACK: 2,
}


def bucket_key(hour: int, day_of_week: Optional[int]) -> str:
    """Stable key for an (hour, weekday-or-all) bucket"""
    return f"{hour}|{'all' if day_of_week is None else day_of_week}"


@dataclass(frozen=True)
class PerformanceSample:
    """One (hour, weekday) observation over a reporting period"""
    asin: str
    campaign_id: str
    ad_group_id: Optional[str]
    hour: int
    day_of_week: int
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    spend: float = 0.0
    sales: float = 0.0
    data_points: int = 1
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    @property
    def ctr(self) -> Optional[float]:
        return self.clicks / self.impressions if self.impressions > 0 else None

    @property
    def cvr(self) -> Optional[float]:
        return self.conversions / self.clicks if self.clicks > 0 else None

    @property
    def acos(self) -> Optional[float]:
        return self.spend / self.sales if self.sales > 0 else None

    @property
    def roas(self) -> Optional[float]:
        return self.sales / self.spend if self.spend > 0 else None

    @property
    def cpc(self) -> Optional[float]:
        return self.spend / self.clicks if self.clicks > 0 else None


@dataclass
class BucketAnalysisResult:
    hour: int
    day_of_week: Optional[int]

    mean_cvr: float
    std_cvr: float
    mean_roas: float
    std_roas: float
    sample_size: int

    overall_mean_cvr: float
    overall_mean_roas: float
    relative_cvr_performance: float
    relative_roas_performance: float

    t_stat_cvr: float
    p_value_cvr: float
    t_stat_roas: float
    p_value_roas: float

    confidence: ConfidenceLevel
    classification: HourClassification
    recommended_multiplier: float
    is_significant: bool = False

    @property
    def key(self) -> str:
        return bucket_key(self.hour, self.day_of_week)

    @property
    def average_relative_performance(self) -> float:
        return (self.relative_cvr_performance + self.relative_roas_performance) / 2


@dataclass
class BidMultiplier:
    asin: str
    campaign_id: str
    ad_group_id: Optional[str]
    hour: int
    day_of_week: Optional[int]
    multiplier: float
    confidence: ConfidenceLevel
    classification: HourClassification
    effective_from: datetime
    effective_to: Optional[datetime] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    multiplier_id: Optional[str] = None

    @property
    def key(self) -> str:
        return bucket_key(self.hour, self.day_of_week)


@dataclass
class FeedbackRecord:
    feedback_id: str
    asin: str
    campaign_id: str
    ad_group_id: Optional[str]
    hour: int
    day_of_week: Optional[int]

    applied_multiplier: float
    applied_at: datetime
    evaluated_at: Optional[datetime] = None

    cvr_before: float = 0.0
    roas_before: float = 0.0
    clicks_before: int = 0
    conversions_before: int = 0

    cvr_after: Optional[float] = None
    roas_after: Optional[float] = None
    clicks_after: Optional[int] = None
    conversions_after: Optional[int] = None

    is_success: Optional[bool] = None
    success_score: Optional[float] = None
    evaluated: bool = False


@dataclass
class DailySummary:
    day: date
    asin: str
    campaign_id: str
    mode: DaypartingMode

    # Estimates for the same day without the multiplier (shadow baseline)
    estimated_impressions_without_multiplier: float = 0.0
    estimated_clicks_without_multiplier: float = 0.0
    estimated_conversions_without_multiplier: float = 0.0
    estimated_sales_without_multiplier: float = 0.0

    actual_impressions: float = 0.0
    actual_clicks: float = 0.0
    actual_conversions: float = 0.0
    actual_sales: float = 0.0
    actual_spend: float = 0.0

    incremental_impressions: float = 0.0
    incremental_clicks: float = 0.0
    incremental_conversions: float = 0.0
    incremental_sales: float = 0.0

    @property
    def loss(self) -> float:
        return self.actual_spend - self.actual_sales

    @property
    def roi(self) -> float:
        if self.actual_spend <= 0:
            return 0.0
        return (self.actual_sales - self.actual_spend) / self.actual_spend


@dataclass
class SafetyCheckResult:
    is_safe: bool
    warnings: List[str]
    block_reason: Optional[str]
    recommended_action: SafetyAction
    adjusted_multiplier: Optional[float]


@dataclass
class AnomalyDetectionResult:
    is_anomalous: bool
    anomaly_type: str  # 'loss_exceeded', 'performance_drop', 'consecutive_bad_days', 'none'
    message: str
    current_value: float
    threshold: float
    should_rollback: bool


@dataclass
class RollbackInfo:
    rollback_id: str
    asin: str
    campaign_id: str
    reason: str
    previous_multipliers: List[BidMultiplier] = field(default_factory=list)
    rolled_back_at: Optional[datetime] = None
    restored_at: Optional[datetime] = None
