"""
Hourly performance analysis

For every hour (or hour x weekday) bucket:
- collect CVR samples (enough clicks) and ROAS samples (positive spend)
- t-test each metric against the entity's overall mean
- confidence = the weaker of the two metrics' tiers
- classification from the average of the two relative ratios
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from shared.logger import get_logger

from .config import (
    AnalysisThresholds,
    ClassificationThresholds,
    ConfidenceThresholds,
    MultiplierThresholds,
    DEFAULT_THRESHOLDS,
)
from .statistics import TTestResult, calculate_mean_and_std, one_sample_t_test
from .types import (
    HOURS_PER_DAY,
    NEUTRAL_MULTIPLIER,
    BucketAnalysisResult,
    ConfidenceLevel,
    HourClassification,
    PerformanceSample,
)

logger = get_logger(__name__)


@dataclass
class OverallAverages:
    mean_cvr: float
    mean_roas: float
    mean_ctr: float
    total_impressions: float
    total_clicks: float
    total_conversions: float
    total_spend: float
    total_sales: float


@dataclass
class BucketAggregate:
    hour: int
    day_of_week: Optional[int]
    impressions: float = 0
    clicks: float = 0
    conversions: float = 0
    spend: float = 0.0
    sales: float = 0.0
    data_points: int = 0

    @property
    def cvr(self) -> float:
        return self.conversions / self.clicks if self.clicks > 0 else 0.0

    @property
    def roas(self) -> float:
        return self.sales / self.spend if self.spend > 0 else 0.0

    @property
    def ctr(self) -> float:
        return self.clicks / self.impressions if self.impressions > 0 else 0.0

    def add(self, sample: PerformanceSample):
        self.impressions += sample.impressions
        self.clicks += sample.clicks
        self.conversions += sample.conversions
        self.spend += sample.spend
        self.sales += sample.sales
        self.data_points += sample.data_points


@dataclass
class AnalysisSummary:
    peak_hours: List[int] = field(default_factory=list)
    good_hours: List[int] = field(default_factory=list)
    poor_hours: List[int] = field(default_factory=list)
    dead_hours: List[int] = field(default_factory=list)
    significant_count: int = 0
    high_confidence_count: int = 0
    avg_multiplier: float = NEUTRAL_MULTIPLIER


# =============================================================================
# Baseline and aggregation
# =============================================================================

def calculate_overall_averages(samples: Iterable[PerformanceSample]) -> OverallAverages:
    """Ratio of totals across every sample of the entity"""
    impressions = clicks = conversions = 0
    spend = sales = 0.0

    for sample in samples:
        impressions += sample.impressions
        clicks += sample.clicks
        conversions += sample.conversions
        spend += sample.spend
        sales += sample.sales

    return OverallAverages(
        mean_cvr=conversions / clicks if clicks > 0 else 0.0,
        mean_roas=sales / spend if spend > 0 else 0.0,
        mean_ctr=clicks / impressions if impressions > 0 else 0.0,
        total_impressions=impressions,
        total_clicks=clicks,
        total_conversions=conversions,
        total_spend=spend,
        total_sales=sales,
    )


def aggregate_metrics_by_hour(samples: Iterable[PerformanceSample]) -> Dict[int, BucketAggregate]:
    aggregates = {hour: BucketAggregate(hour=hour, day_of_week=None) for hour in range(HOURS_PER_DAY)}
    for sample in samples:
        aggregates[sample.hour].add(sample)
    return aggregates


def aggregate_metrics_by_hour_and_day(
    samples: Iterable[PerformanceSample]
) -> Dict[Tuple[int, int], BucketAggregate]:
    aggregates: Dict[Tuple[int, int], BucketAggregate] = {}
    for sample in samples:
        key = (sample.hour, sample.day_of_week)
        if key not in aggregates:
            aggregates[key] = BucketAggregate(hour=sample.hour, day_of_week=sample.day_of_week)
        aggregates[key].add(sample)
    return aggregates


# =============================================================================
# Confidence / classification
# =============================================================================

def determine_confidence_level(
    sample_size: int,
    p_value: float,
    thresholds: ConfidenceThresholds = DEFAULT_THRESHOLDS.confidence
) -> ConfidenceLevel:
    if sample_size >= thresholds.high_min_samples and p_value <= thresholds.high_max_p_value:
        return ConfidenceLevel.HIGH
    if sample_size >= thresholds.medium_min_samples and p_value <= thresholds.medium_max_p_value:
        return ConfidenceLevel.MEDIUM
    if sample_size >= thresholds.low_min_samples and p_value <= thresholds.low_max_p_value:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.INSUFFICIENT


def determine_classification(
    relative_performance: float,
    thresholds: ClassificationThresholds = DEFAULT_THRESHOLDS.classification
) -> HourClassification:
    if relative_performance >= thresholds.peak:
        return HourClassification.PEAK
    if relative_performance >= thresholds.good:
        return HourClassification.GOOD
    if relative_performance >= thresholds.average:
        return HourClassification.AVERAGE
    if relative_performance >= thresholds.poor:
        return HourClassification.POOR
    return HourClassification.DEAD


def calculate_recommended_multiplier(
    confidence: ConfidenceLevel,
    classification: HourClassification,
    thresholds: MultiplierThresholds = DEFAULT_THRESHOLDS.multiplier
) -> float:
    """1 + (base - 1) x confidence factor, neutral when confidence is insufficient"""
    if confidence == ConfidenceLevel.INSUFFICIENT:
        return NEUTRAL_MULTIPLIER

    base = thresholds.base_multipliers[classification]
    factor = thresholds.confidence_factors[confidence]
    return round(NEUTRAL_MULTIPLIER + (base - NEUTRAL_MULTIPLIER) * factor, 2)


# =============================================================================
# Analysis
# =============================================================================

def _relative(mean: float, overall_mean: float) -> float:
    return mean / overall_mean if overall_mean > 0 else 1.0


def _analyze_bucket(
    hour: int,
    day_of_week: Optional[int],
    cvr_samples: List[float],
    roas_samples: List[float],
    overall: OverallAverages,
    significance_level: float,
    thresholds: AnalysisThresholds
) -> BucketAnalysisResult:
    cvr_stats = calculate_mean_and_std(cvr_samples)
    cvr_test: TTestResult = one_sample_t_test(cvr_stats.mean, overall.mean_cvr, cvr_stats.std, len(cvr_samples))

    roas_stats = calculate_mean_and_std(roas_samples)
    roas_test: TTestResult = one_sample_t_test(roas_stats.mean, overall.mean_roas, roas_stats.std, len(roas_samples))

    relative_cvr = _relative(cvr_stats.mean, overall.mean_cvr)
    relative_roas = _relative(roas_stats.mean, overall.mean_roas)

    confidence = min(
        determine_confidence_level(len(cvr_samples), cvr_test.p_value, thresholds.confidence),
        determine_confidence_level(len(roas_samples), roas_test.p_value, thresholds.confidence),
        key=lambda level: level.rank,
    )

    # Equal weighting of CVR and ROAS is a policy choice kept for compatibility
    classification = determine_classification((relative_cvr + relative_roas) / 2, thresholds.classification)

    return BucketAnalysisResult(
        hour=hour,
        day_of_week=day_of_week,
        mean_cvr=cvr_stats.mean,
        std_cvr=cvr_stats.std,
        mean_roas=roas_stats.mean,
        std_roas=roas_stats.std,
        sample_size=min(len(cvr_samples), len(roas_samples)),
        overall_mean_cvr=overall.mean_cvr,
        overall_mean_roas=overall.mean_roas,
        relative_cvr_performance=relative_cvr,
        relative_roas_performance=relative_roas,
        t_stat_cvr=cvr_test.t_stat,
        p_value_cvr=cvr_test.p_value,
        t_stat_roas=roas_test.t_stat,
        p_value_roas=roas_test.p_value,
        confidence=confidence,
        classification=classification,
        recommended_multiplier=calculate_recommended_multiplier(
            confidence, classification, thresholds.multiplier
        ),
        is_significant=max(cvr_test.p_value, roas_test.p_value) <= significance_level,
    )


def _collect_samples(samples: Iterable[PerformanceSample], key_fn, thresholds: ConfidenceThresholds):
    cvr_samples = defaultdict(list)
    roas_samples = defaultdict(list)

    for sample in samples:
        key = key_fn(sample)
        cvr = sample.cvr
        roas = sample.roas
        if cvr is not None and sample.clicks >= thresholds.min_clicks_for_cvr:
            cvr_samples[key].append(cvr)
        if roas is not None and sample.spend > 0:
            roas_samples[key].append(roas)

    return cvr_samples, roas_samples


def analyze_hourly_performance(
    samples: List[PerformanceSample],
    significance_level: float = 0.05,
    thresholds: AnalysisThresholds = None
) -> List[BucketAnalysisResult]:
    """One result per hour 0-23, pooled over all weekdays"""
    thresholds = thresholds or DEFAULT_THRESHOLDS
    overall = calculate_overall_averages(samples)
    cvr_samples, roas_samples = _collect_samples(samples, lambda s: s.hour, thresholds.confidence)

    return [
        _analyze_bucket(
            hour, None,
            cvr_samples.get(hour, []), roas_samples.get(hour, []),
            overall, significance_level, thresholds
        )
        for hour in range(HOURS_PER_DAY)
    ]


def analyze_hourly_performance_by_day(
    samples: List[PerformanceSample],
    significance_level: float = 0.05,
    thresholds: AnalysisThresholds = None
) -> List[BucketAnalysisResult]:
    """One result per observed (hour, weekday), against the same overall baseline"""
    thresholds = thresholds or DEFAULT_THRESHOLDS
    overall = calculate_overall_averages(samples)
    cvr_samples, roas_samples = _collect_samples(
        samples, lambda s: (s.hour, s.day_of_week), thresholds.confidence
    )

    observed = sorted({(s.hour, s.day_of_week) for s in samples}, key=lambda k: (k[1], k[0]))

    return [
        _analyze_bucket(
            hour, day,
            cvr_samples.get((hour, day), []), roas_samples.get((hour, day), []),
            overall, significance_level, thresholds
        )
        for hour, day in observed
    ]


# =============================================================================
# Filtering / summary
# =============================================================================

def filter_significant_buckets(
    results: List[BucketAnalysisResult],
    min_confidence: ConfidenceLevel = ConfidenceLevel.LOW
) -> List[BucketAnalysisResult]:
    return [r for r in results if r.confidence.rank >= min_confidence.rank]


def generate_analysis_summary(results: List[BucketAnalysisResult]) -> AnalysisSummary:
    by_class = defaultdict(set)
    significant = [r for r in results if r.confidence != ConfidenceLevel.INSUFFICIENT]

    for result in results:
        by_class[result.classification].add(result.hour)

    return AnalysisSummary(
        peak_hours=sorted(by_class[HourClassification.PEAK]),
        good_hours=sorted(by_class[HourClassification.GOOD]),
        poor_hours=sorted(by_class[HourClassification.POOR]),
        dead_hours=sorted(by_class[HourClassification.DEAD]),
        significant_count=len(significant),
        high_confidence_count=sum(1 for r in significant if r.confidence == ConfidenceLevel.HIGH),
        avg_multiplier=(
            sum(r.recommended_multiplier for r in significant) / len(significant)
            if significant else NEUTRAL_MULTIPLIER
        ),
    )


def log_analysis_results(results: List[BucketAnalysisResult], asin: str, campaign_id: str):
    summary = generate_analysis_summary(results)
    logger.info(
        f"Hourly analysis completed for {asin}/{campaign_id}: "
        f"{summary.significant_count}/{len(results)} significant buckets",
        extra={"context": {
            "asin": asin,
            "campaign_id": campaign_id,
            "total_buckets": len(results),
            "significant_count": summary.significant_count,
            "high_confidence_count": summary.high_confidence_count,
            "peak_hours": summary.peak_hours,
            "good_hours": summary.good_hours,
            "poor_hours": summary.poor_hours,
            "dead_hours": summary.dead_hours,
            "avg_multiplier": round(summary.avg_multiplier, 2),
        }},
    )
