"""
Feedback evaluation for applied dayparting multipliers

A feedback record is created when a multiplier is applied (or recorded in
SHADOW mode) and evaluated exactly once, after the evaluation delay, by
comparing the bucket's CVR/ROAS before and after.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from shared.config import settings
from shared.logger import get_logger

from .errors import FeedbackAlreadyEvaluatedError
from .types import (
    HOURS_PER_DAY,
    NEUTRAL_MULTIPLIER,
    BidMultiplier,
    DailySummary,
    DaypartingMode,
    FeedbackRecord,
)

logger = get_logger(__name__)

TOLERATED_SCORE = 0.3
NEUTRAL_SCORE = 0.5


@dataclass(frozen=True)
class SuccessCriteria:
    min_cvr_change: float = -0.05
    min_roas_change: float = -0.05
    # Drops beyond this are failures
    max_degradation: float = 0.15


DEFAULT_SUCCESS_CRITERIA = SuccessCriteria()


@dataclass(frozen=True)
class MetricsSnapshot:
    cvr: float
    roas: float
    clicks: int
    conversions: int


@dataclass
class SuccessRate:
    success_rate: float = 0.0
    count: int = 0
    avg_score: float = 0.0


@dataclass
class MultiplierRangeSuccessRates:
    boost: SuccessRate
    neutral: SuccessRate
    reduce: SuccessRate


@dataclass
class DailyEffect:
    incremental_roi: float
    incremental_roas: float
    incremental_cvr: float
    is_positive: bool


@dataclass
class DailyEffectSummary:
    days: int = 0
    positive_days: int = 0
    total_incremental_sales: float = 0.0
    avg_incremental_roi: float = 0.0


# =============================================================================
# Creation
# =============================================================================

def create_feedback_record(
    asin: str,
    campaign_id: str,
    ad_group_id: Optional[str],
    hour: int,
    day_of_week: Optional[int],
    applied_multiplier: float,
    before: MetricsSnapshot,
    applied_at: datetime = None
) -> FeedbackRecord:
    return FeedbackRecord(
        feedback_id=f"feedback_{uuid.uuid4()}",
        asin=asin,
        campaign_id=campaign_id,
        ad_group_id=ad_group_id,
        hour=hour,
        day_of_week=day_of_week,
        applied_multiplier=applied_multiplier,
        applied_at=applied_at or datetime.now(timezone.utc),
        cvr_before=before.cvr,
        roas_before=before.roas,
        clicks_before=before.clicks,
        conversions_before=before.conversions,
    )


def create_feedback_from_multiplier(
    multiplier: BidMultiplier,
    before: MetricsSnapshot,
    applied_at: datetime = None
) -> FeedbackRecord:
    return create_feedback_record(
        multiplier.asin,
        multiplier.campaign_id,
        multiplier.ad_group_id,
        multiplier.hour,
        multiplier.day_of_week,
        multiplier.multiplier,
        before,
        applied_at,
    )


# =============================================================================
# Evaluation
# =============================================================================

def is_ready_for_evaluation(
    feedback: FeedbackRecord,
    now: datetime = None,
    delay_hours: float = None
) -> bool:
    """Unevaluated and applied at least `delay_hours` ago"""
    if feedback.evaluated:
        return False
    now = now or datetime.now(timezone.utc)
    delay_hours = settings.feedback_evaluation_delay_hours if delay_hours is None else delay_hours
    return now - feedback.applied_at >= timedelta(hours=delay_hours)


def _relative_change(before: float, after: float) -> float:
    return (after - before) / before if before > 0 else 0.0


def _success_score(cvr_change: float, roas_change: float) -> float:
    """0.3 .. 1.0, full marks at +10% on both metrics"""
    cvr_score = min(1.0, max(0.0, cvr_change + 0.1) / 0.2)
    roas_score = min(1.0, max(0.0, roas_change + 0.1) / 0.2)
    return TOLERATED_SCORE + (cvr_score + roas_score) / 2 * (1 - TOLERATED_SCORE)


def judge_success(
    cvr_change: float,
    roas_change: float,
    applied_multiplier: float,
    criteria: SuccessCriteria = DEFAULT_SUCCESS_CRITERIA
) -> Tuple[bool, float]:
    """
    Returns (is_success, score).

    Boosts must hold CVR and ROAS; reductions must not hurt ROAS; a neutral
    multiplier succeeds while both metrics stay stable. Drops inside the
    degradation band are tolerated: still a success, with a flat low score.
    """
    if applied_multiplier > NEUTRAL_MULTIPLIER:
        if cvr_change >= criteria.min_cvr_change and roas_change >= criteria.min_roas_change:
            return True, _success_score(cvr_change, roas_change)
        if cvr_change >= -criteria.max_degradation and roas_change >= -criteria.max_degradation:
            return True, TOLERATED_SCORE
        return False, 0.0

    if applied_multiplier < NEUTRAL_MULTIPLIER:
        if roas_change >= 0:
            return True, _success_score(cvr_change, roas_change)
        if cvr_change >= -criteria.max_degradation:
            return True, TOLERATED_SCORE
        return False, 0.0

    if abs(cvr_change) < criteria.max_degradation and abs(roas_change) < criteria.max_degradation:
        return True, NEUTRAL_SCORE
    return False, 0.0


def evaluate_feedback(
    feedback: FeedbackRecord,
    after: MetricsSnapshot,
    criteria: SuccessCriteria = DEFAULT_SUCCESS_CRITERIA,
    now: datetime = None
) -> FeedbackRecord:
    """Return the evaluated copy; raises FeedbackAlreadyEvaluatedError on a second call"""
    if feedback.evaluated:
        raise FeedbackAlreadyEvaluatedError(feedback.feedback_id)

    cvr_change = _relative_change(feedback.cvr_before, after.cvr)
    roas_change = _relative_change(feedback.roas_before, after.roas)
    is_success, score = judge_success(cvr_change, roas_change, feedback.applied_multiplier, criteria)

    return replace(
        feedback,
        cvr_after=after.cvr,
        roas_after=after.roas,
        clicks_after=after.clicks,
        conversions_after=after.conversions,
        is_success=is_success,
        success_score=score,
        evaluated=True,
        evaluated_at=now or datetime.now(timezone.utc),
    )


# =============================================================================
# Aggregates
# =============================================================================

def calculate_success_rate(feedback: Iterable[FeedbackRecord]) -> SuccessRate:
    """Success rate and mean score over evaluated records only"""
    evaluated = [f for f in feedback if f.evaluated]
    if not evaluated:
        return SuccessRate()

    return SuccessRate(
        success_rate=sum(1 for f in evaluated if f.is_success) / len(evaluated),
        count=len(evaluated),
        avg_score=sum(f.success_score or 0.0 for f in evaluated) / len(evaluated),
    )


def calculate_hourly_success_rates(feedback: List[FeedbackRecord]) -> Dict[int, SuccessRate]:
    """Every hour 0-23 is present; hours without data report zeros"""
    return {
        hour: calculate_success_rate(f for f in feedback if f.hour == hour)
        for hour in range(HOURS_PER_DAY)
    }


def calculate_multiplier_range_success_rates(feedback: List[FeedbackRecord]) -> MultiplierRangeSuccessRates:
    boost, neutral, reduce = [], [], []
    for record in feedback:
        if record.applied_multiplier > 1.01:
            boost.append(record)
        elif record.applied_multiplier < 0.99:
            reduce.append(record)
        else:
            neutral.append(record)

    return MultiplierRangeSuccessRates(
        boost=calculate_success_rate(boost),
        neutral=calculate_success_rate(neutral),
        reduce=calculate_success_rate(reduce),
    )


# =============================================================================
# Daily summary
# =============================================================================

def create_daily_summary(
    day: date,
    asin: str,
    campaign_id: str,
    mode: DaypartingMode,
    impressions: float,
    clicks: float,
    conversions: float,
    sales: float,
    spend: float,
    estimated: Optional[Dict[str, float]] = None
) -> DailySummary:
    """
    `estimated` holds impressions/clicks/conversions/sales expected without
    the multiplier. When missing, the actuals are the baseline (SHADOW days).
    """
    estimated = estimated or {
        "impressions": impressions,
        "clicks": clicks,
        "conversions": conversions,
        "sales": sales,
    }

    return DailySummary(
        day=day,
        asin=asin,
        campaign_id=campaign_id,
        mode=mode,
        estimated_impressions_without_multiplier=estimated["impressions"],
        estimated_clicks_without_multiplier=estimated["clicks"],
        estimated_conversions_without_multiplier=estimated["conversions"],
        estimated_sales_without_multiplier=estimated["sales"],
        actual_impressions=impressions,
        actual_clicks=clicks,
        actual_conversions=conversions,
        actual_sales=sales,
        actual_spend=spend,
        incremental_impressions=impressions - estimated["impressions"],
        incremental_clicks=clicks - estimated["clicks"],
        incremental_conversions=conversions - estimated["conversions"],
        incremental_sales=sales - estimated["sales"],
    )


def calculate_daily_summary_effect(summary: DailySummary) -> DailyEffect:
    """Spend is attributed to the increment in proportion to its share of sales"""
    if summary.actual_sales == 0:
        return DailyEffect(0.0, 0.0, 0.0, False)

    incremental_spend = summary.actual_spend * (summary.incremental_sales / summary.actual_sales)

    if incremental_spend > 0:
        incremental_roi = (summary.incremental_sales - incremental_spend) / incremental_spend
        incremental_roas = summary.incremental_sales / incremental_spend
    else:
        incremental_roi = incremental_roas = 0.0

    incremental_cvr = (
        summary.incremental_conversions / summary.incremental_clicks
        if summary.incremental_clicks > 0 else 0.0
    )

    return DailyEffect(
        incremental_roi=incremental_roi,
        incremental_roas=incremental_roas,
        incremental_cvr=incremental_cvr,
        is_positive=summary.incremental_sales > 0 and incremental_roi > 0,
    )


def summarize_daily_effects(summaries: List[DailySummary]) -> DailyEffectSummary:
    usable = [s for s in summaries if s.actual_sales != 0]
    if not usable:
        return DailyEffectSummary()

    effects = [calculate_daily_summary_effect(s) for s in usable]
    return DailyEffectSummary(
        days=len(usable),
        positive_days=sum(1 for e in effects if e.is_positive),
        total_incremental_sales=sum(s.incremental_sales for s in usable),
        avg_incremental_roi=sum(e.incremental_roi for e in effects) / len(effects),
    )


# =============================================================================
# Logging
# =============================================================================

def _format_change(before: float, after: Optional[float]) -> str:
    if before > 0 and after is not None:
        return f"{(after - before) / before:+.1%}"
    return "N/A"


def log_feedback_evaluation(feedback: FeedbackRecord):
    if not feedback.evaluated:
        return

    logger.info(
        f"Feedback evaluated for {feedback.asin} hour {feedback.hour}: "
        f"{'success' if feedback.is_success else 'failure'}",
        extra={"context": {
            "feedback_id": feedback.feedback_id,
            "asin": feedback.asin,
            "hour": feedback.hour,
            "applied_multiplier": feedback.applied_multiplier,
            "cvr_change": _format_change(feedback.cvr_before, feedback.cvr_after),
            "roas_change": _format_change(feedback.roas_before, feedback.roas_after),
            "is_success": feedback.is_success,
            "success_score": round(feedback.success_score, 2) if feedback.success_score is not None else None,
        }},
    )


def log_daily_summary(summary: DailySummary):
    effect = calculate_daily_summary_effect(summary)
    logger.info(
        f"Daily summary {summary.day.isoformat()} for {summary.asin}/{summary.campaign_id}: "
        f"incremental sales ${summary.incremental_sales:,.2f}",
        extra={"context": {
            "mode": summary.mode.value,
            "actual_sales": summary.actual_sales,
            "incremental_roi": round(effect.incremental_roi, 4),
            "is_positive": effect.is_positive,
        }},
    )
