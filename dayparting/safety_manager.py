"""
Safety checks, anomaly detection and rollback for dayparting multipliers

Every check here returns advisory data. Callers honour SKIP by not applying
the change and ROLLBACK by resetting the entity to neutral.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytz

from shared.config import settings
from shared.logger import get_logger

from .config import DaypartingConfig
from .types import (
    NEUTRAL_MULTIPLIER,
    AnomalyDetectionResult,
    BidMultiplier,
    ConfidenceLevel,
    DailySummary,
    DaypartingMode,
    FeedbackRecord,
    RollbackInfo,
    SafetyAction,
    SafetyCheckResult,
)

logger = get_logger(__name__)

# Minimum evaluated feedback before success-rate signals are trusted
MIN_FEEDBACK_FOR_DETECTION = 10
HEALTH_CHECK_FEEDBACK_WINDOW = 50
HEALTH_CHECK_MIN_SUCCESS_RATE = 0.5
ROLLBACK_COOLDOWN_HOURS = 24
# INSUFFICIENT buckets may drift this far from neutral before being reset
INSUFFICIENT_TOLERANCE = 0.1


@dataclass(frozen=True)
class SafetyCheckConfig:
    max_daily_loss: float = 5000.0
    performance_degradation_threshold: float = 0.15
    max_consecutive_bad_days: int = 3
    min_data_points_for_decision: int = 10
    bad_day_lookback_days: int = 7

    @classmethod
    def from_config(cls, config: DaypartingConfig) -> "SafetyCheckConfig":
        return cls(
            max_daily_loss=config.max_daily_loss,
            performance_degradation_threshold=config.rollback_threshold,
            max_consecutive_bad_days=settings.dayparting_max_consecutive_bad_days,
            min_data_points_for_decision=settings.dayparting_min_feedback_for_decision,
        )


DEFAULT_SAFETY_CHECK_CONFIG = SafetyCheckConfig()


@dataclass
class HealthCheckResult:
    healthy: bool
    mode: DaypartingMode
    active_multiplier_count: int
    recent_success_rate: Optional[float]
    anomalies: List[AnomalyDetectionResult]
    warnings: List[str]
    hours_since_last_rollback: Optional[float]


@dataclass
class RollbackExecution:
    """Result of a rollback: what to insert, what to close out, what to audit"""
    multipliers: List[BidMultiplier]
    deactivated: List[BidMultiplier]
    rollback: RollbackInfo


@dataclass(frozen=True)
class _CheckOutcome:
    action: SafetyAction
    adjusted_multiplier: Optional[float] = None
    block_reason: Optional[str] = None


# =============================================================================
# Helpers
# =============================================================================

def _today() -> date:
    return datetime.now(pytz.timezone(settings.timezone)).date()


def _find_summary_for(daily_summaries: List[DailySummary], day: date) -> Optional[DailySummary]:
    for summary in daily_summaries:
        if summary.day == day:
            return summary
    return None


def count_consecutive_bad_days(
    daily_summaries: List[DailySummary],
    degradation_threshold: float,
    lookback_days: Optional[int] = None
) -> int:
    """Trailing run of days (newest first) whose ROI is below -threshold"""
    ordered = sorted(daily_summaries, key=lambda s: s.day, reverse=True)
    if lookback_days is not None:
        ordered = ordered[:lookback_days]

    streak = 0
    for summary in ordered:
        if summary.roi < -degradation_threshold:
            streak += 1
        else:
            break
    return streak


def _evaluated(feedback: List[FeedbackRecord]) -> List[FeedbackRecord]:
    return [f for f in feedback if f.evaluated]


def _halfway_to_neutral(value: float) -> float:
    return round(NEUTRAL_MULTIPLIER + (value - NEUTRAL_MULTIPLIER) * 0.5, 4)


def _reduce_outcomes(outcomes: List[_CheckOutcome], proposed: float) -> _CheckOutcome:
    """
    Most severe action wins. Equal severity keeps the earlier check,
    except among REDUCE where the value closest to neutral wins.
    """
    winner = _CheckOutcome(SafetyAction.APPLY, proposed)
    for outcome in outcomes:
        if outcome.action.severity > winner.action.severity:
            winner = outcome
        elif (
            outcome.action == SafetyAction.REDUCE
            and winner.action == SafetyAction.REDUCE
            and abs(outcome.adjusted_multiplier - NEUTRAL_MULTIPLIER)
            < abs(winner.adjusted_multiplier - NEUTRAL_MULTIPLIER)
        ):
            winner = outcome
    return winner


# =============================================================================
# Safety check
# =============================================================================

def perform_safety_check(
    multiplier: BidMultiplier,
    config: DaypartingConfig,
    recent_feedback: List[FeedbackRecord],
    daily_summaries: List[DailySummary],
    safety_config: SafetyCheckConfig = None,
    today: date = None
) -> SafetyCheckResult:
    """
    Gate a proposed multiplier. Checks, in order:
    1. range re-validation          -> REDUCE to the nearest bound
    2. today's loss over ceiling    -> SKIP
    3. bucket success rate too low  -> REDUCE halfway to neutral
    4. consecutive bad days         -> ROLLBACK
    5. insufficient confidence      -> REDUCE to neutral
    """
    safety_config = safety_config or SafetyCheckConfig.from_config(config)
    today = today or _today()
    value = multiplier.multiplier

    warnings: List[str] = []
    outcomes: List[_CheckOutcome] = []

    # 1. Range
    if value > config.max_multiplier:
        warnings.append(f"Multiplier above maximum: {value} > {config.max_multiplier}")
        outcomes.append(_CheckOutcome(SafetyAction.REDUCE, config.max_multiplier))
    elif value < config.min_multiplier:
        warnings.append(f"Multiplier below minimum: {value} < {config.min_multiplier}")
        outcomes.append(_CheckOutcome(SafetyAction.REDUCE, config.min_multiplier))

    # 2. Daily loss ceiling
    today_summary = _find_summary_for(daily_summaries, today)
    if today_summary is not None and today_summary.loss > safety_config.max_daily_loss:
        reason = (
            f"Daily loss exceeds limit: {today_summary.loss:,.2f} > {safety_config.max_daily_loss:,.2f}"
        )
        outcomes.append(_CheckOutcome(SafetyAction.SKIP, None, reason))

    # 3. Bucket success rate
    bucket_feedback = [
        f for f in _evaluated(recent_feedback)
        if f.hour == multiplier.hour and f.day_of_week == multiplier.day_of_week
    ]
    if len(bucket_feedback) >= safety_config.min_data_points_for_decision:
        success_rate = sum(1 for f in bucket_feedback if f.is_success) / len(bucket_feedback)
        if success_rate < 1 - safety_config.performance_degradation_threshold:
            warnings.append(f"Success rate for this bucket dropped to {success_rate:.1%}")
            if value != NEUTRAL_MULTIPLIER:
                outcomes.append(_CheckOutcome(SafetyAction.REDUCE, _halfway_to_neutral(value)))

    # 4. Consecutive bad days
    bad_days = count_consecutive_bad_days(
        daily_summaries,
        safety_config.performance_degradation_threshold,
        safety_config.bad_day_lookback_days,
    )
    if bad_days >= safety_config.max_consecutive_bad_days:
        reason = f"Performance degraded for {bad_days} consecutive days"
        outcomes.append(_CheckOutcome(SafetyAction.ROLLBACK, NEUTRAL_MULTIPLIER, reason))

    # 5. Insufficient confidence
    if multiplier.confidence == ConfidenceLevel.INSUFFICIENT:
        warnings.append("Confidence is insufficient for this bucket")
        if abs(value - NEUTRAL_MULTIPLIER) > INSUFFICIENT_TOLERANCE:
            outcomes.append(_CheckOutcome(SafetyAction.REDUCE, NEUTRAL_MULTIPLIER))

    winner = _reduce_outcomes(outcomes, value)

    # Blocking reasons that lost the tie still surface as warnings
    for outcome in outcomes:
        if outcome.block_reason and outcome is not winner:
            warnings.append(outcome.block_reason)

    return SafetyCheckResult(
        is_safe=winner.block_reason is None,
        warnings=warnings,
        block_reason=winner.block_reason,
        recommended_action=winner.action,
        adjusted_multiplier=winner.adjusted_multiplier,
    )


def perform_batch_safety_check(
    multipliers: List[BidMultiplier],
    config: DaypartingConfig,
    recent_feedback: List[FeedbackRecord],
    daily_summaries: List[DailySummary],
    safety_config: SafetyCheckConfig = None,
    today: date = None
) -> Dict[str, SafetyCheckResult]:
    return {
        m.key: perform_safety_check(m, config, recent_feedback, daily_summaries, safety_config, today)
        for m in multipliers
    }


# =============================================================================
# Anomaly detection
# =============================================================================

def detect_loss_exceeded(
    daily_summaries: List[DailySummary],
    max_daily_loss: float,
    today: date = None
) -> AnomalyDetectionResult:
    today = today or _today()
    summary = _find_summary_for(daily_summaries, today)

    if summary is None:
        return AnomalyDetectionResult(False, "none", "No data for today", 0.0, max_daily_loss, False)

    loss = summary.loss
    if loss > max_daily_loss:
        return AnomalyDetectionResult(
            True, "loss_exceeded",
            f"Daily loss exceeds limit: {loss:,.2f} > {max_daily_loss:,.2f}",
            loss, max_daily_loss, True,
        )
    return AnomalyDetectionResult(False, "none", "Loss within limit", loss, max_daily_loss, False)


def detect_performance_drop(feedback: List[FeedbackRecord], threshold: float) -> AnomalyDetectionResult:
    """Average relative CVR change across evaluated feedback"""
    evaluated = _evaluated(feedback)
    if len(evaluated) < MIN_FEEDBACK_FOR_DETECTION:
        return AnomalyDetectionResult(False, "none", "Not enough feedback to judge", 0.0, threshold, False)

    changes = [
        (f.cvr_after - f.cvr_before) / f.cvr_before
        for f in evaluated
        if f.cvr_before > 0 and f.cvr_after is not None
    ]
    if not changes:
        return AnomalyDetectionResult(False, "none", "No usable feedback", 0.0, threshold, False)

    avg_change = sum(changes) / len(changes)
    if avg_change < -threshold:
        return AnomalyDetectionResult(
            True, "performance_drop",
            f"Average CVR dropped {abs(avg_change):.1%} (threshold {threshold:.1%})",
            avg_change, -threshold, True,
        )
    return AnomalyDetectionResult(False, "none", "Performance within range", avg_change, -threshold, False)


def detect_consecutive_bad_days(
    daily_summaries: List[DailySummary],
    max_consecutive_days: int,
    degradation_threshold: float
) -> AnomalyDetectionResult:
    streak = count_consecutive_bad_days(daily_summaries, degradation_threshold)

    if streak >= max_consecutive_days:
        return AnomalyDetectionResult(
            True, "consecutive_bad_days",
            f"Performance degraded for {streak} consecutive days (threshold {max_consecutive_days})",
            streak, max_consecutive_days, True,
        )
    return AnomalyDetectionResult(
        False, "none",
        f"{streak} consecutive bad days (threshold {max_consecutive_days})",
        streak, max_consecutive_days, False,
    )


def detect_anomalies(
    feedback: List[FeedbackRecord],
    daily_summaries: List[DailySummary],
    safety_config: SafetyCheckConfig = DEFAULT_SAFETY_CHECK_CONFIG,
    today: date = None
) -> List[AnomalyDetectionResult]:
    return [
        detect_loss_exceeded(daily_summaries, safety_config.max_daily_loss, today),
        detect_performance_drop(feedback, safety_config.performance_degradation_threshold),
        detect_consecutive_bad_days(
            daily_summaries,
            safety_config.max_consecutive_bad_days,
            safety_config.performance_degradation_threshold,
        ),
    ]


def perform_health_check(
    config: DaypartingConfig,
    multipliers: List[BidMultiplier],
    feedback: List[FeedbackRecord],
    daily_summaries: List[DailySummary],
    last_rollback_time: Optional[datetime],
    now: datetime = None,
    safety_config: SafetyCheckConfig = None
) -> HealthCheckResult:
    now = now or datetime.now(timezone.utc)
    safety_config = safety_config or SafetyCheckConfig.from_config(config)
    warnings: List[str] = []

    recent = _evaluated(feedback)[-HEALTH_CHECK_FEEDBACK_WINDOW:]
    recent_success_rate = None
    if len(recent) >= MIN_FEEDBACK_FOR_DETECTION:
        recent_success_rate = sum(1 for f in recent if f.is_success) / len(recent)
        if recent_success_rate < HEALTH_CHECK_MIN_SUCCESS_RATE:
            warnings.append(f"Success rate is low: {recent_success_rate:.1%}")
    else:
        warnings.append("Not enough feedback data")

    today = now.astimezone(pytz.timezone(settings.timezone)).date()
    anomalies = detect_anomalies(feedback, daily_summaries, safety_config, today)
    warnings.extend(a.message for a in anomalies if a.is_anomalous)

    hours_since_last_rollback = None
    if last_rollback_time is not None:
        hours_since_last_rollback = (now - last_rollback_time).total_seconds() / 3600
        if hours_since_last_rollback < ROLLBACK_COOLDOWN_HOURS:
            warnings.append(f"Rollback within the last 24h ({hours_since_last_rollback:.1f}h ago)")

    return HealthCheckResult(
        healthy=not warnings and not any(a.should_rollback for a in anomalies),
        mode=config.mode,
        active_multiplier_count=sum(1 for m in multipliers if m.is_active),
        recent_success_rate=recent_success_rate,
        anomalies=anomalies,
        warnings=warnings,
        hours_since_last_rollback=hours_since_last_rollback,
    )


# =============================================================================
# Rollback
# =============================================================================

def create_rollback_info(
    asin: str,
    campaign_id: str,
    reason: str,
    previous_multipliers: List[BidMultiplier],
    now: datetime = None
) -> RollbackInfo:
    return RollbackInfo(
        rollback_id=f"rollback_{uuid.uuid4()}",
        asin=asin,
        campaign_id=campaign_id,
        reason=reason,
        previous_multipliers=list(previous_multipliers),
        rolled_back_at=now or datetime.now(timezone.utc),
        restored_at=None,
    )


def execute_rollback(
    asin: str,
    campaign_id: str,
    multipliers: List[BidMultiplier],
    reason: str,
    now: datetime = None
) -> RollbackExecution:
    """
    Reset every active multiplier to neutral, keeping a snapshot for restore.
    Inactive inputs are ignored: the snapshot holds only the active records.
    """
    now = now or datetime.now(timezone.utc)
    active = [m for m in multipliers if m.is_active]

    rollback = create_rollback_info(asin, campaign_id, reason, active, now)
    neutral = [
        replace(
            m,
            multiplier=NEUTRAL_MULTIPLIER,
            is_active=True,
            effective_from=now,
            effective_to=None,
            created_at=now,
            updated_at=now,
            multiplier_id=f"daypart_{uuid.uuid4()}",
        )
        for m in active
    ]
    deactivated = [replace(m, is_active=False, effective_to=now, updated_at=now) for m in active]

    log_rollback(rollback)
    return RollbackExecution(multipliers=neutral, deactivated=deactivated, rollback=rollback)


def restore_from_rollback(
    rollback: RollbackInfo,
    now: datetime = None
) -> Tuple[List[BidMultiplier], RollbackInfo]:
    """Reactivate the snapshot unchanged; returns (multipliers, stamped rollback)"""
    now = now or datetime.now(timezone.utc)
    restored = [replace(m, is_active=True, effective_to=None) for m in rollback.previous_multipliers]
    return restored, replace(rollback, restored_at=now)


# =============================================================================
# Gradual application
# =============================================================================

def apply_gradual_change(current: float, target: float, max_change_per_step: float = 0.05) -> float:
    """Move at most `max_change_per_step` from current toward target"""
    step = max(-max_change_per_step, min(max_change_per_step, target - current))
    stepped = current + step

    # Rounding to cents must not push the step past the limit
    rounded = round(stepped, 2)
    if abs(rounded - current) > max_change_per_step:
        return stepped
    return rounded


def apply_gradual_changes(
    current_multipliers: List[BidMultiplier],
    target_multipliers: List[BidMultiplier],
    max_change_per_step: float = 0.05,
    now: datetime = None
) -> List[BidMultiplier]:
    """Buckets without a current value take the target directly"""
    now = now or datetime.now(timezone.utc)
    current_by_key = {m.key: m for m in current_multipliers if m.is_active}

    stepped = []
    for target in target_multipliers:
        current = current_by_key.get(target.key)
        if current is None:
            stepped.append(target)
            continue
        stepped.append(replace(
            target,
            multiplier=apply_gradual_change(current.multiplier, target.multiplier, max_change_per_step),
            updated_at=now,
        ))
    return stepped


# =============================================================================
# Logging
# =============================================================================

def log_safety_check_result(result: SafetyCheckResult, asin: str, campaign_id: str, hour: int):
    context = {
        "asin": asin,
        "campaign_id": campaign_id,
        "hour": hour,
        "recommended_action": result.recommended_action.value,
        "warnings": result.warnings,
    }
    if not result.is_safe:
        logger.warning(f"Safety check blocked hour {hour}: {result.block_reason}", extra={"context": context})
    elif result.warnings:
        context["adjusted_multiplier"] = result.adjusted_multiplier
        logger.info(f"Safety check passed with warnings for hour {hour}", extra={"context": context})


def log_rollback(rollback: RollbackInfo):
    logger.warning(
        f"Dayparting rollback executed for {rollback.asin}/{rollback.campaign_id}: {rollback.reason}",
        extra={"context": {
            "rollback_id": rollback.rollback_id,
            "multiplier_count": len(rollback.previous_multipliers),
            "rolled_back_at": rollback.rolled_back_at.isoformat() if rollback.rolled_back_at else None,
        }},
    )
