"""
Bid multiplier calculation

Turns bucket analysis into bounded multipliers:
confidence damping -> optional neighbour smoothing -> clip -> round
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from shared.config import settings
from shared.logger import get_logger

from .config import DaypartingConfig, MultiplierThresholds, DEFAULT_THRESHOLDS, ensure_valid_config
from .types import (
    DAYS_PER_WEEK,
    HOURS_PER_DAY,
    NEUTRAL_MULTIPLIER,
    BidMultiplier,
    BucketAnalysisResult,
    ConfidenceLevel,
    HourClassification,
    bucket_key,
)

logger = get_logger(__name__)

# Differences at or below this are treated as "no change"
DEFAULT_CHANGE_THRESHOLD = 0.01


@dataclass
class MultiplierCalculationOptions:
    max_multiplier: Optional[float] = None
    min_multiplier: Optional[float] = None
    apply_confidence_adjustment: bool = True
    apply_smoothing: bool = False
    smoothing_weight: float = 0.6


@dataclass
class MultiplierStats:
    total_count: int = 0
    boost_count: int = 0
    reduce_count: int = 0
    neutral_count: int = 0
    avg_multiplier: float = NEUTRAL_MULTIPLIER
    max_multiplier: float = NEUTRAL_MULTIPLIER
    min_multiplier: float = NEUTRAL_MULTIPLIER


@dataclass
class MultiplierCalculationResult:
    multipliers: List[BidMultiplier]
    stats: MultiplierStats


@dataclass
class MultiplierChange:
    old: BidMultiplier
    new: BidMultiplier
    diff: float


@dataclass
class MultiplierDiff:
    added: List[BidMultiplier] = field(default_factory=list)
    removed: List[BidMultiplier] = field(default_factory=list)
    changed: List[MultiplierChange] = field(default_factory=list)
    unchanged: List[BidMultiplier] = field(default_factory=list)


def generate_multiplier_id() -> str:
    return f"daypart_{uuid.uuid4()}"


# =============================================================================
# Calculation
# =============================================================================

def _raw_multiplier(
    result: BucketAnalysisResult,
    apply_confidence_adjustment: bool,
    thresholds: MultiplierThresholds
) -> float:
    if result.confidence == ConfidenceLevel.INSUFFICIENT:
        return NEUTRAL_MULTIPLIER

    base = thresholds.base_multipliers[result.classification]
    factor = thresholds.confidence_factors[result.confidence] if apply_confidence_adjustment else 1.0
    return NEUTRAL_MULTIPLIER + (base - NEUTRAL_MULTIPLIER) * factor


def smooth_multipliers(raw: Dict[str, float], center_weight: float = 0.6) -> Dict[str, float]:
    """
    Weighted average with the circular neighbours (hour-1, hour+1).

    All-days row: a missing neighbour counts as neutral.
    Weekday rows: a missing neighbour counts as the bucket itself.
    """
    smoothed: Dict[str, float] = {}
    side_weight = (1.0 - center_weight) / 2.0

    for day in [None] + list(range(DAYS_PER_WEEK)):
        for hour in range(HOURS_PER_DAY):
            key = bucket_key(hour, day)
            if day is None:
                current = raw.get(key, NEUTRAL_MULTIPLIER)
                fallback = NEUTRAL_MULTIPLIER
            elif key in raw:
                current = fallback = raw[key]
            else:
                continue

            prev = raw.get(bucket_key((hour + HOURS_PER_DAY - 1) % HOURS_PER_DAY, day), fallback)
            nxt = raw.get(bucket_key((hour + 1) % HOURS_PER_DAY, day), fallback)

            smoothed[bucket_key(hour, day)] = current * center_weight + (prev + nxt) * side_weight

    return smoothed


def calculate_multiplier_stats(multipliers: List[BidMultiplier]) -> MultiplierStats:
    if not multipliers:
        return MultiplierStats()

    values = [m.multiplier for m in multipliers]
    return MultiplierStats(
        total_count=len(values),
        boost_count=sum(1 for v in values if v > 1.01),
        reduce_count=sum(1 for v in values if v < 0.99),
        neutral_count=sum(1 for v in values if 0.99 <= v <= 1.01),
        avg_multiplier=sum(values) / len(values),
        max_multiplier=max(values),
        min_multiplier=min(values),
    )


def calculate_multipliers(
    results: List[BucketAnalysisResult],
    config: DaypartingConfig,
    options: MultiplierCalculationOptions = None,
    thresholds: MultiplierThresholds = None,
    now: datetime = None
) -> MultiplierCalculationResult:
    """
    Build one active BidMultiplier per analysed bucket.

    Raises InvalidConfigError when `config` does not validate.
    """
    ensure_valid_config(config)
    options = options or MultiplierCalculationOptions()
    thresholds = thresholds or DEFAULT_THRESHOLDS.multiplier
    now = now or datetime.now(timezone.utc)

    max_multiplier = options.max_multiplier if options.max_multiplier is not None else config.max_multiplier
    min_multiplier = options.min_multiplier if options.min_multiplier is not None else config.min_multiplier

    raw = {
        result.key: _raw_multiplier(result, options.apply_confidence_adjustment, thresholds)
        for result in results
    }
    if options.apply_smoothing:
        raw = smooth_multipliers(raw, options.smoothing_weight)

    multipliers = []
    for result in results:
        value = raw.get(result.key, NEUTRAL_MULTIPLIER)
        # Clip after rounding so bounds with finer precision still hold
        value = max(min_multiplier, min(max_multiplier, round(value, 2)))

        multipliers.append(BidMultiplier(
            asin=config.asin,
            campaign_id=config.campaign_id,
            ad_group_id=config.ad_group_id,
            hour=result.hour,
            day_of_week=result.day_of_week,
            multiplier=value,
            confidence=result.confidence,
            classification=result.classification,
            effective_from=now,
            effective_to=None,
            is_active=True,
            created_at=now,
            updated_at=now,
            multiplier_id=generate_multiplier_id(),
        ))

    return MultiplierCalculationResult(multipliers=multipliers, stats=calculate_multiplier_stats(multipliers))


# =============================================================================
# Lookup / application
# =============================================================================

def get_multiplier_for_time(
    multipliers: List[BidMultiplier],
    hour: int,
    day_of_week: int
) -> Optional[BidMultiplier]:
    """Weekday-specific record first, then the all-days record"""
    for m in multipliers:
        if m.is_active and m.hour == hour and m.day_of_week == day_of_week:
            return m
    for m in multipliers:
        if m.is_active and m.hour == hour and m.day_of_week is None:
            return m
    return None


def apply_multiplier_to_bid(
    base_bid: float,
    multiplier: float,
    min_bid: float = None,
    max_bid: float = None
) -> float:
    min_bid = settings.min_bid if min_bid is None else min_bid
    max_bid = settings.max_bid if max_bid is None else max_bid

    adjusted = round(base_bid * multiplier, 2)
    return max(min_bid, min(max_bid, adjusted))


def calculate_multiplier_diff(
    new_multipliers: List[BidMultiplier],
    old_multipliers: List[BidMultiplier],
    threshold: float = DEFAULT_CHANGE_THRESHOLD
) -> MultiplierDiff:
    """Audit view of what a new run changes; no side effects"""
    diff = MultiplierDiff()
    old_by_key = {m.key: m for m in old_multipliers}
    seen = set()

    for new in new_multipliers:
        seen.add(new.key)
        old = old_by_key.get(new.key)
        if old is None:
            diff.added.append(new)
        elif abs(new.multiplier - old.multiplier) > threshold:
            diff.changed.append(MultiplierChange(old=old, new=new, diff=round(new.multiplier - old.multiplier, 4)))
        else:
            diff.unchanged.append(new)

    diff.removed = [m for key, m in old_by_key.items() if key not in seen]
    return diff


# =============================================================================
# Helpers
# =============================================================================

def generate_default_multipliers(
    config: DaypartingConfig,
    include_by_day: bool = False,
    now: datetime = None
) -> List[BidMultiplier]:
    """Neutral multipliers for every hour (and optionally every hour x weekday)"""
    now = now or datetime.now(timezone.utc)
    days = [None] + (list(range(DAYS_PER_WEEK)) if include_by_day else [])

    return [
        BidMultiplier(
            asin=config.asin,
            campaign_id=config.campaign_id,
            ad_group_id=config.ad_group_id,
            hour=hour,
            day_of_week=day,
            multiplier=NEUTRAL_MULTIPLIER,
            confidence=ConfidenceLevel.INSUFFICIENT,
            classification=HourClassification.AVERAGE,
            effective_from=now,
            created_at=now,
            updated_at=now,
            multiplier_id=generate_multiplier_id(),
        )
        for day in days
        for hour in range(HOURS_PER_DAY)
    ]


def merge_multipliers(
    existing: List[BidMultiplier],
    updates: List[BidMultiplier],
    now: datetime = None
) -> List[BidMultiplier]:
    now = now or datetime.now(timezone.utc)
    merged = {m.key: m for m in existing}
    for m in updates:
        merged[m.key] = replace(m, updated_at=now)
    return list(merged.values())


def deactivate_multipliers(multipliers: List[BidMultiplier], now: datetime = None) -> List[BidMultiplier]:
    now = now or datetime.now(timezone.utc)
    return [replace(m, is_active=False, effective_to=now, updated_at=now) for m in multipliers]


def log_multiplier_calculation(result: MultiplierCalculationResult, asin: str, campaign_id: str):
    stats = result.stats
    logger.info(
        f"Multiplier calculation completed for {asin}/{campaign_id}: "
        f"{stats.boost_count} boost, {stats.reduce_count} reduce, {stats.neutral_count} neutral",
        extra={"context": {
            "asin": asin,
            "campaign_id": campaign_id,
            "total_count": stats.total_count,
            "avg_multiplier": round(stats.avg_multiplier, 2),
            "max_multiplier": round(stats.max_multiplier, 2),
            "min_multiplier": round(stats.min_multiplier, 2),
        }},
    )
