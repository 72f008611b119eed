"""
Per-entity dayparting configuration and threshold tables

Threshold tables are plain frozen dataclasses passed into every call, so a
test or a single entity can override them without touching module state.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from shared.config import settings
from shared.logger import get_logger

from .errors import InvalidConfigError
from .types import ConfidenceLevel, DaypartingMode, HourClassification

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfidenceThresholds:
    """Minimum sample size and maximum p-value per confidence tier"""
    high_min_samples: int = 100
    medium_min_samples: int = 50
    low_min_samples: int = 30
    high_max_p_value: float = 0.01
    medium_max_p_value: float = 0.05
    low_max_p_value: float = 0.10
    # CVR samples need at least this many clicks to count
    min_clicks_for_cvr: int = 10


@dataclass(frozen=True)
class ClassificationThresholds:
    """Lower edges of the relative-performance bands; DEAD is everything below `poor`"""
    peak: float = 1.3
    good: float = 1.1
    average: float = 0.9
    poor: float = 0.7


@dataclass(frozen=True)
class MultiplierThresholds:
    base_multipliers: Dict[HourClassification, float] = field(default_factory=lambda: {
        HourClassification.PEAK: 1.2,
        HourClassification.GOOD: 1.1,
        HourClassification.AVERAGE: 1.0,
        HourClassification.POOR: 0.85,
        HourClassification.DEAD: 0.7,
    })
    confidence_factors: Dict[ConfidenceLevel, float] = field(default_factory=lambda: {
        ConfidenceLevel.HIGH: 1.0,
        ConfidenceLevel.MEDIUM: 0.7,
        ConfidenceLevel.LOW: 0.4,
        ConfidenceLevel.INSUFFICIENT: 0.0,
    })


@dataclass(frozen=True)
class AnalysisThresholds:
    confidence: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    classification: ClassificationThresholds = field(default_factory=ClassificationThresholds)
    multiplier: MultiplierThresholds = field(default_factory=MultiplierThresholds)


DEFAULT_THRESHOLDS = AnalysisThresholds()


@dataclass
class DaypartingConfig:
    asin: str
    campaign_id: str
    ad_group_id: Optional[str] = None

    mode: DaypartingMode = DaypartingMode.SHADOW
    enabled: bool = False

    max_multiplier: float = 1.3
    min_multiplier: float = 0.7

    significance_level: float = 0.05
    min_sample_size: int = 30
    analysis_window_days: int = 14

    max_daily_loss: float = 5000.0
    rollback_threshold: float = 0.15

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ConfigValidationResult:
    valid: bool
    errors: List[str]


def _parse_mode(value) -> DaypartingMode:
    try:
        return DaypartingMode(str(value).upper())
    except ValueError:
        logger.warning(f"Ignoring unknown dayparting mode {value!r}, using SHADOW")
        return DaypartingMode.SHADOW


def create_dayparting_config(
    asin: str,
    campaign_id: str,
    ad_group_id: Optional[str] = None,
    **overrides
) -> DaypartingConfig:
    """
    Build a config from the env-driven defaults in `settings`,
    then apply explicit overrides. Not validated here.
    """
    now = datetime.now(timezone.utc)

    values = {
        "mode": _parse_mode(settings.dayparting_mode),
        "enabled": settings.dayparting_enabled,
        "max_multiplier": settings.dayparting_max_multiplier,
        "min_multiplier": settings.dayparting_min_multiplier,
        "significance_level": settings.dayparting_significance_level,
        "min_sample_size": settings.dayparting_min_sample_size,
        "analysis_window_days": settings.dayparting_analysis_window_days,
        "max_daily_loss": settings.dayparting_max_daily_loss,
        "rollback_threshold": settings.dayparting_rollback_threshold,
        "created_at": now,
    }
    values.update(overrides)
    if "mode" in overrides:
        values["mode"] = _parse_mode(overrides["mode"])
    values["updated_at"] = now

    return DaypartingConfig(asin=asin, campaign_id=campaign_id, ad_group_id=ad_group_id, **values)


def validate_config(config: DaypartingConfig) -> ConfigValidationResult:
    """Collect every problem instead of stopping at the first one"""
    errors: List[str] = []

    if not config.asin:
        errors.append("asin is required")
    if not config.campaign_id:
        errors.append("campaign_id is required")

    if not isinstance(config.mode, DaypartingMode):
        errors.append(f"Invalid mode: {config.mode}")

    if config.max_multiplier < 1.0:
        errors.append(f"max_multiplier must be >= 1.0, got {config.max_multiplier}")
    if config.max_multiplier > 2.0:
        errors.append(f"max_multiplier must be <= 2.0, got {config.max_multiplier}")
    if config.min_multiplier > 1.0:
        errors.append(f"min_multiplier must be <= 1.0, got {config.min_multiplier}")
    if config.min_multiplier < 0.1:
        errors.append(f"min_multiplier must be >= 0.1, got {config.min_multiplier}")
    if config.min_multiplier >= config.max_multiplier:
        errors.append(
            f"min_multiplier ({config.min_multiplier}) must be < max_multiplier ({config.max_multiplier})"
        )

    if not 0 < config.significance_level < 1:
        errors.append(f"significance_level must be between 0 and 1, got {config.significance_level}")

    if config.min_sample_size < 1:
        errors.append(f"min_sample_size must be >= 1, got {config.min_sample_size}")

    if not 1 <= config.analysis_window_days <= 90:
        errors.append(f"analysis_window_days must be between 1 and 90, got {config.analysis_window_days}")

    if config.max_daily_loss < 0:
        errors.append(f"max_daily_loss must be >= 0, got {config.max_daily_loss}")

    if not 0 < config.rollback_threshold < 1:
        errors.append(f"rollback_threshold must be between 0 and 1, got {config.rollback_threshold}")

    return ConfigValidationResult(valid=not errors, errors=errors)


def ensure_valid_config(config: DaypartingConfig) -> DaypartingConfig:
    result = validate_config(config)
    if not result.valid:
        raise InvalidConfigError(result.errors)
    return config


def update_config(config: DaypartingConfig, **changes) -> DaypartingConfig:
    """Return an updated copy; raises InvalidConfigError and leaves `config` untouched"""
    if "mode" in changes:
        changes["mode"] = _parse_mode(changes["mode"])
    for locked in ("asin", "campaign_id", "ad_group_id", "created_at"):
        if locked in changes:
            raise ValueError(f"{locked} cannot be changed on an existing config")
    changes.pop("updated_at", None)

    updated = replace(config, **changes, updated_at=datetime.now(timezone.utc))
    return ensure_valid_config(updated)
