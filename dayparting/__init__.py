# Re-export the dayparting core for job and package usage
from .types import (
    DaypartingMode,
    ConfidenceLevel,
    HourClassification,
    SafetyAction,
    PerformanceSample,
    BucketAnalysisResult,
    BidMultiplier,
    FeedbackRecord,
    DailySummary,
    SafetyCheckResult,
    AnomalyDetectionResult,
    RollbackInfo,
)
from .errors import DaypartingError, InvalidConfigError, ConfigNotFoundError, FeedbackAlreadyEvaluatedError
from .config import DaypartingConfig, create_dayparting_config, validate_config, update_config
from .hourly_analyzer import analyze_hourly_performance, analyze_hourly_performance_by_day
from .multiplier_calculator import calculate_multipliers, apply_multiplier_to_bid, get_multiplier_for_time
from .safety_manager import (
    perform_safety_check,
    perform_batch_safety_check,
    create_rollback_info,
    execute_rollback,
    restore_from_rollback,
    apply_gradual_change,
)
from .feedback_evaluator import evaluate_feedback, create_feedback_record

__all__ = [
    "DaypartingMode",
    "ConfidenceLevel",
    "HourClassification",
    "SafetyAction",
    "PerformanceSample",
    "BucketAnalysisResult",
    "BidMultiplier",
    "FeedbackRecord",
    "DailySummary",
    "SafetyCheckResult",
    "AnomalyDetectionResult",
    "RollbackInfo",
    "DaypartingError",
    "InvalidConfigError",
    "ConfigNotFoundError",
    "FeedbackAlreadyEvaluatedError",
    "DaypartingConfig",
    "create_dayparting_config",
    "validate_config",
    "update_config",
    "analyze_hourly_performance",
    "analyze_hourly_performance_by_day",
    "calculate_multipliers",
    "apply_multiplier_to_bid",
    "get_multiplier_for_time",
    "perform_safety_check",
    "perform_batch_safety_check",
    "create_rollback_info",
    "execute_rollback",
    "restore_from_rollback",
    "apply_gradual_change",
    "evaluate_feedback",
    "create_feedback_record",
]
