"""
Central configuration for the dayparting system.
Uses pydantic-settings to load from environment with sane defaults.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # Core identifiers
    project_id: str = Field(default="amazon-ppc-474902", alias="GCP_PROJECT")
    dataset_id: str = Field(default="amazon_ppc", alias="BQ_DATASET")

    # Behavior
    dry_run: bool = Field(default=True, alias="DRY_RUN")
    timezone: str = Field(default="America/New_York", alias="TIMEZONE")

    # Hourly performance source (one row per entity per report hour)
    hourly_metrics_table: str = Field(default="search_term_report_hourly", alias="HOURLY_METRICS_TABLE")

    # Account bid limits (multiplied bids are clamped to these)
    min_bid: float = Field(default=0.2, alias="MIN_BID")
    max_bid: float = Field(default=3.0, alias="MAX_BID")

    # Per-entity dayparting defaults
    dayparting_mode: str = Field(default="SHADOW", alias="DAYPARTING_MODE")
    dayparting_enabled: bool = Field(default=False, alias="DAYPARTING_ENABLED")
    dayparting_max_multiplier: float = Field(default=1.3, alias="DAYPARTING_MAX_MULTIPLIER")
    dayparting_min_multiplier: float = Field(default=0.7, alias="DAYPARTING_MIN_MULTIPLIER")
    dayparting_significance_level: float = Field(default=0.05, alias="DAYPARTING_SIGNIFICANCE_LEVEL")
    dayparting_min_sample_size: int = Field(default=30, alias="DAYPARTING_MIN_SAMPLE_SIZE")
    dayparting_analysis_window_days: int = Field(default=14, alias="DAYPARTING_ANALYSIS_WINDOW_DAYS")
    dayparting_max_daily_loss: float = Field(default=5000.0, alias="DAYPARTING_MAX_DAILY_LOSS")
    dayparting_rollback_threshold: float = Field(default=0.15, alias="DAYPARTING_ROLLBACK_THRESHOLD")

    # Safety controller
    dayparting_max_consecutive_bad_days: int = Field(default=3, alias="DAYPARTING_MAX_BAD_DAYS")
    dayparting_min_feedback_for_decision: int = Field(default=10, alias="DAYPARTING_MIN_FEEDBACK")
    dayparting_max_change_per_step: float = Field(default=0.05, alias="DAYPARTING_MAX_STEP")
    dayparting_apply_smoothing: bool = Field(default=False, alias="DAYPARTING_SMOOTHING")
    dayparting_smoothing_weight: float = Field(default=0.6, alias="DAYPARTING_SMOOTHING_WEIGHT")

    # Feedback loop
    feedback_evaluation_delay_hours: int = Field(default=3, alias="FEEDBACK_DELAY_HOURS")
    feedback_lookback_days: int = Field(default=7, alias="FEEDBACK_LOOKBACK_DAYS")

    class Config:
        populate_by_name = True
        case_sensitive = False


# Single settings instance
settings = Settings()

__all__ = ["settings", "Settings"]
