"""
Dayparting engine

Per entity: analyze -> calculate -> safety-check -> gradual step -> persist.
Also applies the current multiplier to a bid according to the entity's mode,
evaluates pending feedback and runs rollbacks.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytz

from shared.bigquery_client import BigQueryClient
from shared.config import settings
from shared.logger import get_logger

from .config import DaypartingConfig, create_dayparting_config, ensure_valid_config, update_config
from .errors import ConfigNotFoundError
from .feedback_evaluator import (
    MetricsSnapshot,
    create_feedback_from_multiplier,
    evaluate_feedback,
    is_ready_for_evaluation,
    log_feedback_evaluation,
)
from .hourly_analyzer import (
    AnalysisSummary,
    analyze_hourly_performance,
    generate_analysis_summary,
    log_analysis_results,
)
from .multiplier_calculator import (
    MultiplierCalculationOptions,
    MultiplierCalculationResult,
    apply_multiplier_to_bid,
    calculate_multiplier_diff,
    calculate_multiplier_stats,
    generate_multiplier_id,
    get_multiplier_for_time,
    calculate_multipliers,
    log_multiplier_calculation,
)
from .safety_manager import (
    HealthCheckResult,
    execute_rollback,
    log_safety_check_result,
    perform_batch_safety_check,
    perform_health_check,
    restore_from_rollback,
    apply_gradual_changes,
)
from .types import (
    NEUTRAL_MULTIPLIER,
    BidMultiplier,
    BucketAnalysisResult,
    DaypartingMode,
    RollbackInfo,
    SafetyAction,
    SafetyCheckResult,
)

logger = get_logger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_SKIPPED = "SKIPPED"
STATUS_ERROR = "ERROR"


@dataclass
class AnalysisRunResult:
    asin: str
    campaign_id: str
    status: str
    analysis_results: List[BucketAnalysisResult] = field(default_factory=list)
    multipliers: List[BidMultiplier] = field(default_factory=list)
    safety_results: Dict[str, SafetyCheckResult] = field(default_factory=dict)
    summary: Optional[AnalysisSummary] = None
    rolled_back: bool = False
    error: Optional[str] = None
    ad_group_id: Optional[str] = None


@dataclass
class BatchRunResult:
    execution_id: str
    start_time: datetime
    end_time: datetime
    total_configs: int = 0
    success_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    results: List[AnalysisRunResult] = field(default_factory=list)


@dataclass
class ApplyMultiplierResult:
    asin: str
    campaign_id: str
    hour: int
    day_of_week: int
    original_bid: float
    adjusted_bid: float
    multiplier: float
    applied: bool
    mode: DaypartingMode
    reason: Optional[str] = None


class DaypartingEngine:
    def __init__(self, repository=None):
        """`repository` defaults to the BigQuery client; tests pass a mock"""
        self.repository = repository or BigQueryClient()
        self.tz = pytz.timezone(settings.timezone)

    def _local_now(self, now: datetime = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now.astimezone(self.tz)

    @staticmethod
    def _hour_and_day(local_now: datetime):
        # day_of_week: 0 = Sunday
        return local_now.hour, (local_now.weekday() + 1) % 7

    # =========================================================================
    # Config
    # =========================================================================

    def create_or_update_config(
        self,
        asin: str,
        campaign_id: str,
        ad_group_id: Optional[str] = None,
        **overrides
    ) -> DaypartingConfig:
        """Raises InvalidConfigError before anything is written"""
        existing = self.repository.fetch_config(asin, campaign_id, ad_group_id)
        if existing is not None:
            config = update_config(existing, **overrides)
        else:
            config = ensure_valid_config(create_dayparting_config(asin, campaign_id, ad_group_id, **overrides))

        self.repository.save_config(config)
        logger.info(
            f"Saved dayparting config for {asin}/{campaign_id}: mode={config.mode.value} enabled={config.enabled}"
        )
        return config

    def get_config(self, asin: str, campaign_id: str, ad_group_id: Optional[str] = None) -> Optional[DaypartingConfig]:
        return self.repository.fetch_config(asin, campaign_id, ad_group_id)

    # =========================================================================
    # Analysis
    # =========================================================================

    def _calculation_options(self) -> MultiplierCalculationOptions:
        return MultiplierCalculationOptions(
            apply_smoothing=settings.dayparting_apply_smoothing,
            smoothing_weight=settings.dayparting_smoothing_weight,
        )

    @staticmethod
    def _accept(
        proposed: List[BidMultiplier],
        current: List[BidMultiplier],
        safety_results: Dict[str, SafetyCheckResult]
    ) -> List[BidMultiplier]:
        """REDUCE takes the adjusted value; SKIP keeps the current value (or nothing)"""
        current_by_key = {m.key: m for m in current if m.is_active}
        accepted = []

        for m in proposed:
            result = safety_results[m.key]
            if result.recommended_action == SafetyAction.REDUCE:
                accepted.append(replace(m, multiplier=result.adjusted_multiplier))
            elif result.recommended_action == SafetyAction.SKIP:
                existing = current_by_key.get(m.key)
                if existing is not None:
                    accepted.append(replace(m, multiplier=existing.multiplier))
            else:
                accepted.append(m)

        return accepted

    def run_analysis(
        self,
        asin: str,
        campaign_id: str,
        ad_group_id: Optional[str] = None,
        now: datetime = None
    ) -> AnalysisRunResult:
        now = now or datetime.now(timezone.utc)

        try:
            config = self.get_config(asin, campaign_id, ad_group_id)
            if config is None:
                return AnalysisRunResult(
                    asin, campaign_id, STATUS_SKIPPED, ad_group_id=ad_group_id, error="Config not found"
                )
            if not config.enabled or config.mode == DaypartingMode.OFF:
                return AnalysisRunResult(
                    asin, campaign_id, STATUS_SKIPPED, ad_group_id=ad_group_id, error="Dayparting is disabled"
                )

            samples = self.repository.get_hourly_samples(
                asin, campaign_id, ad_group_id, window_days=config.analysis_window_days
            )
            if not samples:
                return AnalysisRunResult(
                    asin, campaign_id, STATUS_SKIPPED, ad_group_id=ad_group_id, error="No metrics available"
                )

            analysis_results = analyze_hourly_performance(samples, config.significance_level)
            calculation = calculate_multipliers(analysis_results, config, self._calculation_options(), now=now)

            current = self.repository.fetch_active_multipliers(asin, campaign_id)
            feedback = self.repository.fetch_recent_feedback(asin, campaign_id)
            summaries = self.repository.get_daily_summaries(asin, campaign_id, config.mode)

            safety_results = perform_batch_safety_check(
                calculation.multipliers, config, feedback, summaries,
                today=self._local_now(now).date(),
            )
            for m in calculation.multipliers:
                log_safety_check_result(safety_results[m.key], asin, campaign_id, m.hour)

            summary = generate_analysis_summary(analysis_results)
            log_analysis_results(analysis_results, asin, campaign_id)

            rollback = next(
                (r for r in safety_results.values() if r.recommended_action == SafetyAction.ROLLBACK),
                None
            )
            if rollback is not None:
                self.perform_rollback(asin, campaign_id, rollback.block_reason, now=now)
                return AnalysisRunResult(
                    asin, campaign_id, STATUS_SUCCESS,
                    ad_group_id=ad_group_id,
                    analysis_results=analysis_results,
                    safety_results=safety_results,
                    summary=summary,
                    rolled_back=True,
                )

            accepted = self._accept(calculation.multipliers, current, safety_results)
            final = apply_gradual_changes(current, accepted, settings.dayparting_max_change_per_step, now=now)

            diff = calculate_multiplier_diff(final, current)
            logger.info(
                f"Multiplier changes for {asin}/{campaign_id}: "
                f"{len(diff.added)} added, {len(diff.changed)} changed, "
                f"{len(diff.unchanged)} unchanged, {len(diff.removed)} removed"
            )

            self.repository.deactivate_multipliers(asin, campaign_id)
            self.repository.save_multipliers(final)

            log_multiplier_calculation(
                MultiplierCalculationResult(final, calculate_multiplier_stats(final)), asin, campaign_id
            )

            return AnalysisRunResult(
                asin, campaign_id, STATUS_SUCCESS,
                ad_group_id=ad_group_id,
                analysis_results=analysis_results,
                multipliers=final,
                safety_results=safety_results,
                summary=summary,
            )

        except Exception as e:
            logger.error(f"❌ Dayparting analysis failed for {asin}/{campaign_id}: {e}", exc_info=True)
            return AnalysisRunResult(asin, campaign_id, STATUS_ERROR, ad_group_id=ad_group_id, error=str(e))

    def run_batch_analysis(self, now: datetime = None) -> BatchRunResult:
        start_time = datetime.now(timezone.utc)
        execution_id = f"daypart_batch_{int(start_time.timestamp() * 1000)}"
        logger.info(f"Starting dayparting batch analysis {execution_id}")

        configs = self.repository.fetch_enabled_configs()
        batch = BatchRunResult(execution_id, start_time, start_time, total_configs=len(configs))

        for config in configs:
            result = self.run_analysis(config.asin, config.campaign_id, config.ad_group_id, now=now)
            batch.results.append(result)

            if result.status == STATUS_SUCCESS:
                batch.success_count += 1
            elif result.status == STATUS_SKIPPED:
                batch.skipped_count += 1
            else:
                batch.error_count += 1

        batch.end_time = datetime.now(timezone.utc)
        logger.info(
            f"Dayparting batch analysis completed: {batch.success_count} success, "
            f"{batch.skipped_count} skipped, {batch.error_count} errors",
            extra={"context": {
                "execution_id": execution_id,
                "total_configs": batch.total_configs,
                "duration_ms": int((batch.end_time - start_time).total_seconds() * 1000),
            }},
        )
        return batch

    # =========================================================================
    # Application
    # =========================================================================

    def get_current_multiplier(self, asin: str, campaign_id: str, now: datetime = None) -> Optional[BidMultiplier]:
        hour, day_of_week = self._hour_and_day(self._local_now(now))
        multipliers = self.repository.fetch_active_multipliers(asin, campaign_id)
        return get_multiplier_for_time(multipliers, hour, day_of_week)

    def apply_multiplier(
        self,
        asin: str,
        campaign_id: str,
        base_bid: float,
        ad_group_id: Optional[str] = None,
        now: datetime = None
    ) -> ApplyMultiplierResult:
        """
        OFF: bid untouched, nothing recorded.
        SHADOW: bid untouched, feedback recorded.
        APPLY: bid scaled, feedback recorded.
        """
        now = now or datetime.now(timezone.utc)
        hour, day_of_week = self._hour_and_day(self._local_now(now))

        def unchanged(mode, reason, multiplier=NEUTRAL_MULTIPLIER):
            return ApplyMultiplierResult(
                asin, campaign_id, hour, day_of_week,
                original_bid=base_bid, adjusted_bid=base_bid, multiplier=multiplier,
                applied=False, mode=mode, reason=reason,
            )

        config = self.get_config(asin, campaign_id, ad_group_id)
        if config is None:
            return unchanged(DaypartingMode.OFF, "Config not found")
        if not config.enabled:
            return unchanged(config.mode, "Dayparting disabled")
        if config.mode == DaypartingMode.OFF:
            return unchanged(config.mode, "Dayparting mode is OFF")

        multiplier = self.get_current_multiplier(asin, campaign_id, now=now)
        if multiplier is None:
            return unchanged(config.mode, "No multiplier found for current hour")

        before = self.repository.get_bucket_metrics(
            asin, campaign_id, multiplier.hour, multiplier.day_of_week,
            now - timedelta(days=config.analysis_window_days), now,
        ) or MetricsSnapshot(0.0, 0.0, 0, 0)
        self.repository.save_feedback(create_feedback_from_multiplier(multiplier, before, applied_at=now))

        if config.mode == DaypartingMode.SHADOW:
            return unchanged(config.mode, "Shadow mode", multiplier=multiplier.multiplier)

        adjusted_bid = apply_multiplier_to_bid(base_bid, multiplier.multiplier)
        logger.info(
            f"📈 {asin}/{campaign_id} hour {hour}: ${base_bid:.2f} → ${adjusted_bid:.2f} "
            f"(x{multiplier.multiplier})"
        )
        return ApplyMultiplierResult(
            asin, campaign_id, hour, day_of_week,
            original_bid=base_bid, adjusted_bid=adjusted_bid, multiplier=multiplier.multiplier,
            applied=True, mode=config.mode,
        )

    # =========================================================================
    # Feedback
    # =========================================================================

    def evaluate_pending_feedback(self, now: datetime = None) -> int:
        now = now or datetime.now(timezone.utc)
        pending = self.repository.fetch_unevaluated_feedback()
        evaluated_count = 0

        for feedback in pending:
            if not is_ready_for_evaluation(feedback, now):
                continue
            try:
                after = self.repository.get_bucket_metrics(
                    feedback.asin, feedback.campaign_id, feedback.hour, feedback.day_of_week,
                    feedback.applied_at, now,
                )
                if after is None:
                    logger.warning(f"No metrics yet for feedback {feedback.feedback_id}")
                    continue

                evaluated = evaluate_feedback(feedback, after, now=now)
                self.repository.update_feedback_evaluation(evaluated)
                log_feedback_evaluation(evaluated)
                evaluated_count += 1
            except Exception as e:
                logger.error(f"Error evaluating feedback {feedback.feedback_id}: {e}", exc_info=True)

        logger.info(f"Feedback evaluation completed: {evaluated_count}/{len(pending)} evaluated")
        return evaluated_count

    # =========================================================================
    # Rollback / health
    # =========================================================================

    def perform_rollback(self, asin: str, campaign_id: str, reason: str, now: datetime = None) -> RollbackInfo:
        current = self.repository.fetch_active_multipliers(asin, campaign_id)
        execution = execute_rollback(asin, campaign_id, current, reason, now=now)

        self.repository.deactivate_multipliers(asin, campaign_id)
        self.repository.save_multipliers(execution.multipliers)
        self.repository.save_rollback(execution.rollback)
        return execution.rollback

    def restore_last_rollback(self, asin: str, campaign_id: str, now: datetime = None) -> List[BidMultiplier]:
        """Returns the reactivated multipliers; empty when there is nothing to restore"""
        now = now or datetime.now(timezone.utc)
        rollback = self.repository.fetch_latest_rollback(asin, campaign_id)
        if rollback is None or rollback.restored_at is not None:
            logger.warning(f"No rollback to restore for {asin}/{campaign_id}")
            return []

        restored, stamped = restore_from_rollback(rollback, now=now)
        # Fresh ids so the reactivated rows don't collide with the closed ones
        persisted = [
            replace(m, multiplier_id=generate_multiplier_id(), effective_from=now, updated_at=now)
            for m in restored
        ]

        self.repository.deactivate_multipliers(asin, campaign_id)
        self.repository.save_multipliers(persisted)
        self.repository.mark_rollback_restored(stamped)
        logger.info(f"✅ Restored {len(persisted)} multipliers for {asin}/{campaign_id} from {rollback.rollback_id}")
        return persisted

    def run_health_check(
        self,
        asin: str,
        campaign_id: str,
        ad_group_id: Optional[str] = None,
        now: datetime = None
    ) -> HealthCheckResult:
        config = self.get_config(asin, campaign_id, ad_group_id)
        if config is None:
            raise ConfigNotFoundError(asin, campaign_id, ad_group_id)

        multipliers = self.repository.fetch_active_multipliers(asin, campaign_id)
        feedback = self.repository.fetch_recent_feedback(asin, campaign_id)
        summaries = self.repository.get_daily_summaries(asin, campaign_id, config.mode)
        last_rollback = self.repository.fetch_latest_rollback(asin, campaign_id)

        result = perform_health_check(
            config, multipliers, feedback, summaries,
            last_rollback.rolled_back_at if last_rollback else None,
            now=now,
        )
        if not result.healthy:
            logger.warning(
                f"⚠️ Dayparting health check failed for {asin}/{campaign_id}",
                extra={"context": {"warnings": result.warnings}},
            )
        return result


__all__ = [
    "DaypartingEngine",
    "AnalysisRunResult",
    "BatchRunResult",
    "ApplyMultiplierResult",
]
