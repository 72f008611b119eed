"""
Unit tests for safety checks, anomaly detection and rollback
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from dataclasses import replace
from dayparting.config import DaypartingConfig
from dayparting.safety_manager import (
    SafetyCheckConfig,
    perform_safety_check,
    perform_batch_safety_check,
    count_consecutive_bad_days,
    detect_loss_exceeded,
    detect_performance_drop,
    detect_consecutive_bad_days,
    perform_health_check,
    execute_rollback,
    restore_from_rollback,
    apply_gradual_change,
    apply_gradual_changes,
)
from dayparting.types import (
    BidMultiplier,
    ConfidenceLevel,
    DailySummary,
    DaypartingMode,
    FeedbackRecord,
    HourClassification,
    SafetyAction,
)

TODAY = date(2024, 6, 3)
NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def make_multiplier(hour=20, value=1.14, confidence=ConfidenceLevel.MEDIUM, day=None, active=True):
    return BidMultiplier(
        asin="B000TEST",
        campaign_id="123",
        ad_group_id=None,
        hour=hour,
        day_of_week=day,
        multiplier=value,
        confidence=confidence,
        classification=HourClassification.PEAK,
        effective_from=NOW - timedelta(days=1),
        is_active=active,
        multiplier_id=f"daypart_{hour}_{day}",
    )


def make_summary(day, spend, sales):
    return DailySummary(
        day=day,
        asin="B000TEST",
        campaign_id="123",
        mode=DaypartingMode.APPLY,
        actual_spend=spend,
        actual_sales=sales,
    )


def make_feedback(hour=20, success=True, cvr_before=0.1, cvr_after=0.1, evaluated=True):
    return FeedbackRecord(
        feedback_id=f"feedback_{hour}",
        asin="B000TEST",
        campaign_id="123",
        ad_group_id=None,
        hour=hour,
        day_of_week=None,
        applied_multiplier=1.14,
        applied_at=NOW - timedelta(hours=6),
        cvr_before=cvr_before,
        cvr_after=cvr_after if evaluated else None,
        is_success=success if evaluated else None,
        success_score=0.8 if success else 0.0,
        evaluated=evaluated,
    )


def bad_days(count):
    """Trailing days with ROI -50%"""
    return [make_summary(TODAY - timedelta(days=i + 1), spend=100.0, sales=50.0) for i in range(count)]


class TestSafetyCheck:
    def setup_method(self):
        self.config = DaypartingConfig(asin="B000TEST", campaign_id="123", max_daily_loss=40000.0)

    def check(self, multiplier, feedback=None, summaries=None):
        return perform_safety_check(multiplier, self.config, feedback or [], summaries or [], today=TODAY)

    def test_clean_multiplier_is_applied(self):
        result = self.check(make_multiplier())

        assert result.is_safe
        assert result.recommended_action == SafetyAction.APPLY
        assert result.adjusted_multiplier == 1.14
        assert result.block_reason is None
        assert result.warnings == []

    def test_out_of_range_is_reduced_to_bound(self):
        high = self.check(make_multiplier(value=1.5))
        low = self.check(make_multiplier(value=0.5))

        assert high.recommended_action == SafetyAction.REDUCE
        assert high.adjusted_multiplier == 1.3
        assert high.is_safe
        assert low.adjusted_multiplier == 0.7

    def test_daily_loss_blocks_change(self):
        """Spend 200,000 against sales 150,000 breaks a 40,000 ceiling"""
        summaries = [make_summary(TODAY, spend=200000.0, sales=150000.0)]
        result = self.check(make_multiplier(), summaries=summaries)

        assert not result.is_safe
        assert result.recommended_action == SafetyAction.SKIP
        assert result.adjusted_multiplier is None
        assert "Daily loss" in result.block_reason

    def test_yesterdays_loss_is_ignored(self):
        summaries = [make_summary(TODAY - timedelta(days=1), spend=200000.0, sales=150000.0)]
        assert self.check(make_multiplier(), summaries=summaries).is_safe

    def test_low_success_rate_pulls_halfway_to_neutral(self):
        feedback = [make_feedback(success=i % 2 == 0) for i in range(10)]
        result = self.check(make_multiplier(), feedback=feedback)

        assert result.recommended_action == SafetyAction.REDUCE
        assert result.adjusted_multiplier == pytest.approx(1.07)
        assert result.is_safe

    def test_success_rate_needs_enough_feedback(self):
        feedback = [make_feedback(success=False) for _ in range(9)]
        assert self.check(make_multiplier(), feedback=feedback).recommended_action == SafetyAction.APPLY

    def test_other_hours_feedback_is_ignored(self):
        feedback = [make_feedback(hour=9, success=False) for _ in range(10)]
        assert self.check(make_multiplier(), feedback=feedback).recommended_action == SafetyAction.APPLY

    def test_consecutive_bad_days_trigger_rollback(self):
        result = self.check(make_multiplier(), summaries=bad_days(3))

        assert not result.is_safe
        assert result.recommended_action == SafetyAction.ROLLBACK
        assert result.adjusted_multiplier == 1.0
        assert "3 consecutive days" in result.block_reason

    def test_two_bad_days_are_tolerated(self):
        assert self.check(make_multiplier(), summaries=bad_days(2)).is_safe

    def test_loss_skip_wins_tie_with_rollback(self):
        summaries = bad_days(3) + [make_summary(TODAY, spend=200000.0, sales=150000.0)]
        result = self.check(make_multiplier(), summaries=summaries)

        # Today's loss day is itself bad, so the rollback check fires too
        assert result.recommended_action == SafetyAction.SKIP
        assert any("consecutive days" in w for w in result.warnings)

    def test_insufficient_confidence_resets_to_neutral(self):
        result = self.check(make_multiplier(value=1.2, confidence=ConfidenceLevel.INSUFFICIENT))

        assert result.recommended_action == SafetyAction.REDUCE
        assert result.adjusted_multiplier == 1.0
        assert any("insufficient" in w for w in result.warnings)

    def test_insufficient_close_to_neutral_only_warns(self):
        result = self.check(make_multiplier(value=1.05, confidence=ConfidenceLevel.INSUFFICIENT))

        assert result.recommended_action == SafetyAction.APPLY
        assert result.warnings

    def test_reduce_closest_to_neutral_wins(self):
        """Range says 1.3, insufficient confidence says 1.0"""
        result = self.check(make_multiplier(value=1.5, confidence=ConfidenceLevel.INSUFFICIENT))

        assert result.recommended_action == SafetyAction.REDUCE
        assert result.adjusted_multiplier == 1.0
        assert len(result.warnings) == 2

    def test_safety_config_from_entity_config(self):
        safety_config = SafetyCheckConfig.from_config(self.config)

        assert safety_config.max_daily_loss == 40000.0
        assert safety_config.performance_degradation_threshold == 0.15

    def test_batch_is_keyed_by_bucket(self):
        multipliers = [make_multiplier(20), make_multiplier(20, day=3), make_multiplier(4, value=1.6)]
        results = perform_batch_safety_check(multipliers, self.config, [], [], today=TODAY)

        assert set(results) == {"20|all", "20|3", "4|all"}
        assert results["4|all"].recommended_action == SafetyAction.REDUCE


class TestAnomalyDetection:
    def test_loss_exceeded(self):
        summaries = [make_summary(TODAY, spend=9000.0, sales=1000.0)]

        result = detect_loss_exceeded(summaries, 5000.0, today=TODAY)
        assert result.is_anomalous
        assert result.anomaly_type == "loss_exceeded"
        assert result.should_rollback
        assert result.current_value == 8000.0

    def test_loss_without_data(self):
        result = detect_loss_exceeded([], 5000.0, today=TODAY)
        assert not result.is_anomalous
        assert result.anomaly_type == "none"

    def test_performance_drop(self):
        dropped = [make_feedback(cvr_before=0.1, cvr_after=0.08) for _ in range(10)]

        result = detect_performance_drop(dropped, 0.15)
        assert result.is_anomalous
        assert result.anomaly_type == "performance_drop"
        assert result.current_value == pytest.approx(-0.2)

    def test_performance_drop_needs_ten_records(self):
        dropped = [make_feedback(cvr_before=0.1, cvr_after=0.05) for _ in range(9)]
        assert not detect_performance_drop(dropped, 0.15).is_anomalous

    def test_consecutive_bad_days(self):
        assert detect_consecutive_bad_days(bad_days(3), 3, 0.15).is_anomalous
        assert not detect_consecutive_bad_days(bad_days(2), 3, 0.15).is_anomalous

    def test_streak_stops_at_first_good_day(self):
        summaries = bad_days(2) + [make_summary(TODAY - timedelta(days=3), spend=100.0, sales=300.0)]
        summaries += [make_summary(TODAY - timedelta(days=4), spend=100.0, sales=10.0)]
        assert count_consecutive_bad_days(summaries, 0.15) == 2


class TestHealthCheck:
    def setup_method(self):
        self.config = DaypartingConfig(asin="B000TEST", campaign_id="123")
        self.multipliers = [make_multiplier(h) for h in range(3)] + [make_multiplier(5, active=False)]

    def test_healthy(self):
        feedback = [make_feedback() for _ in range(10)]
        result = perform_health_check(self.config, self.multipliers, feedback, [], None, now=NOW)

        assert result.healthy
        assert result.active_multiplier_count == 3
        assert result.recent_success_rate == 1.0
        assert result.hours_since_last_rollback is None
        assert len(result.anomalies) == 3

    def test_not_enough_feedback_is_a_warning(self):
        result = perform_health_check(self.config, self.multipliers, [], [], None, now=NOW)

        assert not result.healthy
        assert result.recent_success_rate is None

    def test_low_success_rate_and_recent_rollback(self):
        feedback = [make_feedback(success=i < 3) for i in range(10)]
        result = perform_health_check(
            self.config, self.multipliers, feedback, [], NOW - timedelta(hours=2), now=NOW
        )

        assert not result.healthy
        assert result.recent_success_rate == pytest.approx(0.3)
        assert result.hours_since_last_rollback == pytest.approx(2.0)
        assert len(result.warnings) == 2


class TestRollback:
    def setup_method(self):
        self.active = [make_multiplier(20, 1.2), make_multiplier(3, 0.8), make_multiplier(9, 1.1, day=2)]
        self.multipliers = self.active + [make_multiplier(4, 0.9, active=False)]

    def test_execute_rollback_resets_every_active_bucket(self):
        execution = execute_rollback("B000TEST", "123", self.multipliers, "manual", now=NOW)

        assert len(execution.multipliers) == 3
        assert all(m.multiplier == 1.0 and m.is_active for m in execution.multipliers)
        assert {m.key for m in execution.multipliers} == {m.key for m in self.active}
        assert all(not m.is_active and m.effective_to == NOW for m in execution.deactivated)

    def test_snapshot_matches_previous_state(self):
        execution = execute_rollback("B000TEST", "123", self.multipliers, "manual", now=NOW)
        rollback = execution.rollback

        assert rollback.previous_multipliers == self.active
        # Inactive inputs stay out of the snapshot
        assert 4 not in [m.hour for m in rollback.previous_multipliers]
        assert rollback.reason == "manual"
        assert rollback.rolled_back_at == NOW
        assert rollback.restored_at is None
        assert rollback.rollback_id.startswith("rollback_")

    def test_restore_reactivates_snapshot(self):
        rollback = execute_rollback("B000TEST", "123", self.multipliers, "manual", now=NOW).rollback
        later = NOW + timedelta(hours=5)

        restored, stamped = restore_from_rollback(rollback, now=later)

        assert [m.multiplier for m in restored] == [1.2, 0.8, 1.1]
        assert all(m.is_active for m in restored)
        assert stamped.restored_at == later
        assert rollback.restored_at is None


class TestGradualChange:
    def test_step_is_bounded(self):
        assert apply_gradual_change(1.0, 1.3) == pytest.approx(1.05)
        assert apply_gradual_change(1.2, 1.0) == pytest.approx(1.15)
        assert apply_gradual_change(1.0, 1.02) == pytest.approx(1.02)
        assert apply_gradual_change(1.0, 1.3, max_change_per_step=0.1) == pytest.approx(1.1)

    def test_never_exceeds_step(self):
        for current, target in [(1.0, 1.3), (0.73, 1.29), (1.27, 0.7), (0.999, 1.001)]:
            stepped = apply_gradual_change(current, target, 0.05)
            assert abs(stepped - current) <= 0.05 + 1e-9

    def test_apply_gradual_changes(self):
        current = [make_multiplier(20, 1.0), make_multiplier(3, 1.0, active=False)]
        target = [make_multiplier(20, 1.2), make_multiplier(3, 0.7), make_multiplier(9, 1.1)]

        stepped = {m.hour: m.multiplier for m in apply_gradual_changes(current, target, 0.05, now=NOW)}

        assert stepped[20] == pytest.approx(1.05)
        # No active current value: the target is used as-is
        assert stepped[3] == 0.7
        assert stepped[9] == 1.1
