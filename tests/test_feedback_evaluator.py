"""
Unit tests for feedback evaluation and daily summaries
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from dayparting.errors import FeedbackAlreadyEvaluatedError
from dayparting.feedback_evaluator import (
    MetricsSnapshot,
    create_feedback_record,
    create_feedback_from_multiplier,
    is_ready_for_evaluation,
    evaluate_feedback,
    judge_success,
    calculate_success_rate,
    calculate_hourly_success_rates,
    calculate_multiplier_range_success_rates,
    create_daily_summary,
    calculate_daily_summary_effect,
    summarize_daily_effects,
)
from dayparting.types import BidMultiplier, ConfidenceLevel, DaypartingMode, HourClassification

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)
BEFORE = MetricsSnapshot(cvr=0.10, roas=2.0, clicks=200, conversions=20)


def make_feedback(multiplier=1.2, hour=20, applied_at=NOW - timedelta(hours=4)):
    return create_feedback_record("B000TEST", "123", None, hour, None, multiplier, BEFORE, applied_at=applied_at)


def evaluated(multiplier, cvr_after, roas_after, hour=20):
    return evaluate_feedback(
        make_feedback(multiplier, hour),
        MetricsSnapshot(cvr=cvr_after, roas=roas_after, clicks=100, conversions=10),
        now=NOW,
    )


class TestFeedbackCreation:
    def test_create_record(self):
        feedback = make_feedback()

        assert feedback.feedback_id.startswith("feedback_")
        assert feedback.cvr_before == 0.10
        assert feedback.clicks_before == 200
        assert not feedback.evaluated
        assert feedback.cvr_after is None

    def test_create_from_multiplier(self):
        multiplier = BidMultiplier(
            asin="B000TEST",
            campaign_id="123",
            ad_group_id="ag1",
            hour=7,
            day_of_week=2,
            multiplier=0.85,
            confidence=ConfidenceLevel.HIGH,
            classification=HourClassification.POOR,
            effective_from=NOW,
        )
        feedback = create_feedback_from_multiplier(multiplier, BEFORE, applied_at=NOW)

        assert (feedback.hour, feedback.day_of_week, feedback.ad_group_id) == (7, 2, "ag1")
        assert feedback.applied_multiplier == 0.85
        assert feedback.applied_at == NOW

    def test_ready_after_delay(self):
        assert is_ready_for_evaluation(make_feedback(), now=NOW, delay_hours=3)
        assert not is_ready_for_evaluation(make_feedback(applied_at=NOW - timedelta(hours=2)), now=NOW, delay_hours=3)

    def test_evaluated_record_is_never_ready(self):
        assert not is_ready_for_evaluation(evaluated(1.2, 0.1, 2.0), now=NOW, delay_hours=0)


class TestJudgeSuccess:
    def test_boost_success_scales_with_improvement(self):
        is_success, score = judge_success(0.10, 0.10, 1.2)
        assert is_success
        assert score == pytest.approx(1.0)

        is_success, score = judge_success(0.0, 0.0, 1.2)
        assert score == pytest.approx(0.65)

    def test_boost_tolerated(self):
        assert judge_success(-0.10, 0.0, 1.2) == (True, 0.3)

    def test_boost_failure(self):
        assert judge_success(-0.20, 0.0, 1.2) == (False, 0.0)

    def test_reduce(self):
        assert judge_success(-0.10, 0.05, 0.85)[0]
        assert judge_success(-0.10, -0.05, 0.85) == (True, 0.3)
        assert judge_success(-0.20, -0.05, 0.85) == (False, 0.0)

    def test_neutral(self):
        assert judge_success(0.05, -0.05, 1.0) == (True, 0.5)
        assert judge_success(0.20, 0.0, 1.0) == (False, 0.0)


class TestEvaluateFeedback:
    def test_evaluation_fills_after_metrics(self):
        result = evaluated(1.2, 0.11, 2.2)

        assert result.evaluated
        assert result.evaluated_at == NOW
        assert result.cvr_after == 0.11
        assert result.roas_after == 2.2
        assert result.clicks_after == 100
        assert result.is_success
        assert result.success_score == pytest.approx(1.0)

    def test_zero_baseline_counts_as_no_change(self):
        feedback = create_feedback_record(
            "B000TEST", "123", None, 20, None, 1.0, MetricsSnapshot(0.0, 0.0, 0, 0), applied_at=NOW
        )
        result = evaluate_feedback(feedback, MetricsSnapshot(0.2, 5.0, 10, 2), now=NOW)

        assert result.is_success
        assert result.success_score == 0.5

    def test_evaluate_once(self):
        result = evaluated(1.2, 0.11, 2.2)

        with pytest.raises(FeedbackAlreadyEvaluatedError):
            evaluate_feedback(result, MetricsSnapshot(0.1, 2.0, 1, 1))


class TestSuccessRates:
    def setup_method(self):
        self.feedback = [
            evaluated(1.2, 0.11, 2.2, hour=20),
            evaluated(1.2, 0.05, 2.0, hour=20),
            evaluated(0.8, 0.10, 2.5, hour=3),
            evaluated(1.0, 0.10, 2.0, hour=3),
            make_feedback(hour=20),
        ]

    def test_overall_rate_ignores_unevaluated(self):
        rate = calculate_success_rate(self.feedback)

        assert rate.count == 4
        assert rate.success_rate == pytest.approx(0.75)

    def test_empty(self):
        rate = calculate_success_rate([])
        assert (rate.success_rate, rate.count, rate.avg_score) == (0.0, 0, 0.0)

    def test_hourly(self):
        rates = calculate_hourly_success_rates(self.feedback)

        assert len(rates) == 24
        assert rates[20].count == 2
        assert rates[20].success_rate == pytest.approx(0.5)
        assert rates[3].success_rate == pytest.approx(1.0)
        assert rates[0].count == 0

    def test_multiplier_ranges(self):
        rates = calculate_multiplier_range_success_rates(self.feedback)

        assert rates.boost.count == 2
        assert rates.reduce.count == 1
        assert rates.neutral.count == 1
        assert rates.neutral.avg_score == pytest.approx(0.5)


class TestDailySummary:
    def test_incremental_values(self):
        summary = create_daily_summary(
            date(2024, 6, 3), "B000TEST", "123", DaypartingMode.APPLY,
            impressions=10000, clicks=500, conversions=50, sales=1000.0, spend=400.0,
            estimated={"impressions": 9000, "clicks": 400, "conversions": 40, "sales": 800.0},
        )

        assert summary.incremental_sales == 200.0
        assert summary.incremental_clicks == 100
        assert summary.loss == -600.0

    def test_shadow_day_has_no_increment(self):
        summary = create_daily_summary(
            date(2024, 6, 3), "B000TEST", "123", DaypartingMode.SHADOW,
            impressions=10000, clicks=500, conversions=50, sales=1000.0, spend=400.0,
        )
        assert summary.incremental_sales == 0.0
        assert calculate_daily_summary_effect(summary).is_positive is False

    def test_effect(self):
        """Increment is 20% of sales, so 20% of spend is attributed to it"""
        summary = create_daily_summary(
            date(2024, 6, 3), "B000TEST", "123", DaypartingMode.APPLY,
            impressions=10000, clicks=500, conversions=50, sales=1000.0, spend=400.0,
            estimated={"impressions": 9000, "clicks": 400, "conversions": 40, "sales": 800.0},
        )
        effect = calculate_daily_summary_effect(summary)

        assert effect.incremental_roi == pytest.approx(1.5)
        assert effect.incremental_roas == pytest.approx(2.5)
        assert effect.incremental_cvr == pytest.approx(0.1)
        assert effect.is_positive

    def test_zero_sales_day(self):
        summary = create_daily_summary(
            date(2024, 6, 3), "B000TEST", "123", DaypartingMode.APPLY,
            impressions=100, clicks=10, conversions=0, sales=0.0, spend=50.0,
        )
        effect = calculate_daily_summary_effect(summary)

        assert (effect.incremental_roi, effect.incremental_roas, effect.incremental_cvr) == (0.0, 0.0, 0.0)
        assert not effect.is_positive

    def test_summarize_skips_zero_sales_days(self):
        good = create_daily_summary(
            date(2024, 6, 3), "B000TEST", "123", DaypartingMode.APPLY,
            impressions=10000, clicks=500, conversions=50, sales=1000.0, spend=400.0,
            estimated={"impressions": 9000, "clicks": 400, "conversions": 40, "sales": 800.0},
        )
        empty = create_daily_summary(
            date(2024, 6, 2), "B000TEST", "123", DaypartingMode.APPLY,
            impressions=100, clicks=10, conversions=0, sales=0.0, spend=50.0,
        )
        result = summarize_daily_effects([good, empty])

        assert result.days == 1
        assert result.positive_days == 1
        assert result.total_incremental_sales == 200.0
        assert result.avg_incremental_roi == pytest.approx(1.5)
