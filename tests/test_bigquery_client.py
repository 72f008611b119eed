"""
Unit tests for BigQuery persistence
"""

import json
import pytest
from datetime import datetime, timezone
from unittest.mock import patch
from dayparting.config import DaypartingConfig
from dayparting.types import BidMultiplier, ConfidenceLevel, DaypartingMode, HourClassification
from dayparting.feedback_evaluator import MetricsSnapshot, create_feedback_record
from shared.bigquery_client import (
    BigQueryClient,
    TABLE_SCHEMAS,
    config_to_row,
    row_to_config,
    multiplier_to_row,
    row_to_feedback,
    feedback_to_row,
)

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def make_multiplier(hour=20, value=1.2, day=None):
    return BidMultiplier(
        asin="B000TEST",
        campaign_id="123",
        ad_group_id=None,
        hour=hour,
        day_of_week=day,
        multiplier=value,
        confidence=ConfidenceLevel.MEDIUM,
        classification=HourClassification.PEAK,
        effective_from=NOW,
        created_at=NOW,
        multiplier_id="daypart_abc",
    )


class TestRowConversion:
    def test_config_row(self):
        config = DaypartingConfig(asin="B000TEST", campaign_id="123", mode=DaypartingMode.APPLY, enabled=True)
        row = config_to_row(config)

        assert row["config_id"] == "config_B000TEST_123_all"
        assert row["mode"] == "APPLY"
        assert row["ad_group_id"] is None

        restored = row_to_config(row)
        assert restored.mode == DaypartingMode.APPLY
        assert restored.enabled is True
        assert restored.max_multiplier == 1.3

    def test_multiplier_row(self):
        row = multiplier_to_row(make_multiplier(day=5))

        assert row["day_of_week"] == 5
        assert row["confidence"] == "MEDIUM"
        assert row["effective_from"] == NOW.isoformat()
        assert row["effective_to"] is None

    def test_multiplier_without_id_gets_one(self):
        multiplier = make_multiplier()
        multiplier.multiplier_id = None

        assert multiplier_to_row(multiplier)["multiplier_id"].startswith("daypart_")

    def test_feedback_row(self):
        feedback = create_feedback_record(
            "B000TEST", "123", None, 20, None, 1.2, MetricsSnapshot(0.1, 2.0, 100, 10), applied_at=NOW
        )
        row = feedback_to_row(feedback)
        row["applied_at"] = NOW

        restored = row_to_feedback(row)
        assert restored.feedback_id == feedback.feedback_id
        assert restored.day_of_week is None
        assert restored.cvr_before == 0.1
        assert restored.evaluated is False


class TestBigQueryClient:
    @patch('shared.bigquery_client.bigquery.Client')
    def test_hourly_samples(self, mock_client):
        mock_client.return_value.query.return_value.result.return_value = [{
            "asin": "B000TEST", "campaign_id": "123", "ad_group_id": "",
            "hour": 20, "day_of_week": 1, "impressions": 1000, "clicks": 100,
            "conversions": 8, "spend": 100.0, "sales": 300.0, "data_points": 2,
        }]
        client = BigQueryClient(project_id="test-project", dataset_id="test_dataset")

        samples = client.get_hourly_samples("B000TEST", "123", window_days=14)

        assert len(samples) == 1
        assert samples[0].ad_group_id is None
        assert samples[0].cvr == pytest.approx(0.08)
        assert samples[0].roas == pytest.approx(3.0)
        query = mock_client.return_value.query.call_args[0][0]
        assert "test-project.test_dataset.search_term_report_hourly" in query

    @patch('shared.bigquery_client.bigquery.Client')
    def test_read_errors_return_empty(self, mock_client):
        mock_client.return_value.query.side_effect = Exception("BigQuery unavailable")
        client = BigQueryClient()

        assert client.get_hourly_samples("B000TEST", "123") == []
        assert client.fetch_config("B000TEST", "123") is None
        assert client.get_bucket_metrics("B000TEST", "123", 20, None, NOW, NOW) is None

    @patch('shared.bigquery_client.bigquery.Client')
    def test_safety_inputs_raise_on_read_errors(self, mock_client):
        mock_client.return_value.query.side_effect = Exception("BigQuery unavailable")
        client = BigQueryClient()

        with pytest.raises(Exception):
            client.fetch_active_multipliers("B000TEST", "123")
        with pytest.raises(Exception):
            client.fetch_recent_feedback("B000TEST", "123")
        with pytest.raises(Exception):
            client.get_daily_summaries("B000TEST", "123", DaypartingMode.APPLY)

    @patch('shared.bigquery_client.bigquery.Client')
    def test_bucket_metrics(self, mock_client):
        mock_client.return_value.query.return_value.result.return_value = [
            {"clicks": 200, "conversions": 10, "spend": 50.0, "sales": 150.0}
        ]
        client = BigQueryClient()

        snapshot = client.get_bucket_metrics("B000TEST", "123", 20, 1, NOW, NOW)

        assert snapshot == MetricsSnapshot(cvr=0.05, roas=3.0, clicks=200, conversions=10)

    @patch('shared.bigquery_client.bigquery.Client')
    def test_bucket_metrics_without_clicks(self, mock_client):
        mock_client.return_value.query.return_value.result.return_value = [
            {"clicks": 0, "conversions": 0, "spend": 0, "sales": 0}
        ]
        client = BigQueryClient()

        snapshot = client.get_bucket_metrics("B000TEST", "123", 20, None, NOW, NOW)
        assert (snapshot.cvr, snapshot.roas) == (0.0, 0.0)

    @patch('shared.bigquery_client.bigquery.Client')
    def test_write_errors_raise(self, mock_client):
        mock_client.return_value.query.side_effect = Exception("BigQuery unavailable")
        client = BigQueryClient()

        with pytest.raises(Exception):
            client.deactivate_multipliers("B000TEST", "123")
        with pytest.raises(Exception):
            client.save_config(DaypartingConfig(asin="B000TEST", campaign_id="123"))

    @patch('shared.bigquery_client.bigquery.Client')
    def test_insert_errors_raise(self, mock_client):
        mock_client.return_value.insert_rows_json.return_value = [{"index": 0, "errors": ["bad row"]}]
        client = BigQueryClient()

        with pytest.raises(RuntimeError):
            client.save_multipliers([make_multiplier()])

    @patch('shared.bigquery_client.bigquery.Client')
    def test_save_multipliers(self, mock_client):
        mock_client.return_value.insert_rows_json.return_value = []
        client = BigQueryClient(project_id="test-project", dataset_id="test_dataset")

        client.save_multipliers([make_multiplier(20), make_multiplier(21)])

        table_id, rows = mock_client.return_value.insert_rows_json.call_args[0]
        assert table_id == "test-project.test_dataset.dayparting_multipliers"
        assert [r["hour"] for r in rows] == [20, 21]

    @patch('shared.bigquery_client.bigquery.Client')
    def test_save_nothing(self, mock_client):
        client = BigQueryClient()

        client.save_multipliers([])
        mock_client.return_value.insert_rows_json.assert_not_called()

    @patch('shared.bigquery_client.bigquery.Client')
    def test_rollback_snapshot_round_trip(self, mock_client):
        previous = [make_multiplier(20, 1.2), make_multiplier(3, 0.8, day=2)]
        mock_client.return_value.query.return_value.result.return_value = [{
            "rollback_id": "rollback_1",
            "asin": "B000TEST",
            "campaign_id": "123",
            "reason": "Manual",
            "previous_multipliers_json": json.dumps([multiplier_to_row(m) for m in previous]),
            "rolled_back_at": NOW,
            "restored_at": None,
        }]
        client = BigQueryClient()

        rollback = client.fetch_latest_rollback("B000TEST", "123")

        assert rollback.previous_multipliers == previous
        assert rollback.restored_at is None

    @patch('shared.bigquery_client.bigquery.Client')
    def test_ensure_tables(self, mock_client):
        mock_client.return_value.create_table.side_effect = [None, Exception("denied"), None, None]
        client = BigQueryClient()

        client.ensure_tables()

        assert mock_client.return_value.create_table.call_count == len(TABLE_SCHEMAS)
