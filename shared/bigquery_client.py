"""
BigQuery operations for dayparting
"""

import json
import uuid
from google.cloud import bigquery
from datetime import datetime, date, timedelta
from typing import List, Dict, Optional
import pytz
from .config import settings
from .logger import get_logger

from dayparting.config import DaypartingConfig
from dayparting.feedback_evaluator import MetricsSnapshot, create_daily_summary
from dayparting.types import (
    BidMultiplier,
    ConfidenceLevel,
    DailySummary,
    DaypartingMode,
    FeedbackRecord,
    HourClassification,
    PerformanceSample,
    RollbackInfo,
)

logger = get_logger(__name__)

CONFIGS_TABLE = "dayparting_configs"
MULTIPLIERS_TABLE = "dayparting_multipliers"
FEEDBACK_TABLE = "dayparting_feedback"
ROLLBACKS_TABLE = "dayparting_rollbacks"

TABLE_SCHEMAS = {
    CONFIGS_TABLE: [
        bigquery.SchemaField("config_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("asin", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("campaign_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("ad_group_id", "STRING"),
        bigquery.SchemaField("mode", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("enabled", "BOOL", mode="REQUIRED"),
        bigquery.SchemaField("max_multiplier", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("min_multiplier", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("significance_level", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("min_sample_size", "INT64", mode="REQUIRED"),
        bigquery.SchemaField("analysis_window_days", "INT64", mode="REQUIRED"),
        bigquery.SchemaField("max_daily_loss", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("rollback_threshold", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("created_at", "TIMESTAMP"),
        bigquery.SchemaField("updated_at", "TIMESTAMP"),
    ],
    MULTIPLIERS_TABLE: [
        bigquery.SchemaField("multiplier_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("asin", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("campaign_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("ad_group_id", "STRING"),
        bigquery.SchemaField("hour", "INT64", mode="REQUIRED"),
        bigquery.SchemaField("day_of_week", "INT64"),
        bigquery.SchemaField("multiplier", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("confidence", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("classification", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("effective_from", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("effective_to", "TIMESTAMP"),
        bigquery.SchemaField("is_active", "BOOL", mode="REQUIRED"),
        bigquery.SchemaField("created_at", "TIMESTAMP"),
        bigquery.SchemaField("updated_at", "TIMESTAMP"),
    ],
    FEEDBACK_TABLE: [
        bigquery.SchemaField("feedback_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("asin", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("campaign_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("ad_group_id", "STRING"),
        bigquery.SchemaField("hour", "INT64", mode="REQUIRED"),
        bigquery.SchemaField("day_of_week", "INT64"),
        bigquery.SchemaField("applied_multiplier", "FLOAT64", mode="REQUIRED"),
        bigquery.SchemaField("applied_at", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("evaluated_at", "TIMESTAMP"),
        bigquery.SchemaField("cvr_before", "FLOAT64"),
        bigquery.SchemaField("roas_before", "FLOAT64"),
        bigquery.SchemaField("clicks_before", "INT64"),
        bigquery.SchemaField("conversions_before", "INT64"),
        bigquery.SchemaField("cvr_after", "FLOAT64"),
        bigquery.SchemaField("roas_after", "FLOAT64"),
        bigquery.SchemaField("clicks_after", "INT64"),
        bigquery.SchemaField("conversions_after", "INT64"),
        bigquery.SchemaField("is_success", "BOOL"),
        bigquery.SchemaField("success_score", "FLOAT64"),
        bigquery.SchemaField("evaluated", "BOOL", mode="REQUIRED"),
    ],
    ROLLBACKS_TABLE: [
        bigquery.SchemaField("rollback_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("asin", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("campaign_id", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("reason", "STRING"),
        bigquery.SchemaField("previous_multipliers_json", "STRING"),
        bigquery.SchemaField("rolled_back_at", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("restored_at", "TIMESTAMP"),
    ],
}


# =============================================================================
# Row conversion
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value) -> Optional[datetime]:
    """BigQuery returns datetimes; the rollback snapshot stores ISO strings"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def config_to_row(config: DaypartingConfig) -> Dict:
    return {
        "config_id": f"config_{config.asin}_{config.campaign_id}_{config.ad_group_id or 'all'}",
        "asin": config.asin,
        "campaign_id": config.campaign_id,
        "ad_group_id": config.ad_group_id,
        "mode": config.mode.value,
        "enabled": config.enabled,
        "max_multiplier": config.max_multiplier,
        "min_multiplier": config.min_multiplier,
        "significance_level": config.significance_level,
        "min_sample_size": config.min_sample_size,
        "analysis_window_days": config.analysis_window_days,
        "max_daily_loss": config.max_daily_loss,
        "rollback_threshold": config.rollback_threshold,
        "created_at": _iso(config.created_at),
        "updated_at": _iso(config.updated_at),
    }


def row_to_config(row) -> DaypartingConfig:
    return DaypartingConfig(
        asin=row["asin"],
        campaign_id=row["campaign_id"],
        ad_group_id=row["ad_group_id"] or None,
        mode=DaypartingMode(row["mode"]),
        enabled=bool(row["enabled"]),
        max_multiplier=float(row["max_multiplier"]),
        min_multiplier=float(row["min_multiplier"]),
        significance_level=float(row["significance_level"]),
        min_sample_size=int(row["min_sample_size"]),
        analysis_window_days=int(row["analysis_window_days"]),
        max_daily_loss=float(row["max_daily_loss"]),
        rollback_threshold=float(row["rollback_threshold"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def multiplier_to_row(multiplier: BidMultiplier) -> Dict:
    return {
        "multiplier_id": multiplier.multiplier_id or f"daypart_{uuid.uuid4()}",
        "asin": multiplier.asin,
        "campaign_id": multiplier.campaign_id,
        "ad_group_id": multiplier.ad_group_id,
        "hour": multiplier.hour,
        "day_of_week": multiplier.day_of_week,
        "multiplier": multiplier.multiplier,
        "confidence": multiplier.confidence.value,
        "classification": multiplier.classification.value,
        "effective_from": _iso(multiplier.effective_from),
        "effective_to": _iso(multiplier.effective_to),
        "is_active": multiplier.is_active,
        "created_at": _iso(multiplier.created_at),
        "updated_at": _iso(multiplier.updated_at),
    }


def row_to_multiplier(row) -> BidMultiplier:
    return BidMultiplier(
        asin=row["asin"],
        campaign_id=row["campaign_id"],
        ad_group_id=row["ad_group_id"] or None,
        hour=int(row["hour"]),
        day_of_week=int(row["day_of_week"]) if row["day_of_week"] is not None else None,
        multiplier=float(row["multiplier"]),
        confidence=ConfidenceLevel(row["confidence"]),
        classification=HourClassification(row["classification"]),
        effective_from=_parse_ts(row["effective_from"]),
        effective_to=_parse_ts(row["effective_to"]),
        is_active=bool(row["is_active"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        multiplier_id=row["multiplier_id"],
    )


def feedback_to_row(feedback: FeedbackRecord) -> Dict:
    return {
        "feedback_id": feedback.feedback_id,
        "asin": feedback.asin,
        "campaign_id": feedback.campaign_id,
        "ad_group_id": feedback.ad_group_id,
        "hour": feedback.hour,
        "day_of_week": feedback.day_of_week,
        "applied_multiplier": feedback.applied_multiplier,
        "applied_at": _iso(feedback.applied_at),
        "evaluated_at": _iso(feedback.evaluated_at),
        "cvr_before": feedback.cvr_before,
        "roas_before": feedback.roas_before,
        "clicks_before": feedback.clicks_before,
        "conversions_before": feedback.conversions_before,
        "cvr_after": feedback.cvr_after,
        "roas_after": feedback.roas_after,
        "clicks_after": feedback.clicks_after,
        "conversions_after": feedback.conversions_after,
        "is_success": feedback.is_success,
        "success_score": feedback.success_score,
        "evaluated": feedback.evaluated,
    }


def row_to_feedback(row) -> FeedbackRecord:
    return FeedbackRecord(
        feedback_id=row["feedback_id"],
        asin=row["asin"],
        campaign_id=row["campaign_id"],
        ad_group_id=row["ad_group_id"] or None,
        hour=int(row["hour"]),
        day_of_week=int(row["day_of_week"]) if row["day_of_week"] is not None else None,
        applied_multiplier=float(row["applied_multiplier"]),
        applied_at=_parse_ts(row["applied_at"]),
        evaluated_at=_parse_ts(row["evaluated_at"]),
        cvr_before=float(row["cvr_before"] or 0),
        roas_before=float(row["roas_before"] or 0),
        clicks_before=int(row["clicks_before"] or 0),
        conversions_before=int(row["conversions_before"] or 0),
        cvr_after=row["cvr_after"],
        roas_after=row["roas_after"],
        clicks_after=row["clicks_after"],
        conversions_after=row["conversions_after"],
        is_success=row["is_success"],
        success_score=row["success_score"],
        evaluated=bool(row["evaluated"]),
    )


class BigQueryClient:
    def __init__(self, project_id: str = None, dataset_id: str = None):
        self.project_id = project_id or settings.project_id
        self.dataset_id = dataset_id or settings.dataset_id
        self.client = bigquery.Client(project=self.project_id)
        self.tz = pytz.timezone(settings.timezone)

    def _table(self, name: str) -> str:
        return f"{self.project_id}.{self.dataset_id}.{name}"

    # =========================================================================
    # Source metrics
    # =========================================================================

    def get_hourly_samples(
        self,
        asin: str,
        campaign_id: str,
        ad_group_id: str = None,
        window_days: int = 14,
        end_date: date = None
    ) -> List[PerformanceSample]:
        """
        One sample per (hour, weekday) over the window, hours in the account timezone.
        day_of_week: 0 = Sunday
        """
        end_date = end_date or datetime.now(self.tz).date()
        start_date = end_date - timedelta(days=window_days)

        query = f"""
        WITH hourly_raw AS (
          SELECT
            asin,
            campaign_id,
            ad_group_id,
            EXTRACT(HOUR FROM report_timestamp AT TIME ZONE @tz) AS hour,
            EXTRACT(DAYOFWEEK FROM report_timestamp AT TIME ZONE @tz) - 1 AS day_of_week,
            impressions,
            clicks,
            conversions,
            cost AS spend,
            sales
          FROM `{self._table(settings.hourly_metrics_table)}`
          WHERE DATE(report_timestamp, @tz) BETWEEN @start_date AND @end_date
            AND asin = @asin
            AND campaign_id = @campaign_id
            AND (@ad_group_id = '' OR ad_group_id = @ad_group_id)
        )
        SELECT
          asin,
          campaign_id,
          ad_group_id,
          hour,
          day_of_week,
          SUM(impressions) AS impressions,
          SUM(clicks) AS clicks,
          SUM(conversions) AS conversions,
          SUM(spend) AS spend,
          SUM(sales) AS sales,
          COUNT(*) AS data_points
        FROM hourly_raw
        GROUP BY asin, campaign_id, ad_group_id, hour, day_of_week
        ORDER BY hour, day_of_week
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("tz", "STRING", settings.timezone),
                bigquery.ScalarQueryParameter("start_date", "DATE", start_date),
                bigquery.ScalarQueryParameter("end_date", "DATE", end_date),
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
                bigquery.ScalarQueryParameter("ad_group_id", "STRING", ad_group_id or ""),
            ]
        )

        try:
            rows = self.client.query(query, job_config=job_config).result()
            samples = [
                PerformanceSample(
                    asin=row["asin"],
                    campaign_id=row["campaign_id"],
                    ad_group_id=row["ad_group_id"] or None,
                    hour=int(row["hour"]),
                    day_of_week=int(row["day_of_week"]),
                    impressions=int(row["impressions"] or 0),
                    clicks=int(row["clicks"] or 0),
                    conversions=int(row["conversions"] or 0),
                    spend=float(row["spend"] or 0),
                    sales=float(row["sales"] or 0),
                    data_points=int(row["data_points"] or 0),
                    period_start=start_date,
                    period_end=end_date,
                )
                for row in rows
            ]
            logger.info(f"Loaded {len(samples)} hourly samples for {asin}/{campaign_id}")
            return samples
        except Exception as e:
            logger.error(f"Error fetching hourly samples: {e}")
            return []

    def get_bucket_metrics(
        self,
        asin: str,
        campaign_id: str,
        hour: int,
        day_of_week: Optional[int],
        start: datetime,
        end: datetime
    ) -> Optional[MetricsSnapshot]:
        """CVR/ROAS of one (hour[, weekday]) bucket between two timestamps"""
        query = f"""
        SELECT
          COALESCE(SUM(clicks), 0) AS clicks,
          COALESCE(SUM(conversions), 0) AS conversions,
          COALESCE(SUM(cost), 0) AS spend,
          COALESCE(SUM(sales), 0) AS sales
        FROM `{self._table(settings.hourly_metrics_table)}`
        WHERE report_timestamp >= @start
          AND report_timestamp < @end
          AND asin = @asin
          AND campaign_id = @campaign_id
          AND EXTRACT(HOUR FROM report_timestamp AT TIME ZONE @tz) = @hour
          AND (@day_of_week IS NULL
               OR EXTRACT(DAYOFWEEK FROM report_timestamp AT TIME ZONE @tz) - 1 = @day_of_week)
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("tz", "STRING", settings.timezone),
                bigquery.ScalarQueryParameter("start", "TIMESTAMP", start),
                bigquery.ScalarQueryParameter("end", "TIMESTAMP", end),
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
                bigquery.ScalarQueryParameter("hour", "INT64", hour),
                bigquery.ScalarQueryParameter("day_of_week", "INT64", day_of_week),
            ]
        )

        try:
            rows = list(self.client.query(query, job_config=job_config).result())
            if not rows:
                return None
            row = rows[0]
            clicks = int(row["clicks"] or 0)
            conversions = int(row["conversions"] or 0)
            spend = float(row["spend"] or 0)
            sales = float(row["sales"] or 0)
            return MetricsSnapshot(
                cvr=conversions / clicks if clicks > 0 else 0.0,
                roas=sales / spend if spend > 0 else 0.0,
                clicks=clicks,
                conversions=conversions,
            )
        except Exception as e:
            logger.error(f"Error fetching bucket metrics: {e}")
            return None

    def get_daily_summaries(
        self,
        asin: str,
        campaign_id: str,
        mode: DaypartingMode,
        days: int = 7
    ) -> List[DailySummary]:
        """
        Per-day actuals, newest first; the actuals double as the baseline.
        Raises on query failure.
        """
        query = f"""
        SELECT
          DATE(report_timestamp, @tz) AS day,
          COALESCE(SUM(impressions), 0) AS impressions,
          COALESCE(SUM(clicks), 0) AS clicks,
          COALESCE(SUM(conversions), 0) AS conversions,
          COALESCE(SUM(cost), 0) AS spend,
          COALESCE(SUM(sales), 0) AS sales
        FROM `{self._table(settings.hourly_metrics_table)}`
        WHERE DATE(report_timestamp, @tz) >= DATE_SUB(CURRENT_DATE(@tz), INTERVAL @days DAY)
          AND asin = @asin
          AND campaign_id = @campaign_id
        GROUP BY day
        ORDER BY day DESC
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("tz", "STRING", settings.timezone),
                bigquery.ScalarQueryParameter("days", "INT64", days),
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
            ]
        )

        try:
            rows = self.client.query(query, job_config=job_config).result()
            summaries = [
                create_daily_summary(
                    row["day"], asin, campaign_id, mode,
                    impressions=float(row["impressions"]),
                    clicks=float(row["clicks"]),
                    conversions=float(row["conversions"]),
                    sales=float(row["sales"]),
                    spend=float(row["spend"]),
                )
                for row in rows
            ]
            logger.info(f"Loaded {len(summaries)} daily summaries for {asin}/{campaign_id}")
            return summaries
        except Exception as e:
            logger.error(f"Error fetching daily summaries: {e}")
            raise

    # =========================================================================
    # Configs
    # =========================================================================

    def save_config(self, config: DaypartingConfig):
        row = config_to_row(config)

        query = f"""
        MERGE `{self._table(CONFIGS_TABLE)}` AS target
        USING (SELECT @asin AS asin, @campaign_id AS campaign_id, @ad_group_id AS ad_group_id) AS source
        ON target.asin = source.asin
           AND target.campaign_id = source.campaign_id
           AND IFNULL(target.ad_group_id, '') = source.ad_group_id
        WHEN MATCHED THEN
          UPDATE SET
            mode = @mode,
            enabled = @enabled,
            max_multiplier = @max_multiplier,
            min_multiplier = @min_multiplier,
            significance_level = @significance_level,
            min_sample_size = @min_sample_size,
            analysis_window_days = @analysis_window_days,
            max_daily_loss = @max_daily_loss,
            rollback_threshold = @rollback_threshold,
            updated_at = CURRENT_TIMESTAMP()
        WHEN NOT MATCHED THEN
          INSERT (config_id, asin, campaign_id, ad_group_id, mode, enabled,
                  max_multiplier, min_multiplier, significance_level, min_sample_size,
                  analysis_window_days, max_daily_loss, rollback_threshold, created_at, updated_at)
          VALUES (@config_id, @asin, @campaign_id, NULLIF(@ad_group_id, ''), @mode, @enabled,
                  @max_multiplier, @min_multiplier, @significance_level, @min_sample_size,
                  @analysis_window_days, @max_daily_loss, @rollback_threshold,
                  CURRENT_TIMESTAMP(), CURRENT_TIMESTAMP())
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("config_id", "STRING", row["config_id"]),
                bigquery.ScalarQueryParameter("asin", "STRING", row["asin"]),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", row["campaign_id"]),
                bigquery.ScalarQueryParameter("ad_group_id", "STRING", row["ad_group_id"] or ""),
                bigquery.ScalarQueryParameter("mode", "STRING", row["mode"]),
                bigquery.ScalarQueryParameter("enabled", "BOOL", row["enabled"]),
                bigquery.ScalarQueryParameter("max_multiplier", "FLOAT64", row["max_multiplier"]),
                bigquery.ScalarQueryParameter("min_multiplier", "FLOAT64", row["min_multiplier"]),
                bigquery.ScalarQueryParameter("significance_level", "FLOAT64", row["significance_level"]),
                bigquery.ScalarQueryParameter("min_sample_size", "INT64", row["min_sample_size"]),
                bigquery.ScalarQueryParameter("analysis_window_days", "INT64", row["analysis_window_days"]),
                bigquery.ScalarQueryParameter("max_daily_loss", "FLOAT64", row["max_daily_loss"]),
                bigquery.ScalarQueryParameter("rollback_threshold", "FLOAT64", row["rollback_threshold"]),
            ]
        )

        try:
            self.client.query(query, job_config=job_config).result()
            logger.info(f"✅ Saved dayparting config: {config.asin}/{config.campaign_id}")
        except Exception as e:
            logger.error(f"Error saving dayparting config: {e}")
            raise

    def fetch_config(self, asin: str, campaign_id: str, ad_group_id: str = None) -> Optional[DaypartingConfig]:
        query = f"""
        SELECT *
        FROM `{self._table(CONFIGS_TABLE)}`
        WHERE asin = @asin
          AND campaign_id = @campaign_id
          AND IFNULL(ad_group_id, '') = @ad_group_id
        LIMIT 1
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
                bigquery.ScalarQueryParameter("ad_group_id", "STRING", ad_group_id or ""),
            ]
        )

        try:
            rows = list(self.client.query(query, job_config=job_config).result())
            return row_to_config(rows[0]) if rows else None
        except Exception as e:
            logger.error(f"Error fetching dayparting config: {e}")
            return None

    def fetch_enabled_configs(self) -> List[DaypartingConfig]:
        query = f"""
        SELECT *
        FROM `{self._table(CONFIGS_TABLE)}`
        WHERE enabled = TRUE
        ORDER BY asin, campaign_id
        """

        try:
            rows = self.client.query(query).result()
            configs = [row_to_config(row) for row in rows]
            logger.info(f"Loaded {len(configs)} enabled dayparting configs")
            return configs
        except Exception as e:
            logger.error(f"Error fetching enabled configs: {e}")
            return []

    # =========================================================================
    # Multipliers
    # =========================================================================

    def fetch_active_multipliers(self, asin: str, campaign_id: str) -> List[BidMultiplier]:
        """Raises on query failure"""
        query = f"""
        SELECT *
        FROM `{self._table(MULTIPLIERS_TABLE)}`
        WHERE asin = @asin
          AND campaign_id = @campaign_id
          AND is_active = TRUE
        ORDER BY hour, day_of_week
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
            ]
        )

        try:
            rows = self.client.query(query, job_config=job_config).result()
            return [row_to_multiplier(row) for row in rows]
        except Exception as e:
            logger.error(f"Error fetching active multipliers: {e}")
            raise

    def deactivate_multipliers(self, asin: str, campaign_id: str):
        query = f"""
        UPDATE `{self._table(MULTIPLIERS_TABLE)}`
        SET is_active = FALSE, effective_to = CURRENT_TIMESTAMP(), updated_at = CURRENT_TIMESTAMP()
        WHERE asin = @asin
          AND campaign_id = @campaign_id
          AND is_active = TRUE
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
            ]
        )

        try:
            self.client.query(query, job_config=job_config).result()
            logger.info(f"Deactivated multipliers for {asin}/{campaign_id}")
        except Exception as e:
            logger.error(f"Error deactivating multipliers: {e}")
            raise

    def save_multipliers(self, multipliers: List[BidMultiplier]):
        if not multipliers:
            return
        self._insert(MULTIPLIERS_TABLE, [multiplier_to_row(m) for m in multipliers])
        logger.info(f"✅ Saved {len(multipliers)} dayparting multipliers")

    # =========================================================================
    # Feedback
    # =========================================================================

    def save_feedback(self, feedback: FeedbackRecord):
        self._insert(FEEDBACK_TABLE, [feedback_to_row(feedback)])

    def update_feedback_evaluation(self, feedback: FeedbackRecord):
        query = f"""
        UPDATE `{self._table(FEEDBACK_TABLE)}`
        SET
          cvr_after = @cvr_after,
          roas_after = @roas_after,
          clicks_after = @clicks_after,
          conversions_after = @conversions_after,
          is_success = @is_success,
          success_score = @success_score,
          evaluated = TRUE,
          evaluated_at = @evaluated_at
        WHERE feedback_id = @feedback_id
          AND evaluated = FALSE
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("feedback_id", "STRING", feedback.feedback_id),
                bigquery.ScalarQueryParameter("cvr_after", "FLOAT64", feedback.cvr_after),
                bigquery.ScalarQueryParameter("roas_after", "FLOAT64", feedback.roas_after),
                bigquery.ScalarQueryParameter("clicks_after", "INT64", feedback.clicks_after),
                bigquery.ScalarQueryParameter("conversions_after", "INT64", feedback.conversions_after),
                bigquery.ScalarQueryParameter("is_success", "BOOL", feedback.is_success),
                bigquery.ScalarQueryParameter("success_score", "FLOAT64", feedback.success_score),
                bigquery.ScalarQueryParameter("evaluated_at", "TIMESTAMP", feedback.evaluated_at),
            ]
        )

        try:
            self.client.query(query, job_config=job_config).result()
        except Exception as e:
            logger.error(f"Error updating feedback {feedback.feedback_id}: {e}")
            raise

    def fetch_unevaluated_feedback(self, min_age_hours: int = None, limit: int = 1000) -> List[FeedbackRecord]:
        min_age_hours = settings.feedback_evaluation_delay_hours if min_age_hours is None else min_age_hours

        query = f"""
        SELECT *
        FROM `{self._table(FEEDBACK_TABLE)}`
        WHERE evaluated = FALSE
          AND applied_at < TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL @min_age_hours HOUR)
        ORDER BY applied_at
        LIMIT @limit
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("min_age_hours", "INT64", min_age_hours),
                bigquery.ScalarQueryParameter("limit", "INT64", limit),
            ]
        )

        try:
            rows = self.client.query(query, job_config=job_config).result()
            feedback = [row_to_feedback(row) for row in rows]
            logger.info(f"Loaded {len(feedback)} unevaluated feedback records")
            return feedback
        except Exception as e:
            logger.error(f"Error fetching unevaluated feedback: {e}")
            return []

    def fetch_recent_feedback(self, asin: str, campaign_id: str, days: int = None) -> List[FeedbackRecord]:
        """Oldest first, so slicing from the end gives the most recent records. Raises on query failure"""
        days = settings.feedback_lookback_days if days is None else days

        query = f"""
        SELECT *
        FROM `{self._table(FEEDBACK_TABLE)}`
        WHERE asin = @asin
          AND campaign_id = @campaign_id
          AND applied_at >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL @days DAY)
        ORDER BY applied_at
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
                bigquery.ScalarQueryParameter("days", "INT64", days),
            ]
        )

        try:
            rows = self.client.query(query, job_config=job_config).result()
            return [row_to_feedback(row) for row in rows]
        except Exception as e:
            logger.error(f"Error fetching recent feedback: {e}")
            raise

    # =========================================================================
    # Rollbacks
    # =========================================================================

    def save_rollback(self, rollback: RollbackInfo):
        row = {
            "rollback_id": rollback.rollback_id,
            "asin": rollback.asin,
            "campaign_id": rollback.campaign_id,
            "reason": rollback.reason,
            "previous_multipliers_json": json.dumps(
                [multiplier_to_row(m) for m in rollback.previous_multipliers]
            ),
            "rolled_back_at": _iso(rollback.rolled_back_at),
            "restored_at": _iso(rollback.restored_at),
        }
        self._insert(ROLLBACKS_TABLE, [row])
        logger.info(f"✅ Saved rollback {rollback.rollback_id}")

    def mark_rollback_restored(self, rollback: RollbackInfo):
        query = f"""
        UPDATE `{self._table(ROLLBACKS_TABLE)}`
        SET restored_at = @restored_at
        WHERE rollback_id = @rollback_id
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("rollback_id", "STRING", rollback.rollback_id),
                bigquery.ScalarQueryParameter("restored_at", "TIMESTAMP", rollback.restored_at),
            ]
        )

        try:
            self.client.query(query, job_config=job_config).result()
        except Exception as e:
            logger.error(f"Error marking rollback {rollback.rollback_id} restored: {e}")
            raise

    def fetch_latest_rollback(self, asin: str, campaign_id: str) -> Optional[RollbackInfo]:
        query = f"""
        SELECT *
        FROM `{self._table(ROLLBACKS_TABLE)}`
        WHERE asin = @asin AND campaign_id = @campaign_id
        ORDER BY rolled_back_at DESC
        LIMIT 1
        """

        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("asin", "STRING", asin),
                bigquery.ScalarQueryParameter("campaign_id", "STRING", campaign_id),
            ]
        )

        try:
            rows = list(self.client.query(query, job_config=job_config).result())
            if not rows:
                return None
            row = rows[0]
            return RollbackInfo(
                rollback_id=row["rollback_id"],
                asin=row["asin"],
                campaign_id=row["campaign_id"],
                reason=row["reason"],
                previous_multipliers=[
                    row_to_multiplier(m) for m in json.loads(row["previous_multipliers_json"] or "[]")
                ],
                rolled_back_at=_parse_ts(row["rolled_back_at"]),
                restored_at=_parse_ts(row["restored_at"]),
            )
        except Exception as e:
            logger.error(f"Error fetching latest rollback: {e}")
            return None

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _insert(self, table_name: str, rows: List[Dict]):
        table_id = self._table(table_name)
        try:
            errors = self.client.insert_rows_json(table_id, rows)
        except Exception as e:
            logger.error(f"Error writing to {table_name}: {e}")
            raise
        if errors:
            logger.error(f"Error inserting into {table_name}: {errors}")
            raise RuntimeError(f"BigQuery insert into {table_name} failed: {errors}")

    def ensure_tables(self):
        """Create the dayparting tables if they don't exist"""
        for name, schema in TABLE_SCHEMAS.items():
            table = bigquery.Table(self._table(name), schema=schema)
            try:
                self.client.create_table(table, exists_ok=True)
            except Exception as e:
                logger.warning(f"Could not create {name} table: {e}")
