"""
Dayparting job
Runs hourly via Cloud Scheduler: evaluates pending feedback, recalculates
hour-of-day multipliers for every enabled entity and checks their health.
"""

import sys
from datetime import datetime
import pytz

from shared.config import settings
from shared.logger import get_logger
from shared.bigquery_client import BigQueryClient
from dayparting.engine import DaypartingEngine, STATUS_ERROR

logger = get_logger(__name__)


class DaypartingJob:
    def __init__(self, engine: DaypartingEngine = None, bq_client: BigQueryClient = None):
        self.bq_client = bq_client or (engine.repository if engine else BigQueryClient())
        self.engine = engine or DaypartingEngine(self.bq_client)
        self.tz = pytz.timezone(settings.timezone)

        self.stats = {
            "feedback_evaluated": 0,
            "entities_analyzed": 0,
            "entities_skipped": 0,
            "rollbacks": 0,
            "unhealthy": 0,
            "errors": 0,
        }

    def run(self):
        """Main dayparting workflow"""
        logger.info("=" * 60)
        logger.info("🚀 Starting Dayparting Job")
        logger.info(f"Timestamp: {datetime.now(self.tz).isoformat()}")
        logger.info(f"Default mode: {settings.dayparting_mode}")
        logger.info("=" * 60)

        try:
            # Step 1: Tables
            logger.info("\n🗄️ Step 1: Ensuring Dayparting Tables")
            self.bq_client.ensure_tables()

            # Step 2: Close the feedback loop before recalculating
            logger.info("\n🔁 Step 2: Evaluating Pending Feedback")
            self.stats["feedback_evaluated"] = self.engine.evaluate_pending_feedback()

            # Step 3: Recalculate multipliers
            logger.info("\n🧮 Step 3: Running Hourly Analysis")
            batch = self.engine.run_batch_analysis()

            if batch.total_configs == 0:
                logger.warning("⚠️ No enabled dayparting configs")

            self.stats["entities_analyzed"] = batch.success_count
            self.stats["entities_skipped"] = batch.skipped_count
            self.stats["errors"] += batch.error_count
            self.stats["rollbacks"] = sum(1 for r in batch.results if r.rolled_back)

            # Step 4: Health checks
            logger.info("\n🩺 Step 4: Health Checks")
            for result in batch.results:
                if result.status == STATUS_ERROR:
                    continue
                try:
                    health = self.engine.run_health_check(result.asin, result.campaign_id, result.ad_group_id)
                    if not health.healthy:
                        self.stats["unhealthy"] += 1
                except Exception as e:
                    logger.error(f"Health check failed for {result.asin}/{result.campaign_id}: {e}", exc_info=True)
                    self.stats["errors"] += 1

            self._print_summary()

            logger.info("\n✅ Dayparting Job Completed Successfully")

        except Exception as e:
            logger.error(f"❌ Dayparting job failed: {e}", exc_info=True)
            self.stats["errors"] += 1
            sys.exit(1)

    def _print_summary(self):
        """Print job summary statistics"""
        logger.info("\n" + "=" * 60)
        logger.info("📊 JOB SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Feedback Evaluated:  {self.stats['feedback_evaluated']}")
        logger.info(f"Entities Analyzed:   {self.stats['entities_analyzed']}")
        logger.info(f"Entities Skipped:    {self.stats['entities_skipped']}")
        logger.info(f"Rollbacks:           {self.stats['rollbacks']}")
        logger.info(f"Unhealthy Entities:  {self.stats['unhealthy']}")
        logger.info(f"Errors:              {self.stats['errors']}")
        logger.info("=" * 60)


def main():
    """Entry point for Cloud Run Job"""
    job = DaypartingJob()
    job.run()


if __name__ == "__main__":
    main()
