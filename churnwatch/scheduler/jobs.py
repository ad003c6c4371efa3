"""ChurnWatch — Scheduler Jobs.

APScheduler daily job that runs the churn pipeline at the configured hour.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from churnwatch.config import settings
from churnwatch.database import engine
from churnwatch.analyzer.pipeline import ChurnPipeline
from churnwatch.connectors.warehouse.client import WarehouseClient
from churnwatch.etl.run_tracker import PipelineAlreadyRunningError
from churnwatch.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def daily_pipeline_job():
    """Run the full pipeline for yesterday's data."""
    logger.info("Scheduled daily pipeline starting...")
    client = WarehouseClient()
    try:
        summary = await ChurnPipeline(client, engine).run_daily()
        if summary.success:
            logger.info(f"Scheduled pipeline complete for {summary.process_date}")
        else:
            failed = [s.step for s in summary.steps if s.status.value == "failed"]
            logger.error(f"Scheduled pipeline failed steps: {failed}")
    except PipelineAlreadyRunningError as e:
        logger.warning(f"Scheduled pipeline skipped: {e}")
    except Exception as e:
        logger.error(f"Scheduled pipeline failed: {e}")
    finally:
        await client.close()


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_pipeline_job,
        "cron",
        hour=settings.pipeline_hour,
        minute=0,
        id="daily_pipeline",
        replace_existing=True,
        misfire_grace_time=3600,
        max_instances=1,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily pipeline at {settings.pipeline_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
