"""ChurnWatch — FastAPI Application Entry Point.

Operator surface for the daily churn-risk pipeline: manual triggers, run
history and a health check. The scheduled run starts with the app.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from churnwatch.config import settings
from churnwatch.database import _mask_url, db_url, init_db, test_connection
from churnwatch.scheduler.jobs import scheduler, start_scheduler, stop_scheduler
from churnwatch.api.pipeline_routes import router as pipeline_router
from churnwatch.core.logging import get_logger

logger = get_logger("main")

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, then run the daily job for the life of the app."""
    logger.info(f"ChurnWatch starting up (database: {_mask_url(db_url)})")
    if test_connection():
        init_db()
    else:
        logger.error("Database NOT connected, pipeline runs will fail")
    start_scheduler()
    yield
    stop_scheduler()
    logger.info("ChurnWatch shut down")


app = FastAPI(
    title="ChurnWatch",
    description="Daily account fact extraction, monthly rollups and churn-risk classification.",
    version=VERSION,
    lifespan=lifespan,
)

app.include_router(pipeline_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Service, database and scheduler status."""
    return {
        "status": "healthy",
        "service": "churnwatch",
        "version": VERSION,
        "database": "postgresql" if db_url.startswith("postgresql") else "sqlite",
        "scheduler": {
            "enabled": settings.scheduler_enabled,
            "running": scheduler.running,
            "hour_utc": settings.pipeline_hour,
        },
    }
