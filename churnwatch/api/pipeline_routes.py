"""ChurnWatch — Pipeline API Routes."""

import json
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from churnwatch.analyzer.pipeline import ChurnPipeline
from churnwatch.connectors.warehouse.client import WarehouseClient
from churnwatch.core.logging import get_logger
from churnwatch.database import engine
from churnwatch.etl.monthly_rollup import RollupError
from churnwatch.etl.run_tracker import PipelineAlreadyRunningError
from churnwatch.models.pipeline_models import CatchUpSummary, ClassificationResult, RunSummary

logger = get_logger("api.pipeline")

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


# ── Request / Response Models ──


class RunDailyRequest(BaseModel):
    """Request body for POST /pipeline/run."""

    process_date: Optional[date] = None
    """Date to process (YYYY-MM-DD). Defaults to yesterday (UTC)."""
    dry_run: bool = False
    """Extract and report without writing daily rows or rolling up."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"process_date": "2025-08-14", "dry_run": False},
            ]
        }
    }


class CatchUpRequest(BaseModel):
    """Request body for POST /pipeline/catch-up."""

    end_date: Optional[date] = None


# ── Dependencies ──


async def get_pipeline():
    """Dependency — yields a pipeline bound to the warehouse client."""
    client = WarehouseClient()
    try:
        yield ChurnPipeline(client, engine)
    finally:
        await client.close()


# ── Endpoints ──


@router.post("/run", response_model=RunSummary)
async def run_daily(
    request: RunDailyRequest,
    pipeline: ChurnPipeline = Depends(get_pipeline),
):
    """Run the daily pipeline for one processing date.

    Returns 500 with the run summary when any step failed, and 409 when
    another pipeline run is already in progress.
    """
    try:
        summary = await pipeline.run_daily(request.process_date, dry_run=request.dry_run)
    except PipelineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Pipeline run failed: {e}")
        raise HTTPException(status_code=500, detail=f"Pipeline run failed: {str(e)}")

    if not summary.success:
        raise HTTPException(status_code=500, detail=summary.model_dump(mode="json"))
    return summary


@router.post("/catch-up", response_model=CatchUpSummary)
async def catch_up(
    request: CatchUpRequest,
    pipeline: ChurnPipeline = Depends(get_pipeline),
):
    """Fill every missing day since the last one in the ledger."""
    try:
        summary = await pipeline.catch_up(request.end_date)
    except PipelineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Catch-up failed: {e}")
        raise HTTPException(status_code=500, detail=f"Catch-up failed: {str(e)}")

    if not summary.success:
        raise HTTPException(status_code=500, detail=summary.model_dump(mode="json"))
    return summary


@router.post("/months/{month}/rollup", response_model=ClassificationResult)
async def rollup_month(
    month: str,
    historical: bool = Query(False, description="Close the month with a historical pass"),
    data_through: Optional[date] = Query(None, description="Last complete day for trending"),
    pipeline: ChurnPipeline = Depends(get_pipeline),
):
    """Rebuild one month's rows and classify them."""
    try:
        return pipeline.process_month(month, historical=historical, data_through=data_through)
    except PipelineAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RollupError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/runs")
async def list_runs(
    limit: int = Query(50, ge=1, le=500),
    pipeline: ChurnPipeline = Depends(get_pipeline),
):
    """Recent ETL step records, newest first."""
    runs = pipeline.tracker.recent_runs(limit)
    return {
        "status": "success",
        "count": len(runs),
        "results": [
            {
                "run_date": r.run_date,
                "step": r.step,
                "status": r.status,
                "started_at": r.started_at.isoformat(),
                "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                "error_message": r.error_message,
                "metadata": json.loads(r.metadata_json or "{}"),
            }
            for r in runs
        ],
    }
