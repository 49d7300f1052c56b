"""
Dashboard endpoints: live counters and recent diagnostics
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import logging

from atelier.database import get_db
from atelier.schemas.diagnostic import DiagnosticListResponse, DiagnosticResponse, FeedStatus, PipelineStatsResponse
from atelier.services.diagnostics import recent_diagnostics
from atelier.services.pipeline import OrderPipeline, get_pipeline
from atelier.utils.error_handler import PipelineError, classify_store_error
from atelier.utils.rate_limit import READ_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/stats", response_model=PipelineStatsResponse)
@limiter.limit(READ_LIMIT)
async def get_stats(
    request: Request,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Order counts per stage, kept current from transition events"""
    try:
        if not pipeline.stats.loaded:
            await pipeline.stats.refresh()
        counts = {stage.value: count for stage, count in pipeline.stats.snapshot().items()}
        feed = pipeline.change_feed
        return PipelineStatsResponse(
            counts=counts,
            total=sum(counts.values()),
            feed=FeedStatus(
                running=feed.is_running,
                degraded=feed.is_degraded,
                degraded_for_seconds=feed.degraded_for(),
                stale=feed.staleness_exceeded,
                reconnects=feed.reconnects
            )
        )

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to get pipeline stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve stats")


@router.get("/diagnostics", response_model=DiagnosticListResponse)
@limiter.limit(READ_LIMIT)
def get_diagnostics(
    request: Request,
    limit: int = Query(100, ge=1, le=1000, description="Maximum diagnostics to return"),
    db: Session = Depends(get_db)
):
    """Most recent persisted reconciliation diagnostics"""
    try:
        diagnostics = recent_diagnostics(db, limit)
        return DiagnosticListResponse(
            diagnostics=[DiagnosticResponse.model_validate(d) for d in diagnostics],
            count=len(diagnostics)
        )

    except Exception as e:
        logger.error(f"Failed to get diagnostics: {e}")
        raise classify_store_error(e)
