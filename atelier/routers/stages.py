"""
Stage view endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import List, Optional
import logging

from atelier.schemas.order import StageOrdersResponse, StageSummary
from atelier.schemas.stage import Stage, parse_stage
from atelier.services.pipeline import OrderPipeline, get_pipeline
from atelier.services.stage_view import ViewState
from atelier.utils.error_handler import NotFoundError, PipelineError
from atelier.utils.rate_limit import READ_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[StageSummary])
@limiter.limit(READ_LIMIT)
async def list_stages(
    request: Request,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Every stage with its current order count"""
    counts = pipeline.stats.snapshot()
    return [StageSummary(stage=stage, label=stage.label, count=counts.get(stage, 0)) for stage in Stage]


@router.get("/{stage}/orders", response_model=StageOrdersResponse)
@limiter.limit(READ_LIMIT)
async def get_stage_orders(
    request: Request,
    stage: str,
    search: Optional[str] = Query(None, description="Case-insensitive search term"),
    refresh: bool = Query(False, description="Reload from the store before answering"),
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Snapshot of one stage view, optionally filtered"""
    try:
        stage_value = parse_stage(stage)
        if stage_value is None or stage_value not in pipeline.views:
            raise NotFoundError(f"Unknown stage '{stage}'")

        view = pipeline.view(stage_value)
        if refresh or view.state == ViewState.UNINITIALIZED:
            await view.load()

        orders = view.apply_search_filter(search)
        return StageOrdersResponse(
            stage=stage_value,
            state=view.state.value,
            stale=view.is_stale,
            count=len(orders),
            orders=orders
        )

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to get orders for stage {stage}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve orders")
