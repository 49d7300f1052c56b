"""
Order endpoints: stage moves and edits
"""

from fastapi import APIRouter, Depends, HTTPException, Request
import logging

from atelier.schemas.order import (
    CheckedUpdate,
    ItemsUpdate,
    MeasurementsUpdate,
    Order,
    TransitionRequest,
    TransitionResponse,
)
from atelier.services.pipeline import OrderPipeline, get_pipeline
from atelier.utils.error_handler import PipelineError
from atelier.utils.rate_limit import READ_LIMIT, WRITE_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{order_id}", response_model=Order)
@limiter.limit(READ_LIMIT)
async def get_order(
    request: Request,
    order_id: str,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Get one normalized order by ID"""
    try:
        return await pipeline.editor.get_order(order_id)

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to get order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve order")


@router.post("/{order_id}/transition", response_model=TransitionResponse)
@limiter.limit(WRITE_LIMIT)
async def transition_order(
    request: Request,
    order_id: str,
    body: TransitionRequest,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Move an order to the next stage"""
    result = await pipeline.coordinator.transition(
        order_id, body.from_stage, body.to_stage, body.extra_fields
    )
    if not result.ok:
        raise result.error
    return TransitionResponse(changed=result.changed, order=result.order)


@router.put("/{order_id}/checked", response_model=Order)
@limiter.limit(WRITE_LIMIT)
async def set_checked(
    request: Request,
    order_id: str,
    body: CheckedUpdate,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Set the production or logistics readiness flag"""
    try:
        return await pipeline.editor.set_checked(order_id, body.checked)

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to update checked flag for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update order")


@router.put("/{order_id}/measurements", response_model=Order)
@limiter.limit(WRITE_LIMIT)
async def update_measurements(
    request: Request,
    order_id: str,
    body: MeasurementsUpdate,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Correct the measurements of an order or one of its items"""
    try:
        return await pipeline.editor.update_measurements(order_id, body.measurements, body.item_index)

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to update measurements for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update order")


@router.put("/{order_id}/items", response_model=Order)
@limiter.limit(WRITE_LIMIT)
async def update_items(
    request: Request,
    order_id: str,
    body: ItemsUpdate,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Replace the items of an order"""
    try:
        return await pipeline.editor.update_items(order_id, body.items, body.total_price)

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to update items for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update order")


@router.delete("/{order_id}", response_model=Order)
@limiter.limit(WRITE_LIMIT)
async def delete_order(
    request: Request,
    order_id: str,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Soft-delete an order; it can be restored later"""
    try:
        return await pipeline.editor.soft_delete(order_id)

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to delete order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete order")


@router.post("/{order_id}/restore", response_model=Order)
@limiter.limit(WRITE_LIMIT)
async def restore_order(
    request: Request,
    order_id: str,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Restore a soft-deleted order to its original stage"""
    try:
        return await pipeline.editor.restore(order_id)

    except PipelineError:
        raise
    except Exception as e:
        logger.error(f"Failed to restore order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to restore order")
