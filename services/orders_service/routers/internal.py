"""Internal order endpoints.

The web frontend's backend calls these on behalf of a signed-in user; the
``user_id`` it passes is trusted. Status reads are plain reads: progress is
driven by the background worker, never by the caller polling.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from libs.common.logging import get_logger
from services.orders_service.dependencies import get_pipeline
from services.orders_service.models import Order, OrderStatus
from services.orders_service.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusResponse,
    SiteResponse,
    UserActionRequest,
)
from services.orders_service.services.pipeline import FulfillmentPipeline

logger = get_logger(__name__)
router = APIRouter(prefix="/internal/orders", tags=["internal-orders"])


def _status_response(order: Order) -> OrderStatusResponse:
    return OrderStatusResponse(
        order_id=order.id,
        status=order.status,
        download_url=order.download_url,
        file_name=order.file_name,
        file_size=order.file_size,
        error=order.error if order.status == OrderStatus.FAILED else None,
    )


@router.post(
    "", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED
)
async def create_order(
    body: CreateOrderRequest,
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
):
    """Reserve points and start fulfilment of one item."""
    order = await pipeline.place_order(
        user_id=body.user_id,
        site_id=body.site_id,
        item_id=body.item_id,
        item_url=body.item_url,
        title=body.title,
        cost=body.cost,
    )
    return CreateOrderResponse(
        order_id=order.id,
        status=order.status,
        cost=order.cost,
        is_redownload=order.is_redownload,
    )


@router.get("", response_model=OrderListResponse)
async def list_orders(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
):
    orders = await pipeline.list_orders(user_id, limit=limit, offset=offset)
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        limit=limit,
        offset=offset,
    )


@router.get("/sites", response_model=list[SiteResponse])
async def list_sites(pipeline: FulfillmentPipeline = Depends(get_pipeline)):
    """Sites currently accepting orders."""
    return await pipeline.list_sites()


@router.get("/{order_id}/status", response_model=OrderStatusResponse)
async def get_order_status(
    order_id: uuid.UUID,
    user_id: Optional[str] = None,
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
):
    order = await pipeline.get_order_status(order_id, user_id=user_id)
    return _status_response(order)


@router.post("/{order_id}/cancel", response_model=OrderStatusResponse)
async def cancel_order(
    order_id: uuid.UUID,
    body: UserActionRequest,
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
):
    """Cancel an in-flight order. The response shows which outcome stuck."""
    order = await pipeline.cancel(order_id, user_id=body.user_id)
    return _status_response(order)


@router.post("/{order_id}/regenerate-download", response_model=OrderStatusResponse)
async def regenerate_download(
    order_id: uuid.UUID,
    body: UserActionRequest,
    pipeline: FulfillmentPipeline = Depends(get_pipeline),
):
    order = await pipeline.regenerate_download(order_id, user_id=body.user_id)
    return _status_response(order)
