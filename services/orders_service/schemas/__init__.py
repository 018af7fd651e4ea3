"""Orders Service schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.orders_service.models.enums import OrderStatus


class CreateOrderRequest(BaseModel):
    user_id: str
    site_id: str
    item_id: str
    item_url: str
    title: Optional[str] = None
    cost: int = Field(..., ge=0)


class CreateOrderResponse(BaseModel):
    order_id: uuid.UUID
    status: OrderStatus
    cost: int
    is_redownload: bool = False


class OrderStatusResponse(BaseModel):
    order_id: uuid.UUID
    status: OrderStatus
    download_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None


class OrderResponse(BaseModel):
    id: uuid.UUID
    user_id: str
    provider_site_id: str
    item_id: str
    item_url: str
    title: Optional[str] = None
    cost: int
    is_redownload: bool
    status: OrderStatus
    provider_task_id: Optional[str] = None
    download_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    refunded_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    limit: int
    offset: int


class UserActionRequest(BaseModel):
    """Body for user-initiated actions on an order (cancel, regenerate)."""

    user_id: str


class SiteResponse(BaseModel):
    site_id: str
    display_name: str
    cost: int

    model_config = ConfigDict(from_attributes=True)
