"""Points Service schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from services.points_service.models.enums import HistoryType


class BalanceResponse(BaseModel):
    user_id: str
    current_points: int
    total_purchased: int
    total_used: int
    total_refunded: int
    total_granted: int
    total_expired: int

    model_config = ConfigDict(from_attributes=True)


class HistoryEntryResponse(BaseModel):
    id: uuid.UUID
    user_id: str
    entry_type: HistoryType = Field(
        validation_alias=AliasChoices("entry_type", "type"), serialization_alias="type"
    )
    amount: int
    balance_after: int
    description: str
    related_order_id: Optional[uuid.UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HistoryListResponse(BaseModel):
    entries: list[HistoryEntryResponse]
    limit: int
    offset: int


class CreditRequest(BaseModel):
    """Credit posted by the billing collaborator (pack purchase, bonus, rollover)."""

    user_id: str
    amount: int = Field(..., gt=0)
    entry_type: HistoryType = HistoryType.PURCHASE
    description: str
    idempotency_key: str


class CreditResponse(BaseModel):
    success: bool
    entry_id: uuid.UUID
    balance_after: int


class RenewRequest(BaseModel):
    """Start of a subscription period, posted by the billing collaborator."""

    user_id: str
    new_points: int = Field(..., gt=0)
    rollover_cap: int = Field(0, ge=0)
    description: str = "Subscription renewal"
    idempotency_key: str


class RenewResponse(BaseModel):
    success: bool
    entries: list[HistoryEntryResponse]
    balance_after: int
