"""Internal points endpoints.

Called by collaborating services (billing, dashboard), not by browsers.
Refunds are never posted here; they are issued by the order pipeline.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.points_service.exceptions import InvalidAmount
from services.points_service.models import DEBIT_TYPES, HistoryType
from services.points_service.schemas import (
    BalanceResponse,
    CreditRequest,
    CreditResponse,
    HistoryEntryResponse,
    HistoryListResponse,
    RenewRequest,
    RenewResponse,
)
from services.points_service.services.ledger import (
    credit_points,
    ensure_balance,
    list_history,
    renew_period,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/internal/points", tags=["internal-points"])


@router.get("/{user_id}", response_model=BalanceResponse)
async def get_balance(user_id: str, db: AsyncSession = Depends(get_async_db)):
    """Balance and lifetime counters. Creates an empty balance on first read."""
    balance = await ensure_balance(db, user_id)
    await db.commit()
    return balance


@router.get("/{user_id}/history", response_model=HistoryListResponse)
async def get_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    entry_type: Optional[HistoryType] = Query(None, alias="type"),
    db: AsyncSession = Depends(get_async_db),
):
    entries = await list_history(
        db, user_id, entry_type=entry_type, limit=limit, offset=offset
    )
    return HistoryListResponse(
        entries=[HistoryEntryResponse.model_validate(e) for e in entries],
        limit=limit,
        offset=offset,
    )


@router.post("/credit", response_model=CreditResponse)
async def post_credit(body: CreditRequest, db: AsyncSession = Depends(get_async_db)):
    """Credit points for a purchase, bonus or rollover."""
    if body.entry_type in DEBIT_TYPES or body.entry_type == HistoryType.REFUND:
        raise InvalidAmount(f"{body.entry_type.value} entries cannot be posted here")

    entry = await credit_points(
        db,
        user_id=body.user_id,
        amount=body.amount,
        entry_type=body.entry_type,
        description=body.description,
        idempotency_key=body.idempotency_key,
    )
    await db.commit()
    return CreditResponse(
        success=True, entry_id=entry.id, balance_after=entry.balance_after
    )


@router.post("/renew", response_model=RenewResponse)
async def post_renew(body: RenewRequest, db: AsyncSession = Depends(get_async_db)):
    """Start a subscription period, carrying over up to ``rollover_cap`` points."""
    entries = await renew_period(
        db,
        user_id=body.user_id,
        new_points=body.new_points,
        rollover_cap=body.rollover_cap,
        description=body.description,
        idempotency_key=body.idempotency_key,
    )
    await db.commit()
    return RenewResponse(
        success=True,
        entries=[HistoryEntryResponse.model_validate(e) for e in entries],
        balance_after=entries[-1].balance_after,
    )
