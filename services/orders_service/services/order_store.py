"""Order persistence and conditional state transitions.

Status changes go through ``transition``, an UPDATE that only matches while
the stored status is still the expected one. Two racing writers cannot both
win: the loser matches no row and gets StaleTransition.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.orders_service.exceptions import (
    IllegalTransition,
    OrderNotFound,
    SiteUnavailable,
    SiteUnsupported,
    StaleTransition,
)
from services.orders_service.models import (
    LEGAL_TRANSITIONS,
    TERMINAL_STATUSES,
    Order,
    OrderStatus,
    ProviderSite,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Columns a transition or bookkeeping update may set alongside status.
_MUTABLE_FIELDS = frozenset(
    {
        "provider_task_id",
        "download_url",
        "file_name",
        "file_size",
        "error",
        "error_code",
        "submit_attempts",
        "next_submit_at",
        "last_polled_at",
        "submitted_at",
        "completed_at",
        "failed_at",
    }
)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """Load an order, bypassing any stale copy in the identity map."""
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def list_non_terminal(db: AsyncSession, limit: int = 100) -> list[Order]:
    """In-flight orders, least recently touched first."""
    result = await db.execute(
        select(Order)
        .where(Order.status.notin_(TERMINAL_STATUSES))
        .order_by(Order.updated_at.asc(), Order.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_for_user(
    db: AsyncSession, user_id: str, *, limit: int = 50, offset: int = 0
) -> list[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def find_completed(
    db: AsyncSession, *, user_id: str, site_id: str, item_id: str
) -> Optional[Order]:
    """Most recent COMPLETED order for the same item, if any."""
    result = await db.execute(
        select(Order)
        .where(
            Order.user_id == user_id,
            Order.provider_site_id == site_id,
            Order.item_id == item_id,
            Order.status == OrderStatus.COMPLETED,
        )
        .order_by(Order.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Provider sites
# ---------------------------------------------------------------------------


async def get_active_site(db: AsyncSession, site_id: str) -> ProviderSite:
    """Resolve a site for ordering.

    Raises:
        SiteUnsupported: site is not registered.
        SiteUnavailable: site is registered but switched off.
    """
    result = await db.execute(
        select(ProviderSite).where(ProviderSite.site_id == site_id)
    )
    site = result.scalar_one_or_none()
    if site is None:
        raise SiteUnsupported(f"Site '{site_id}' is not supported")
    if not site.is_active:
        raise SiteUnavailable(f"{site.display_name} is currently unavailable")
    return site


async def list_active_sites(db: AsyncSession) -> list[ProviderSite]:
    result = await db.execute(
        select(ProviderSite)
        .where(ProviderSite.is_active.is_(True))
        .order_by(ProviderSite.display_name)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def create_order(db: AsyncSession, order: Order) -> Order:
    """Insert a new PENDING order in the caller's transaction."""
    if order.status is None:
        order.status = OrderStatus.PENDING
    if order.status != OrderStatus.PENDING:
        raise IllegalTransition(f"New orders start PENDING, got {order.status.value}")
    db.add(order)
    await db.flush()
    return order


async def transition(
    db: AsyncSession,
    order_id: uuid.UUID,
    from_status: OrderStatus,
    to_status: OrderStatus,
    **fields: Any,
) -> Order:
    """Move ``order_id`` from ``from_status`` to ``to_status`` if still there.

    Raises:
        IllegalTransition: the pair is not in the state graph.
        StaleTransition: the stored status is no longer ``from_status``.
        OrderNotFound: no such order.
    """
    if (from_status, to_status) not in LEGAL_TRANSITIONS:
        raise IllegalTransition(
            f"{from_status.value} -> {to_status.value} is not a legal transition"
        )
    _check_fields(fields)

    await _conditional_update(
        db, order_id, from_status, {"status": to_status, **fields}
    )
    logger.info(
        "Order %s %s -> %s", order_id, from_status.value, to_status.value
    )
    return await get_order(db, order_id)


async def update_in_status(
    db: AsyncSession, order_id: uuid.UUID, status: OrderStatus, **fields: Any
) -> Order:
    """Update bookkeeping columns without changing status.

    Conditional on the status like ``transition``, so a late write can never
    land on an order that has moved on.
    """
    _check_fields(fields)
    await _conditional_update(db, order_id, status, fields)
    return await get_order(db, order_id)


async def mark_refunded(
    db: AsyncSession, order_id: uuid.UUID, refunded_at: datetime = None
) -> bool:
    """Stamp ``refunded_at`` once. Returns False if it was already set."""
    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.refunded_at.is_(None))
        .values(refunded_at=refunded_at or utc_now())
        .returning(Order.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise IllegalTransition(f"Fields not writable here: {sorted(unknown)}")


async def _conditional_update(
    db: AsyncSession, order_id: uuid.UUID, expected: OrderStatus, values: dict
) -> None:
    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected)
        .values(**values)
        .returning(Order.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is not None:
        return

    current = await db.execute(select(Order.status).where(Order.id == order_id))
    actual = current.scalar_one_or_none()
    if actual is None:
        raise OrderNotFound(order_id)
    raise StaleTransition(order_id, expected, actual)
