"""Unit tests for order persistence and conditional transitions."""

import uuid

import pytest
from services.orders_service.exceptions import (
    IllegalTransition,
    OrderNotFound,
    SiteUnavailable,
    SiteUnsupported,
    StaleTransition,
)
from services.orders_service.models import OrderStatus
from services.orders_service.services import order_store
from tests.factories import OrderFactory, SiteFactory


async def _insert(db, **overrides):
    order = OrderFactory.create(**overrides)
    db.add(order)
    await db.commit()
    return order


# ---------------------------------------------------------------------------
# transition
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transition_pending_to_processing(db_session):
    order = await _insert(db_session)

    updated = await order_store.transition(
        db_session,
        order.id,
        OrderStatus.PENDING,
        OrderStatus.PROCESSING,
        provider_task_id="task-1",
    )
    await db_session.commit()

    assert updated.status == OrderStatus.PROCESSING
    assert updated.provider_task_id == "task-1"


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (OrderStatus.PENDING, OrderStatus.COMPLETED),
        (OrderStatus.COMPLETED, OrderStatus.FAILED),
        (OrderStatus.FAILED, OrderStatus.PENDING),
        (OrderStatus.PROCESSING, OrderStatus.PENDING),
    ],
)
async def test_transition_outside_state_graph_is_illegal(
    db_session, from_status, to_status
):
    order = await _insert(db_session, status=from_status)

    with pytest.raises(IllegalTransition):
        await order_store.transition(db_session, order.id, from_status, to_status)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transition_from_wrong_status_is_stale(db_session):
    """The conditional update matches nothing once the status has moved on."""
    order = await _insert(db_session, status=OrderStatus.FAILED)

    with pytest.raises(StaleTransition) as exc_info:
        await order_store.transition(
            db_session, order.id, OrderStatus.PROCESSING, OrderStatus.COMPLETED
        )

    assert exc_info.value.expected == OrderStatus.PROCESSING
    assert exc_info.value.actual == OrderStatus.FAILED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_identical_transition_loses(db_session):
    order = await _insert(db_session, status=OrderStatus.PROCESSING)

    await order_store.transition(
        db_session, order.id, OrderStatus.PROCESSING, OrderStatus.COMPLETED
    )
    await db_session.commit()

    with pytest.raises(StaleTransition):
        await order_store.transition(
            db_session, order.id, OrderStatus.PROCESSING, OrderStatus.FAILED
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transition_rejects_unknown_fields(db_session):
    order = await _insert(db_session)

    with pytest.raises(IllegalTransition):
        await order_store.transition(
            db_session,
            order.id,
            OrderStatus.PENDING,
            OrderStatus.PROCESSING,
            cost=0,
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transition_missing_order(db_session):
    with pytest.raises(OrderNotFound):
        await order_store.transition(
            db_session, uuid.uuid4(), OrderStatus.PENDING, OrderStatus.FAILED
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_in_status_is_conditional(db_session):
    order = await _insert(db_session, status=OrderStatus.COMPLETED)

    with pytest.raises(StaleTransition):
        await order_store.update_in_status(
            db_session, order.id, OrderStatus.PROCESSING, last_polled_at=None
        )


# ---------------------------------------------------------------------------
# mark_refunded
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_refunded_only_once(db_session):
    order = await _insert(db_session, status=OrderStatus.FAILED)

    assert await order_store.mark_refunded(db_session, order.id) is True
    await db_session.commit()
    assert await order_store.mark_refunded(db_session, order.id) is False

    reloaded = await order_store.get_order(db_session, order.id)
    assert reloaded.refunded_at is not None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_list_non_terminal_skips_finished_orders(db_session):
    pending = await _insert(db_session)
    processing = await _insert(db_session, status=OrderStatus.PROCESSING)
    await _insert(db_session, status=OrderStatus.COMPLETED)
    await _insert(db_session, status=OrderStatus.FAILED)

    orders = await order_store.list_non_terminal(db_session)

    assert {o.id for o in orders} == {pending.id, processing.id}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_find_completed_matches_same_item_only(db_session):
    done = await _insert(
        db_session, status=OrderStatus.COMPLETED, user_id="user-a", item_id="42"
    )
    await _insert(db_session, status=OrderStatus.FAILED, user_id="user-a", item_id="43")

    found = await order_store.find_completed(
        db_session, user_id="user-a", site_id="stock", item_id="42"
    )
    missing = await order_store.find_completed(
        db_session, user_id="user-a", site_id="stock", item_id="43"
    )

    assert found.id == done.id
    assert missing is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_get_active_site(db_session):
    db_session.add(SiteFactory.create(site_id="stock"))
    db_session.add(SiteFactory.create(site_id="retired", is_active=False))
    await db_session.commit()

    site = await order_store.get_active_site(db_session, "stock")
    assert site.site_id == "stock"

    with pytest.raises(SiteUnavailable):
        await order_store.get_active_site(db_session, "retired")
    with pytest.raises(SiteUnsupported):
        await order_store.get_active_site(db_session, "nowhere")

    active = await order_store.list_active_sites(db_session)
    assert [s.site_id for s in active] == ["stock"]
