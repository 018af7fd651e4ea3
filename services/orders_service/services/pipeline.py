"""Fulfillment pipeline: reserve points, submit, poll, reconcile.

Every step opens its own session and commits before talking to the provider
again, so no database transaction is held across a network call. State only
moves through the order store's conditional transitions; a step that loses a
race (StaleTransition) re-reads the order and returns it untouched.

Refunds are exactly-once because ``fail`` moves the order to FAILED and
credits the refund in the same transaction, and only the writer whose
conditional transition matched gets that far.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import as_utc, seconds_since, utc_now
from libs.common.logging import get_logger
from services.orders_service.exceptions import (
    OrderCancelled,
    OrderFailure,
    OrderNotCancellable,
    OrderNotCompleted,
    OrderNotFound,
    PollTimeout,
    ProviderTaskFailed,
    StaleTransition,
    SubmitRetriesExhausted,
)
from services.orders_service.models import Order, OrderStatus, ProviderSite
from services.orders_service.services import order_store
from services.orders_service.services.provider_client import (
    ProviderClient,
    ProviderError,
    RateLimited,
    TaskPoll,
    TaskStatus,
)
from services.points_service.exceptions import InvalidAmount
from services.points_service.models import HistoryType
from services.points_service.services.ledger import credit_points, debit_points
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

MAX_SUBMIT_BACKOFF_SECONDS = 300.0

# Re-reads allowed when fail() loses a transition race to a non-terminal move
# (e.g. PENDING -> PROCESSING). The state graph is acyclic, so two suffice.
_FAIL_ROUNDS = 3

Failure = Union[OrderFailure, ProviderError]


class FulfillmentPipeline:
    """Drives orders through PENDING -> PROCESSING -> COMPLETED | FAILED."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: ProviderClient,
        *,
        settings: Settings = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._provider = provider
        self._clock = clock
        self.poll_timeout = settings.ORDER_POLL_TIMEOUT_SECONDS
        self.max_submit_attempts = settings.ORDER_MAX_SUBMIT_ATTEMPTS
        self.submit_backoff = settings.ORDER_SUBMIT_BACKOFF_SECONDS
        self.free_redownloads = settings.FREE_REDOWNLOADS

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        *,
        user_id: str,
        site_id: str,
        item_id: str,
        item_url: str,
        cost: int,
        title: Optional[str] = None,
    ) -> Order:
        """Debit ``cost`` and insert a PENDING order in one transaction.

        Raises:
            SiteUnsupported / SiteUnavailable: before anything is written.
            InsufficientPoints: the debit was refused; no order row exists.
        """
        if cost < 0:
            raise InvalidAmount(f"Order cost must not be negative, got {cost}")

        async with self._session_factory() as db:
            await order_store.get_active_site(db, site_id)

            is_redownload = False
            if self.free_redownloads and cost > 0:
                previous = await order_store.find_completed(
                    db, user_id=user_id, site_id=site_id, item_id=item_id
                )
                if previous is not None:
                    logger.info(
                        "User %s re-ordering %s/%s (previous order %s): free",
                        user_id,
                        site_id,
                        item_id,
                        previous.id,
                    )
                    cost, is_redownload = 0, True

            order = Order(
                id=uuid.uuid4(),
                user_id=user_id,
                provider_site_id=site_id,
                item_id=item_id,
                item_url=item_url,
                title=title,
                cost=cost,
                is_redownload=is_redownload,
                status=OrderStatus.PENDING,
            )
            if cost > 0:
                await debit_points(
                    db,
                    user_id=user_id,
                    amount=cost,
                    description=f"Order reservation: {title or item_id}",
                    related_order_id=order.id,
                    idempotency_key=f"order-reserve-{order.id}",
                )
            await order_store.create_order(db, order)
            await db.commit()

        logger.info(
            "Created order %s for user %s (%s/%s, cost=%d)",
            order.id,
            user_id,
            site_id,
            item_id,
            cost,
        )
        return order

    async def place_order(self, **kwargs) -> Order:
        """``create_order`` followed by one immediate submission attempt."""
        order = await self.create_order(**kwargs)
        return await self.submit(order.id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, order_id: uuid.UUID) -> Order:
        """Hand a PENDING order to the provider.

        Retryable provider errors leave the order PENDING with a backoff;
        final ones, or running out of attempts or time, fail it.
        """
        order = await self.get_order(order_id)
        if order.status != OrderStatus.PENDING:
            return order

        now = self._clock()
        if seconds_since(order.created_at, now) > self.poll_timeout:
            return await self.fail(
                order_id,
                SubmitRetriesExhausted(
                    f"provider did not accept the order within {self.poll_timeout}s"
                ),
            )
        if order.next_submit_at is not None and as_utc(order.next_submit_at) > now:
            return order

        try:
            task_id = await self._provider.submit(
                order.item_url, site_id=order.provider_site_id, item_id=order.item_id
            )
        except ProviderError as exc:
            if exc.retryable:
                return await self._record_submit_retry(order, exc, now)
            logger.warning("Order %s rejected by provider: %s", order_id, exc.message)
            return await self.fail(order_id, exc)

        async with self._session_factory() as db:
            try:
                order = await order_store.transition(
                    db,
                    order_id,
                    OrderStatus.PENDING,
                    OrderStatus.PROCESSING,
                    provider_task_id=task_id,
                    submitted_at=now,
                    submit_attempts=order.submit_attempts + 1,
                    next_submit_at=None,
                    error=None,
                    error_code=None,
                )
            except StaleTransition as exc:
                await db.rollback()
                logger.debug("Submit of order %s lost a race: %s", order_id, exc)
                await self._cancel_provider_task(task_id)
                return await self.get_order(order_id)
            await db.commit()

        logger.info("Order %s submitted as provider task %s", order_id, task_id)
        return order

    async def _record_submit_retry(
        self, order: Order, exc: ProviderError, now: datetime
    ) -> Order:
        attempts = order.submit_attempts + 1
        if attempts >= self.max_submit_attempts:
            return await self.fail(
                order.id,
                SubmitRetriesExhausted(
                    f"provider unavailable after {attempts} attempts: {exc.message}"
                ),
            )

        delay = min(
            self.submit_backoff * 2 ** (attempts - 1), MAX_SUBMIT_BACKOFF_SECONDS
        )
        if isinstance(exc, RateLimited) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        logger.warning(
            "Submit of order %s failed (attempt %d/%d, %s); retrying in %.0fs",
            order.id,
            attempts,
            self.max_submit_attempts,
            exc.code,
            delay,
        )

        async with self._session_factory() as db:
            try:
                order = await order_store.update_in_status(
                    db,
                    order.id,
                    OrderStatus.PENDING,
                    submit_attempts=attempts,
                    next_submit_at=now + timedelta(seconds=delay),
                    error=exc.message,
                    error_code=exc.code,
                )
            except StaleTransition:
                await db.rollback()
                return await self.get_order(order.id)
            await db.commit()
        return order

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self, order_id: uuid.UUID) -> Order:
        """Poll the provider once for a PROCESSING order.

        The provider is asked before the deadline is applied, so an asset
        that became ready right at the timeout still completes.
        """
        order = await self.get_order(order_id)
        if order.status != OrderStatus.PROCESSING:
            return order

        now = self._clock()
        timed_out = seconds_since(order.created_at, now) > self.poll_timeout

        try:
            result = await self._provider.poll(order.provider_task_id)
        except ProviderError as exc:
            if not exc.retryable:
                return await self.fail(order_id, exc)
            logger.warning("Poll of order %s failed: %s", order_id, exc.message)
            if timed_out:
                return await self.fail(order_id, PollTimeout())
            return await self._touch_polled(order_id, now)

        if result.status == TaskStatus.READY and not result.download_url:
            result = await self._fetch_download_link(order)

        if result.status == TaskStatus.READY and result.download_url:
            return await self._complete(order_id, result, now)
        if result.status == TaskStatus.ERROR:
            return await self.fail(order_id, ProviderTaskFailed(result.error_detail))
        if timed_out:
            return await self.fail(order_id, PollTimeout())
        return await self._touch_polled(order_id, now)

    async def _fetch_download_link(self, order: Order) -> TaskPoll:
        try:
            result = await self._provider.download_link(order.provider_task_id)
        except ProviderError as exc:
            logger.warning(
                "Order %s ready but download link unavailable: %s",
                order.id,
                exc.message,
            )
            return TaskPoll(status=TaskStatus.PROCESSING)
        if result.status != TaskStatus.READY or not result.download_url:
            return TaskPoll(status=TaskStatus.PROCESSING)
        return result

    async def _complete(
        self, order_id: uuid.UUID, result: TaskPoll, now: datetime
    ) -> Order:
        async with self._session_factory() as db:
            try:
                order = await order_store.transition(
                    db,
                    order_id,
                    OrderStatus.PROCESSING,
                    OrderStatus.COMPLETED,
                    download_url=result.download_url,
                    file_name=result.file_name,
                    file_size=result.file_size,
                    completed_at=now,
                    last_polled_at=now,
                )
            except StaleTransition as exc:
                await db.rollback()
                logger.debug("Completion of order %s lost a race: %s", order_id, exc)
                return await self.get_order(order_id)
            await db.commit()
        logger.info("Order %s completed (%s)", order_id, result.file_name)
        return order

    async def _touch_polled(self, order_id: uuid.UUID, now: datetime) -> Order:
        async with self._session_factory() as db:
            try:
                order = await order_store.update_in_status(
                    db, order_id, OrderStatus.PROCESSING, last_polled_at=now
                )
            except StaleTransition:
                await db.rollback()
                return await self.get_order(order_id)
            await db.commit()
        return order

    # ------------------------------------------------------------------
    # Failure and refund
    # ------------------------------------------------------------------

    async def fail(self, order_id: uuid.UUID, failure: Failure) -> Order:
        """Move a non-terminal order to FAILED and refund it, exactly once.

        Already-terminal orders are returned unchanged with no refund.
        """
        code = getattr(failure, "code", "failed")
        message = getattr(failure, "message", None) or str(failure)
        now = self._clock()

        for _ in range(_FAIL_ROUNDS):
            async with self._session_factory() as db:
                order = await order_store.get_order(db, order_id)
                if order.is_terminal:
                    logger.debug(
                        "Order %s already %s; not failing again",
                        order_id,
                        order.status.value,
                    )
                    return order

                try:
                    order = await order_store.transition(
                        db,
                        order_id,
                        order.status,
                        OrderStatus.FAILED,
                        error=message,
                        error_code=code,
                        failed_at=now,
                    )
                except StaleTransition:
                    await db.rollback()
                    continue

                refunded = 0
                if order.cost > 0 and order.refunded_at is None:
                    await credit_points(
                        db,
                        user_id=order.user_id,
                        amount=order.cost,
                        entry_type=HistoryType.REFUND,
                        description=f"Order refund: {order.title or order.item_id}",
                        related_order_id=order.id,
                        idempotency_key=f"order-refund-{order.id}",
                    )
                    if await order_store.mark_refunded(db, order_id, now):
                        refunded = order.cost
                    order = await order_store.get_order(db, order_id)
                await db.commit()

            logger.info(
                "Order %s failed (%s: %s), refunded %d points",
                order_id,
                code,
                message,
                refunded,
            )
            return order

        return await self.get_order(order_id)

    # ------------------------------------------------------------------
    # User-facing operations
    # ------------------------------------------------------------------

    async def cancel(self, order_id: uuid.UUID, *, user_id: str = None) -> Order:
        """Cancel an in-flight order and refund it.

        A PROCESSING order may still complete if a poll reporting READY wins
        the race; the returned order shows which outcome stuck.

        Raises:
            OrderNotCancellable: the order is already terminal.
        """
        order = await self.get_order(order_id, user_id=user_id)
        if order.is_terminal:
            raise OrderNotCancellable(
                f"Order {order_id} is already {order.status.value}"
            )

        order = await self.fail(order_id, OrderCancelled())
        if (
            order.status == OrderStatus.FAILED
            and order.error_code == OrderCancelled.code
            and order.provider_task_id
        ):
            await self._cancel_provider_task(order.provider_task_id)
        return order

    async def regenerate_download(
        self, order_id: uuid.UUID, *, user_id: str = None
    ) -> Order:
        """Refresh the download link of a COMPLETED order."""
        order = await self.get_order(order_id, user_id=user_id)
        if order.status != OrderStatus.COMPLETED or not order.provider_task_id:
            raise OrderNotCompleted(
                f"Order {order_id} is {order.status.value}; no download to refresh"
            )

        try:
            result = await self._provider.download_link(order.provider_task_id)
        except ProviderError as exc:
            raise OrderNotCompleted(
                f"Download link unavailable: {exc.message}"
            ) from exc
        if not result.download_url:
            raise OrderNotCompleted("Provider returned no download link")

        async with self._session_factory() as db:
            order = await order_store.update_in_status(
                db,
                order_id,
                OrderStatus.COMPLETED,
                download_url=result.download_url,
                file_name=result.file_name or order.file_name,
            )
            await db.commit()
        logger.info("Regenerated download link for order %s", order_id)
        return order

    async def get_order(self, order_id: uuid.UUID, *, user_id: str = None) -> Order:
        """Plain read. A ``user_id`` that does not own the order sees 404."""
        async with self._session_factory() as db:
            order = await order_store.get_order(db, order_id)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFound(order_id)
        return order

    get_order_status = get_order

    async def list_orders(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[Order]:
        async with self._session_factory() as db:
            return await order_store.list_for_user(
                db, user_id, limit=limit, offset=offset
            )

    async def list_sites(self) -> list[ProviderSite]:
        async with self._session_factory() as db:
            return await order_store.list_active_sites(db)

    # ------------------------------------------------------------------
    # Scheduler entry point
    # ------------------------------------------------------------------

    async def advance(self, order_id: uuid.UUID) -> Order:
        """Take one step for whatever state the order is in."""
        order = await self.get_order(order_id)
        if order.status == OrderStatus.PENDING:
            return await self.submit(order_id)
        if order.status == OrderStatus.PROCESSING:
            return await self.poll_once(order_id)
        return order

    async def _cancel_provider_task(self, task_id: str) -> None:
        try:
            await self._provider.cancel(task_id)
        except ProviderError as exc:
            logger.warning(
                "Could not cancel provider task %s: %s", task_id, exc.message
            )
