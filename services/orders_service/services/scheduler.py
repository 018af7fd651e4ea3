"""Background driver that advances every in-flight order.

One PollingScheduler per process. Each tick lists non-terminal orders and
hands each one to ``FulfillmentPipeline.advance`` on a bounded pool of
tasks. An order already being advanced by this process is skipped; across
processes the order store's conditional transitions keep overlapping work
harmless.
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Optional

from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger
from services.orders_service.services import order_store
from services.orders_service.services.pipeline import FulfillmentPipeline
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class PollingScheduler:
    def __init__(
        self,
        pipeline: FulfillmentPipeline,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        concurrency: int = None,
        batch_size: int = None,
        tick_interval: float = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        settings: Settings = None,
    ):
        settings = settings or get_settings()
        self.pipeline = pipeline
        self._session_factory = session_factory
        self.concurrency = concurrency or settings.SCHEDULER_CONCURRENCY
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        if tick_interval is None:
            tick_interval = settings.SCHEDULER_TICK_SECONDS
        self.tick_interval = tick_interval
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[uuid.UUID] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopped: Optional[asyncio.Event] = None

    @property
    def in_flight(self) -> frozenset[uuid.UUID]:
        return frozenset(self._in_flight)

    async def tick(self) -> int:
        """Dispatch one round of work. Returns how many orders were started.

        Started tasks are not awaited here; use ``drain`` for that.
        """
        async with self._session_factory() as db:
            orders = await order_store.list_non_terminal(db, limit=self.batch_size)

        dispatched = 0
        for order in orders:
            if order.id in self._in_flight:
                continue
            self._in_flight.add(order.id)
            task = asyncio.create_task(self._advance(order.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched += 1

        if dispatched:
            logger.info(
                "Scheduler tick: %d non-terminal, %d dispatched, %d in flight",
                len(orders),
                dispatched,
                len(self._in_flight),
            )
        return dispatched

    async def drain(self) -> None:
        """Wait for every task started by previous ticks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def run(self) -> None:
        """Tick every ``tick_interval`` seconds until ``stop`` is called."""
        self._stopped = asyncio.Event()
        logger.info(
            "Polling scheduler started (interval=%.1fs, concurrency=%d)",
            self.tick_interval,
            self.concurrency,
        )
        try:
            while not self._stopped.is_set():
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
                await self._sleep(self.tick_interval)
        finally:
            await self.drain()
            logger.info("Polling scheduler stopped")

    def stop(self) -> None:
        if self._stopped is not None:
            self._stopped.set()

    async def _advance(self, order_id: uuid.UUID) -> None:
        try:
            async with self._semaphore:
                await self.pipeline.advance(order_id)
        except Exception:
            logger.exception("Advancing order %s failed", order_id)
        finally:
            self._in_flight.discard(order_id)
