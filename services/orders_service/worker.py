"""ARQ worker that drives in-flight orders to a terminal state."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def startup(ctx: dict):
    from libs.db.config import AsyncSessionLocal
    from services.orders_service.services.pipeline import FulfillmentPipeline
    from services.orders_service.services.provider_client import get_provider_client
    from services.orders_service.services.scheduler import PollingScheduler

    configure_logging()
    pipeline = FulfillmentPipeline(AsyncSessionLocal, get_provider_client())
    ctx["scheduler"] = PollingScheduler(pipeline, AsyncSessionLocal)
    logger.info("Orders worker started")


async def shutdown(ctx: dict):
    from libs.db.config import engine

    scheduler = ctx.get("scheduler")
    if scheduler is not None:
        await scheduler.drain()
    await engine.dispose()


async def task_advance_orders(ctx: dict):
    """One scheduler tick, waiting for the dispatched work to finish."""
    scheduler = ctx["scheduler"]
    dispatched = await scheduler.tick()
    await scheduler.drain()
    return dispatched


class WorkerSettings:
    redis_settings = get_redis_settings()

    on_startup = startup
    on_shutdown = shutdown

    functions = [task_advance_orders]

    cron_jobs = [
        cron(
            task_advance_orders,
            second={0, 10, 20, 30, 40, 50},
            run_at_startup=True,
            unique=True,
        ),
    ]
