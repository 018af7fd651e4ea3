"""FastAPI dependencies for the Orders Service."""

from functools import lru_cache

from libs.db.config import AsyncSessionLocal
from services.orders_service.services.pipeline import FulfillmentPipeline
from services.orders_service.services.provider_client import get_provider_client


@lru_cache
def get_pipeline() -> FulfillmentPipeline:
    """Process-wide pipeline bound to the default session factory."""
    return FulfillmentPipeline(AsyncSessionLocal, get_provider_client())
