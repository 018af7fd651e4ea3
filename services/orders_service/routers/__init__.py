"""Orders service routers."""

from services.orders_service.routers.internal import router as internal_router

__all__ = [
    "internal_router",
]
