"""Points service routers."""

from services.points_service.routers.internal import router as internal_router

__all__ = [
    "internal_router",
]
