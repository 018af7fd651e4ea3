"""FastAPI application for the Points Service."""

from fastapi import FastAPI
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from services.points_service.routers import internal_router


def create_app() -> FastAPI:
    """Create and configure the Points Service FastAPI app."""
    app = FastAPI(
        title="Points Service",
        version="0.1.0",
        description="Point balances and the append-only points ledger.",
    )

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "points"}

    # Internal service-to-service routes
    app.include_router(internal_router)

    return app


app = create_app()
