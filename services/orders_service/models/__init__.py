"""Orders Service models package.

Re-exports all models and enums so that:
  - ``from services.orders_service.models import Order`` works
  - Alembic env.py sees every table on import

When adding a new model, add both its import and its __all__ entry.
"""

from services.orders_service.models.enums import (  # noqa: F401
    LEGAL_TRANSITIONS,
    TERMINAL_STATUSES,
    OrderStatus,
)
from services.orders_service.models.order import Order  # noqa: F401
from services.orders_service.models.site import ProviderSite  # noqa: F401

__all__ = [
    "LEGAL_TRANSITIONS",
    "TERMINAL_STATUSES",
    "OrderStatus",
    "Order",
    "ProviderSite",
]
