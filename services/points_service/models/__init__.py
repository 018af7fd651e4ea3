"""Points Service models package.

Re-exports all models and enums so that:
  - ``from services.points_service.models import PointsBalance`` works
  - Alembic env.py sees every table on import

When adding a new model, add both its import and its __all__ entry.
"""

from services.points_service.models.balance import PointsBalance  # noqa: F401
from services.points_service.models.enums import (  # noqa: F401
    DEBIT_TYPES,
    HistoryType,
)
from services.points_service.models.history import PointsHistoryEntry  # noqa: F401

__all__ = [
    "DEBIT_TYPES",
    "HistoryType",
    "PointsBalance",
    "PointsHistoryEntry",
]
