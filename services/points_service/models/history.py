"""PointsHistoryEntry model: append-only audit trail of balance changes."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.points_service.models.enums import HistoryType, enum_values
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class PointsHistoryEntry(Base):
    """One row per debit or credit. Never updated or deleted.

    ``amount`` is signed: negative for usage and expiry, positive for every credit.
    """

    __tablename__ = "points_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    entry_type: Mapped[HistoryType] = mapped_column(
        "type",
        SAEnum(
            HistoryType,
            name="points_history_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    related_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, index=True, nullable=True
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String, unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_points_history_amount_nonzero"),
        Index("ix_points_history_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PointsHistoryEntry {self.id} {self.entry_type.value} {self.amount}>"
