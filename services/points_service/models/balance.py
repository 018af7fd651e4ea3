"""PointsBalance model: one spendable balance per user."""

import uuid
from datetime import datetime

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from sqlalchemy import CheckConstraint, DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class PointsBalance(Base):
    """Per-user point balance.

    ``current_points == total_purchased + total_granted + total_refunded
    - total_used - total_expired`` at all times; only the ledger mutates
    these columns.
    """

    __tablename__ = "points_balances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        String, unique=True, index=True, nullable=False
    )
    current_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_refunded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_granted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_expired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "current_points >= 0", name="ck_points_balance_non_negative"
        ),
    )

    def __repr__(self) -> str:
        return f"<PointsBalance user_id={self.user_id} current={self.current_points}>"
