from __future__ import annotations

from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseRecord


class PaymentRecord(BaseRecord):
    """One row per checkout session or invoice seen from the payment provider."""

    __tablename__ = "payment_history"
    __table_args__ = (
        UniqueConstraint("provider_reference", name="uk_payment_history_reference"),
        Index("idx_payment_history_user", "user_id"),
    )

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    plan_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
