from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseRecord


class Subscription(BaseRecord):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("provider_subscription_id", name="uk_subscriptions_provider_id"),
        Index("idx_subscriptions_user_status", "user_id", "status"),
    )

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    plan: Mapped[str] = mapped_column(String(30), server_default=text("'free'"), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)  # monthly | yearly
    status: Mapped[str] = mapped_column(
        String(20), server_default=text("'inactive'"), nullable=False
    )

    subscription_minutes: Mapped[float] = mapped_column(
        Float, server_default=text("0"), default=0.0, nullable=False
    )
    used_minutes: Mapped[float] = mapped_column(
        Float, server_default=text("0"), default=0.0, nullable=False
    )

    # Smallest currency unit
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
