from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, Float, Index, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel


class User(BaseModel):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", "deleted_at", name="uk_users_email"),
        Index(
            "uk_users_whatsapp_number",
            "whatsapp_number",
            unique=True,
            postgresql_where=text("whatsapp_number IS NOT NULL"),
        ),
        Index("idx_users_status", "status"),
    )

    email: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # E.164 without the "whatsapp:" prefix
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)

    # Free tier; NULL total means the configured default
    total_minutes: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    used_minutes: Mapped[float] = mapped_column(
        Float, server_default=text("0"), default=0.0, nullable=False
    )

    is_subscribed: Mapped[bool] = mapped_column(
        Boolean, server_default=text("false"), default=False, nullable=False
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
