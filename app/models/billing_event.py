from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseRecord


class BillingEventRecord(BaseRecord):
    __tablename__ = "billing_webhook_events"
    __table_args__ = (UniqueConstraint("event_id", name="uk_billing_webhook_events_event_id"),)

    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
