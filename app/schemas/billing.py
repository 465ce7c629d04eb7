from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class MinutesCheckResponse(BaseModel):
    admissible: bool
    remaining_minutes: float
    required_minutes: float
    source: Literal["subscription", "account"]


class SubscriptionSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    has_active_subscription: bool
    source: str
    plan: str
    status: Optional[str] = None
    latest_status: Optional[str] = None
    minutes_total: float
    minutes_used: float
    minutes_left: float
    subscription_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    type: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


class CheckoutSessionRequest(BaseModel):
    price_id: str = Field(min_length=1)
    plan_type: str = Field(default="monthly", min_length=1)
    plan: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    session_id: Optional[str] = None
    url: Optional[str] = None


class PaymentItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_reference: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_status: str
    plan_type: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: datetime
