"""Typed payment-provider webhook events.

Stripe delivers ``{"id", "type", "data": {"object": {...}}}``. Every event
type the billing state machine reacts to gets its own model; the ``type``
field discriminates the union. Types outside the union parse to
``UnhandledEvent`` and are acknowledged without any mutation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.core.exceptions import WebhookPayloadError


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class CheckoutSessionObject(StripeObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId") or self.client_reference_id

    @property
    def plan_type(self) -> Optional[str]:
        return self.metadata.get("planType")

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")


class _Recurring(StripeObject):
    interval: Optional[str] = None


class _Price(StripeObject):
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[_Recurring] = None


class _SubscriptionItem(StripeObject):
    price: Optional[_Price] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class _SubscriptionItems(StripeObject):
    data: list[_SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeObject):
    id: str
    customer: Optional[str] = None
    status: str
    cancel_at_period_end: bool = False
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: Optional[_SubscriptionItems] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId")

    @property
    def plan(self) -> Optional[str]:
        return self.metadata.get("plan")

    @property
    def plan_type(self) -> Optional[str]:
        if self.metadata.get("planType"):
            return self.metadata["planType"]
        price = self._first_price()
        if price is not None and price.recurring is not None:
            interval = price.recurring.interval
            if interval:
                return "yearly" if interval == "year" else f"{interval}ly"
        return None

    def _first_item(self) -> Optional[_SubscriptionItem]:
        if self.items is None or not self.items.data:
            return None
        return self.items.data[0]

    def _first_price(self) -> Optional[_Price]:
        item = self._first_item()
        return item.price if item is not None else None

    @property
    def amount(self) -> Optional[int]:
        price = self._first_price()
        return price.unit_amount if price is not None else None

    @property
    def currency(self) -> Optional[str]:
        price = self._first_price()
        return price.currency if price is not None else None

    # Newer API versions moved the period bounds onto the subscription items.
    @property
    def period_start(self) -> Optional[datetime]:
        value = self.current_period_start
        if value is None and self._first_item() is not None:
            value = self._first_item().current_period_start
        return _timestamp(value)

    @property
    def period_end(self) -> Optional[datetime]:
        value = self.current_period_end
        if value is None and self._first_item() is not None:
            value = self._first_item().current_period_end
        return _timestamp(value)


class _SubscriptionDetails(StripeObject):
    subscription: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class _InvoiceParent(StripeObject):
    subscription_details: Optional[_SubscriptionDetails] = None


class InvoiceObject(StripeObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    amount_paid: Optional[int] = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    subscription_details: Optional[_SubscriptionDetails] = None
    parent: Optional[_InvoiceParent] = None

    def _details(self) -> Optional[_SubscriptionDetails]:
        if self.subscription_details is not None:
            return self.subscription_details
        if self.parent is not None:
            return self.parent.subscription_details
        return None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = self._details()
        return details.subscription if details is not None else None

    @property
    def user_id(self) -> Optional[str]:
        if self.metadata.get("userId"):
            return self.metadata["userId"]
        details = self._details()
        return details.metadata.get("userId") if details is not None else None

    @property
    def plan_type(self) -> Optional[str]:
        details = self._details()
        if details is not None and details.metadata.get("planType"):
            return details.metadata["planType"]
        return self.metadata.get("planType")


class _CheckoutData(StripeObject):
    obj: CheckoutSessionObject = Field(alias="object")


class _SubscriptionData(StripeObject):
    obj: SubscriptionObject = Field(alias="object")


class _InvoiceData(StripeObject):
    obj: InvoiceObject = Field(alias="object")


class _EventBase(StripeObject):
    id: str
    created: Optional[int] = None


class CheckoutCompletedEvent(_EventBase):
    type: Literal["checkout.session.completed"]
    data: _CheckoutData


class CheckoutExpiredEvent(_EventBase):
    type: Literal["checkout.session.expired"]
    data: _CheckoutData


class SubscriptionCreatedEvent(_EventBase):
    type: Literal["customer.subscription.created"]
    data: _SubscriptionData


class SubscriptionUpdatedEvent(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: _SubscriptionData


class SubscriptionDeletedEvent(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData


class InvoicePaidEvent(_EventBase):
    type: Literal["invoice.payment_succeeded", "invoice.paid"]
    data: _InvoiceData


class InvoiceFailedEvent(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: _InvoiceData


class UnhandledEvent(_EventBase):
    type: str


BillingEvent = Annotated[
    Union[
        CheckoutCompletedEvent,
        CheckoutExpiredEvent,
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionDeletedEvent,
        InvoicePaidEvent,
        InvoiceFailedEvent,
    ],
    Field(discriminator="type"),
]

HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.expired",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.paid",
        "invoice.payment_failed",
    }
)

_event_adapter: TypeAdapter[BillingEvent] = TypeAdapter(BillingEvent)


def parse_billing_event(
    payload: Mapping[str, Any],
) -> Union[BillingEvent, UnhandledEvent]:
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise WebhookPayloadError("event id and type are required")
    if event_type not in HANDLED_EVENT_TYPES:
        created = payload.get("created")
        return UnhandledEvent(
            id=event_id, type=event_type, created=created if isinstance(created, int) else None
        )
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as exc:
        raise WebhookPayloadError(f"{event_type}: {exc.error_count()} invalid field(s)") from exc
