from app.services.billing.events import parse_billing_event
from app.services.billing.gateway import StripeGateway
from app.services.billing.state_machine import (
    BillingStateMachine,
    SubscriptionSnapshot,
    WebhookOutcome,
)
from app.services.billing.store import BillingStore

__all__ = [
    "BillingStateMachine",
    "BillingStore",
    "StripeGateway",
    "SubscriptionSnapshot",
    "WebhookOutcome",
    "parse_billing_event",
]
