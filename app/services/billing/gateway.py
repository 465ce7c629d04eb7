from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import stripe

from app.config import settings
from app.core.exceptions import (
    BillingProviderError,
    BusinessError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from app.i18n.codes import ErrorCode

logger = logging.getLogger(__name__)


class StripeGateway:
    """Stripe calls used by billing: webhook verification and subscription commands.

    stripe-python is synchronous; every network call runs in a worker thread.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        )
        self._tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE

    def _require_api_key(self) -> str:
        if not self._api_key:
            raise BusinessError(ErrorCode.BILLING_PROVIDER_NOT_CONFIGURED)
        return self._api_key

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Check the ``Stripe-Signature`` header and decode the event body."""
        if not self._webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set, rejecting webhook")
            raise WebhookSignatureError()
        if not signature:
            raise WebhookSignatureError()
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookPayloadError("body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature verification failed: %s", exc)
            raise WebhookSignatureError() from exc
        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise WebhookPayloadError("body is not valid JSON") from exc
        if not isinstance(event, dict):
            raise WebhookPayloadError("event must be a JSON object")
        return event

    async def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> dict[str, Any]:
        api_key = self._require_api_key()
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.modify,
                subscription_id,
                api_key=api_key,
                cancel_at_period_end=flag,
            )
        except stripe.StripeError as exc:
            logger.error(
                "Stripe modify failed for %s (cancel_at_period_end=%s): %s",
                subscription_id,
                flag,
                exc,
            )
            raise BillingProviderError(str(exc.user_message or exc)) from exc
        return _to_dict(subscription)

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        api_key = self._require_api_key()
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, api_key=api_key
            )
        except stripe.StripeError as exc:
            raise BillingProviderError(str(exc.user_message or exc)) from exc
        return _to_dict(subscription)

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        price_id: str,
        plan_type: str,
        plan: str,
        customer_email: Optional[str] = None,
        customer_id: Optional[str] = None,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        api_key = self._require_api_key()
        metadata = {"userId": user_id, "planType": plan_type, "plan": plan}
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create, api_key=api_key, **params
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session failed for user %s: %s", user_id, exc)
            raise BillingProviderError(str(exc.user_message or exc)) from exc
        return _to_dict(session)


def _to_dict(obj: Any) -> dict[str, Any]:
    # str(StripeObject) is the raw API JSON
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return dict(obj)
