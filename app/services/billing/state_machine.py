"""Subscription lifecycle driven by payment-provider events.

Webhook events move subscription rows and the account ``is_subscribed`` flag
through the transition table below. Each event is applied at most once: the
event id is recorded in the same transaction as the mutation.

    checkout completed      -> account flagged subscribed, payment recorded
    checkout expired        -> payment recorded as expired
    subscription created    -> row upserted with plan minutes
    subscription updated    -> status and period bounds set
    subscription deleted    -> canceled, flag cleared
    invoice paid            -> usage reset, past_due back to active
    invoice payment failed  -> past_due
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import AccountNotFoundError, BusinessError, WebhookPayloadError
from app.db import translate_storage_errors
from app.i18n.codes import ErrorCode
from app.models.payment_record import PaymentRecord
from app.models.subscription import Subscription
from app.models.user import User
from app.services.billing.events import (
    BillingEvent,
    CheckoutCompletedEvent,
    CheckoutExpiredEvent,
    InvoiceFailedEvent,
    InvoicePaidEvent,
    SubscriptionCreatedEvent,
    SubscriptionDeletedEvent,
    SubscriptionObject,
    SubscriptionUpdatedEvent,
    UnhandledEvent,
    parse_billing_event,
)
from app.services.billing.gateway import StripeGateway
from app.services.billing.statuses import (
    ACTIVE,
    CANCELED,
    CANCELING,
    PAST_DUE,
    map_provider_status,
    subscribed_flag_for,
)
from app.services.billing.store import BillingStore, PaymentValues, SubscriptionValues
from app.services.quota_ledger import SubscriptionQuota, select_current_subscription
from app.utils.ids import is_uuid

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNMATCHED = "unmatched"

RECONCILABLE_STATUSES = (ACTIVE, PAST_DUE, CANCELING)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str  # applied | duplicate | ignored | unmatched
    detail: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    has_active_subscription: bool
    source: str  # subscription | account
    plan: str
    status: Optional[str]
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
    latest_status: Optional[str] = None


@dataclass(frozen=True)
class PaymentPage:
    items: Sequence[PaymentRecord]
    total: int
    page: int
    page_size: int


def _current_row(rows: Sequence[Subscription]) -> Optional[Subscription]:
    current = select_current_subscription(
        SubscriptionQuota(
            id=str(row.id),
            plan=row.plan,
            status=row.status,
            subscription_minutes=float(row.subscription_minutes or 0),
            used_minutes=float(row.used_minutes or 0),
            created_at=row.created_at,
        )
        for row in rows
    )
    if current is None:
        return None
    return next(row for row in rows if str(row.id) == current.id)


class BillingStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Optional[StripeGateway] = None,
        store: Optional[BillingStore] = None,
        minutes_for_plan: Optional[Callable[[Optional[str]], float]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway or StripeGateway()
        self._store = store or BillingStore()
        self._minutes_for_plan = minutes_for_plan or settings.minutes_for_plan

    @property
    def gateway(self) -> StripeGateway:
        return self._gateway

    # ------------------------------------------------------------------
    # Webhook ingestion
    # ------------------------------------------------------------------

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify, parse and apply one webhook delivery.

        Raises:
            WebhookSignatureError: signature missing or invalid, nothing applied
            WebhookPayloadError: body is not a well-formed event
            StorageUnavailableError: transient database failure, provider should retry
        """
        raw = self._gateway.verify_webhook(payload, signature)
        event = parse_billing_event(raw)
        return await self.apply(event)

    async def apply(self, event: Union[BillingEvent, UnhandledEvent]) -> WebhookOutcome:
        if isinstance(event, UnhandledEvent):
            logger.info("Ignoring billing event %s (%s)", event.id, event.type)
            return WebhookOutcome(event.id, event.type, IGNORED)

        async with translate_storage_errors():
            async with self._session_factory() as session:
                async with session.begin():
                    first_delivery = await self._store.mark_event_processed(
                        session, event.id, event.type
                    )
                    if not first_delivery:
                        logger.info("Billing event %s already processed", event.id)
                        return WebhookOutcome(event.id, event.type, DUPLICATE)
                    status, detail = await self._dispatch(session, event)

        if status == UNMATCHED:
            logger.warning(
                "Billing event %s (%s) unmatched: %s", event.id, event.type, detail
            )
        else:
            logger.info("Billing event %s (%s) applied", event.id, event.type)
        return WebhookOutcome(event.id, event.type, status, detail)

    async def _dispatch(
        self, session: AsyncSession, event: BillingEvent
    ) -> tuple[str, Optional[str]]:
        if isinstance(event, CheckoutCompletedEvent):
            return await self._on_checkout_completed(session, event)
        if isinstance(event, CheckoutExpiredEvent):
            return await self._on_checkout_expired(session, event)
        if isinstance(event, SubscriptionCreatedEvent):
            return await self._sync_subscription(session, event.data.obj, create=True)
        if isinstance(event, SubscriptionUpdatedEvent):
            return await self._sync_subscription(session, event.data.obj, create=False)
        if isinstance(event, SubscriptionDeletedEvent):
            return await self._on_subscription_deleted(session, event)
        if isinstance(event, InvoicePaidEvent):
            return await self._on_invoice_paid(session, event)
        if isinstance(event, InvoiceFailedEvent):
            return await self._on_invoice_failed(session, event)
        raise TypeError(f"Unsupported billing event: {type(event).__name__}")

    async def _resolve_user(self, session: AsyncSession, user_id: Optional[str]) -> Optional[User]:
        if not user_id or not is_uuid(user_id):
            return None
        return await self._store.get_user(session, user_id)

    async def _on_checkout_completed(
        self, session: AsyncSession, event: CheckoutCompletedEvent
    ) -> tuple[str, Optional[str]]:
        checkout = event.data.obj
        user = await self._resolve_user(session, checkout.user_id)
        if user is None:
            return UNMATCHED, f"no user for checkout {checkout.id}"
        if checkout.is_paid:
            await self._store.mark_subscribed(session, user.id, checkout.customer)
        await self._store.record_payment(
            session,
            PaymentValues(
                user_id=user.id,
                provider_reference=checkout.id,
                payment_status="paid" if checkout.is_paid else (checkout.payment_status or "unpaid"),
                amount=checkout.amount_total,
                currency=checkout.currency,
                plan_type=checkout.plan_type,
            ),
        )
        return APPLIED, None

    async def _on_checkout_expired(
        self, session: AsyncSession, event: CheckoutExpiredEvent
    ) -> tuple[str, Optional[str]]:
        checkout = event.data.obj
        user = await self._resolve_user(session, checkout.user_id)
        if user is None:
            return UNMATCHED, f"no user for checkout {checkout.id}"
        await self._store.record_payment(
            session,
            PaymentValues(
                user_id=user.id,
                provider_reference=checkout.id,
                payment_status="expired",
                amount=checkout.amount_total,
                currency=checkout.currency,
                plan_type=checkout.plan_type,
            ),
        )
        return APPLIED, None

    async def _sync_subscription(
        self, session: AsyncSession, subscription: SubscriptionObject, create: bool
    ) -> tuple[str, Optional[str]]:
        local_status = map_provider_status(subscription.status, subscription.cancel_at_period_end)
        existing = await self._store.get_subscription_by_provider_id(session, subscription.id)

        if existing is not None and not create:
            user_id = await self._store.set_subscription_state(
                session,
                subscription.id,
                local_status,
                subscription.period_start,
                subscription.period_end,
            )
        else:
            user_id = subscription.user_id or (existing.user_id if existing else None)
            user = await self._resolve_user(session, user_id)
            if user is None:
                return UNMATCHED, f"no user for subscription {subscription.id}"
            plan = subscription.plan or (existing.plan if existing else settings.DEFAULT_PAID_PLAN)
            await self._store.upsert_subscription(
                session,
                SubscriptionValues(
                    user_id=user.id,
                    provider_subscription_id=subscription.id,
                    plan=plan,
                    type=subscription.plan_type,
                    status=local_status,
                    subscription_minutes=self._minutes_for_plan(plan),
                    amount=subscription.amount,
                    currency=subscription.currency,
                    current_period_start=subscription.period_start,
                    current_period_end=subscription.period_end,
                ),
            )
            user_id = user.id

        if user_id is None:
            return UNMATCHED, f"subscription {subscription.id} not found"
        await self._apply_flag(session, user_id, local_status)
        return APPLIED, None

    async def _on_subscription_deleted(
        self, session: AsyncSession, event: SubscriptionDeletedEvent
    ) -> tuple[str, Optional[str]]:
        subscription = event.data.obj
        user_id = await self._store.set_subscription_state(session, subscription.id, CANCELED)
        if user_id is None:
            return UNMATCHED, f"subscription {subscription.id} not found"
        await self._store.set_subscribed_flag(session, user_id, False)
        return APPLIED, None

    async def _on_invoice_paid(
        self, session: AsyncSession, event: InvoicePaidEvent
    ) -> tuple[str, Optional[str]]:
        invoice = event.data.obj
        if not invoice.subscription_id:
            return UNMATCHED, f"invoice {invoice.id} has no subscription"
        row = await self._store.reset_usage_for_paid_invoice(session, invoice.subscription_id)
        if row is None:
            return UNMATCHED, f"subscription {invoice.subscription_id} not found"
        user_id, status = row
        await self._apply_flag(session, user_id, status)
        await self._store.record_payment(
            session,
            PaymentValues(
                user_id=user_id,
                provider_reference=invoice.id,
                payment_status="paid",
                amount=invoice.amount_paid,
                currency=invoice.currency,
                plan_type=invoice.plan_type,
            ),
        )
        return APPLIED, None

    async def _on_invoice_failed(
        self, session: AsyncSession, event: InvoiceFailedEvent
    ) -> tuple[str, Optional[str]]:
        invoice = event.data.obj
        if not invoice.subscription_id:
            return UNMATCHED, f"invoice {invoice.id} has no subscription"
        user_id = await self._store.set_subscription_state(
            session, invoice.subscription_id, PAST_DUE
        )
        if user_id is None:
            return UNMATCHED, f"subscription {invoice.subscription_id} not found"
        await self._store.record_payment(
            session,
            PaymentValues(
                user_id=user_id,
                provider_reference=invoice.id,
                payment_status="failed",
                amount=invoice.amount_due,
                currency=invoice.currency,
                plan_type=invoice.plan_type,
            ),
        )
        return APPLIED, None

    async def _apply_flag(self, session: AsyncSession, user_id: str, local_status: str) -> None:
        flag = subscribed_flag_for(local_status)
        if flag is not None:
            await self._store.set_subscribed_flag(session, user_id, flag)

    async def apply_provider_subscription(self, payload: Mapping[str, Any]) -> str:
        """Mirror a subscription fetched from the provider onto the local row."""
        try:
            subscription = SubscriptionObject.model_validate(payload)
        except ValidationError as exc:
            raise WebhookPayloadError(f"subscription: {exc.error_count()} invalid field(s)") from exc
        async with translate_storage_errors():
            async with self._session_factory() as session:
                async with session.begin():
                    status, detail = await self._sync_subscription(
                        session, subscription, create=False
                    )
        if status == UNMATCHED:
            logger.warning("Provider subscription %s unmatched: %s", subscription.id, detail)
        return status

    # ------------------------------------------------------------------
    # Account-facing reads and commands
    # ------------------------------------------------------------------

    async def _load_account(
        self, session: AsyncSession, account_id: str
    ) -> tuple[User, Sequence[Subscription]]:
        user = await self._store.get_user(session, account_id)
        if user is None:
            raise AccountNotFoundError(account_id)
        rows = await self._store.list_subscriptions(session, account_id)
        return user, rows

    async def get_subscription_snapshot(self, account_id: str) -> SubscriptionSnapshot:
        async with translate_storage_errors():
            async with self._session_factory() as session:
                user, rows = await self._load_account(session, account_id)
        latest_status = rows[0].status if rows else None
        current = _current_row(rows)
        if current is None:
            total = (
                float(user.total_minutes)
                if user.total_minutes is not None
                else float(settings.FREE_TIER_MINUTES)
            )
            used = float(user.used_minutes or 0)
            return SubscriptionSnapshot(
                has_active_subscription=False,
                source="account",
                plan="free",
                status=None,
                minutes_total=total,
                minutes_used=used,
                minutes_left=max(total - used, 0.0),
                latest_status=latest_status,
            )
        total = float(current.subscription_minutes or 0)
        used = float(current.used_minutes or 0)
        return SubscriptionSnapshot(
            has_active_subscription=True,
            source="subscription",
            plan=current.plan,
            status=current.status,
            minutes_total=total,
            minutes_used=used,
            minutes_left=max(total - used, 0.0),
            subscription_id=str(current.id),
            provider_subscription_id=current.provider_subscription_id,
            type=current.type,
            amount=current.amount,
            currency=current.currency,
            current_period_start=current.current_period_start,
            current_period_end=current.current_period_end,
            latest_status=latest_status,
        )

    async def _current_subscription(self, account_id: str) -> Subscription:
        async with translate_storage_errors():
            async with self._session_factory() as session:
                _, rows = await self._load_account(session, account_id)
        current = _current_row(rows)
        if current is None:
            raise BusinessError(ErrorCode.SUBSCRIPTION_NOT_FOUND)
        return current

    async def _mirror_status(
        self, provider_subscription_id: str, status: str, user_id: str
    ) -> None:
        async with translate_storage_errors():
            async with self._session_factory() as session:
                async with session.begin():
                    await self._store.set_subscription_state(
                        session, provider_subscription_id, status
                    )
                    await self._apply_flag(session, user_id, status)

    async def request_cancellation(self, account_id: str) -> SubscriptionSnapshot:
        """Cancel at period end: provider first, then the local mirror."""
        current = await self._current_subscription(account_id)
        if current.status == CANCELING:
            return await self.get_subscription_snapshot(account_id)
        if current.status != ACTIVE or not current.provider_subscription_id:
            raise BusinessError(ErrorCode.SUBSCRIPTION_NOT_CANCELABLE)

        await self._gateway.set_cancel_at_period_end(current.provider_subscription_id, True)
        await self._mirror_status(current.provider_subscription_id, CANCELING, account_id)
        logger.info(
            "Subscription %s set to cancel at period end for user %s",
            current.provider_subscription_id,
            account_id,
        )
        return await self.get_subscription_snapshot(account_id)

    async def request_reactivation(self, account_id: str) -> SubscriptionSnapshot:
        current = await self._current_subscription(account_id)
        if current.status == ACTIVE:
            return await self.get_subscription_snapshot(account_id)
        if current.status != CANCELING or not current.provider_subscription_id:
            raise BusinessError(ErrorCode.SUBSCRIPTION_NOT_REACTIVATABLE)

        await self._gateway.set_cancel_at_period_end(current.provider_subscription_id, False)
        await self._mirror_status(current.provider_subscription_id, ACTIVE, account_id)
        logger.info(
            "Subscription %s reactivated for user %s",
            current.provider_subscription_id,
            account_id,
        )
        return await self.get_subscription_snapshot(account_id)

    # ------------------------------------------------------------------
    # Checkout and payment history
    # ------------------------------------------------------------------

    async def start_checkout(
        self, user: User, price_id: str, plan_type: str, plan: Optional[str] = None
    ) -> dict[str, Any]:
        base_url = (settings.FRONTEND_URL or "http://localhost:5173").rstrip("/")
        session = await self._gateway.create_checkout_session(
            user_id=user.id,
            price_id=price_id,
            plan_type=plan_type,
            plan=plan or settings.DEFAULT_PAID_PLAN,
            customer_email=user.email,
            customer_id=user.stripe_customer_id,
            success_url=f"{base_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/subscription/cancel",
        )
        return {"session_id": session.get("id"), "url": session.get("url")}

    async def list_payments(self, account_id: str, page: int, page_size: int) -> PaymentPage:
        async with translate_storage_errors():
            async with self._session_factory() as session:
                items, total = await self._store.list_payments(
                    session, account_id, page, page_size
                )
        return PaymentPage(items=items, total=total, page=page, page_size=page_size)

    async def list_reconcilable(self) -> list[tuple[str, str]]:
        """(user_id, provider_subscription_id) pairs worth re-syncing from the provider."""
        async with translate_storage_errors():
            async with self._session_factory() as session:
                rows = await self._store.list_reconcilable_subscriptions(
                    session, RECONCILABLE_STATUSES
                )
        return [(str(row.user_id), row.provider_subscription_id) for row in rows]
