from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import Insert, insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing_event import BillingEventRecord
from app.models.payment_record import PaymentRecord
from app.models.subscription import Subscription
from app.models.user import User
from app.services.billing.statuses import ACTIVE, PAST_DUE


@dataclass(frozen=True)
class SubscriptionValues:
    user_id: str
    provider_subscription_id: str
    plan: str
    type: Optional[str]
    status: str
    subscription_minutes: float
    amount: Optional[int] = None
    currency: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentValues:
    user_id: str
    provider_reference: str
    payment_status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    plan_type: Optional[str] = None
    payment_method: Optional[str] = "card"


def build_subscription_upsert(values: SubscriptionValues) -> Insert:
    """Insert keyed on the provider subscription id; a redelivery overwrites
    plan, status and period bounds with absolute values."""
    stmt = insert(Subscription).values(
        user_id=values.user_id,
        provider_subscription_id=values.provider_subscription_id,
        plan=values.plan,
        type=values.type,
        status=values.status,
        subscription_minutes=values.subscription_minutes,
        used_minutes=0,
        amount=values.amount,
        currency=values.currency,
        current_period_start=values.current_period_start,
        current_period_end=values.current_period_end,
    )
    # used_minutes is only written on insert
    return stmt.on_conflict_do_update(
        constraint="uk_subscriptions_provider_id",
        set_={
            "plan": stmt.excluded.plan,
            "type": stmt.excluded.type,
            "status": stmt.excluded.status,
            "subscription_minutes": stmt.excluded.subscription_minutes,
            "amount": func.coalesce(stmt.excluded.amount, Subscription.amount),
            "currency": func.coalesce(stmt.excluded.currency, Subscription.currency),
            "current_period_start": stmt.excluded.current_period_start,
            "current_period_end": stmt.excluded.current_period_end,
            "updated_at": func.now(),
        },
    )


class BillingStore:
    """SQL for the billing state machine.

    Every write sets absolute values, so replaying the same provider event
    leaves the same row state behind.
    """

    async def get_user(self, session: AsyncSession, user_id: str) -> Optional[User]:
        result = await session.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def mark_subscribed(
        self, session: AsyncSession, user_id: str, customer_id: Optional[str]
    ) -> bool:
        values: dict[str, object] = {"is_subscribed": True, "updated_at": func.now()}
        if customer_id:
            values["stripe_customer_id"] = func.coalesce(User.stripe_customer_id, customer_id)
        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.deleted_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def set_subscribed_flag(self, session: AsyncSession, user_id: str, flag: bool) -> None:
        await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(is_subscribed=flag, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )

    async def get_subscription_by_provider_id(
        self, session: AsyncSession, provider_subscription_id: str
    ) -> Optional[Subscription]:
        result = await session.execute(
            select(Subscription).where(
                Subscription.provider_subscription_id == provider_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def list_subscriptions(
        self, session: AsyncSession, user_id: str, limit: int = 20
    ) -> Sequence[Subscription]:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_reconcilable_subscriptions(
        self, session: AsyncSession, statuses: Sequence[str]
    ) -> Sequence[Subscription]:
        result = await session.execute(
            select(Subscription)
            .where(
                Subscription.status.in_(list(statuses)),
                Subscription.provider_subscription_id.is_not(None),
            )
            .order_by(Subscription.updated_at.asc())
        )
        return result.scalars().all()

    async def upsert_subscription(self, session: AsyncSession, values: SubscriptionValues) -> None:
        await session.execute(build_subscription_upsert(values))

    async def set_subscription_state(
        self,
        session: AsyncSession,
        provider_subscription_id: str,
        status: str,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> Optional[str]:
        """Set status (and period bounds when given); returns the owning user id."""
        values: dict[str, object] = {"status": status, "updated_at": func.now()}
        if current_period_start is not None:
            values["current_period_start"] = current_period_start
        if current_period_end is not None:
            values["current_period_end"] = current_period_end
        result = await session.execute(
            update(Subscription)
            .where(Subscription.provider_subscription_id == provider_subscription_id)
            .values(**values)
            .returning(Subscription.user_id)
            .execution_options(synchronize_session=False)
        )
        user_id = result.scalar_one_or_none()
        return str(user_id) if user_id is not None else None

    async def reset_usage_for_paid_invoice(
        self, session: AsyncSession, provider_subscription_id: str
    ) -> Optional[tuple[str, str]]:
        """Start a fresh billing cycle; returns (user_id, status) of the row."""
        result = await session.execute(
            update(Subscription)
            .where(Subscription.provider_subscription_id == provider_subscription_id)
            .values(
                used_minutes=0,
                status=case(
                    (Subscription.status == PAST_DUE, ACTIVE),
                    else_=Subscription.status,
                ),
                updated_at=func.now(),
            )
            .returning(Subscription.user_id, Subscription.status)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return str(row[0]), row[1]

    async def record_payment(self, session: AsyncSession, values: PaymentValues) -> bool:
        """Insert a payment row unless one exists for the same provider reference."""
        stmt = (
            insert(PaymentRecord)
            .values(
                user_id=values.user_id,
                provider_reference=values.provider_reference,
                amount=values.amount,
                currency=values.currency,
                payment_status=values.payment_status,
                plan_type=values.plan_type,
                payment_method=values.payment_method,
            )
            .on_conflict_do_nothing(constraint="uk_payment_history_reference")
            .returning(PaymentRecord.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_payments(
        self, session: AsyncSession, user_id: str, page: int, page_size: int
    ) -> tuple[Sequence[PaymentRecord], int]:
        total_result = await session.execute(
            select(func.count()).select_from(PaymentRecord).where(PaymentRecord.user_id == user_id)
        )
        total = int(total_result.scalar_one() or 0)
        result = await session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.user_id == user_id)
            .order_by(PaymentRecord.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return result.scalars().all(), total

    async def mark_event_processed(
        self, session: AsyncSession, event_id: str, event_type: str
    ) -> bool:
        """Returns False when the event id was already recorded."""
        stmt = (
            insert(BillingEventRecord)
            .values(event_id=event_id, event_type=event_type)
            .on_conflict_do_nothing(constraint="uk_billing_webhook_events_event_id")
            .returning(BillingEventRecord.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
