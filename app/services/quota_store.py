from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Update

from app.config import settings
from app.models.subscription import Subscription
from app.models.user import User
from app.services.quota_ledger import ACTIVE_LIKE_STATUSES, QuotaSnapshot, SubscriptionQuota


@dataclass(frozen=True)
class DeductionRow:
    used_minutes: float
    quota_minutes: float


def build_subscription_deduction(subscription_id: str, minutes: float) -> Update:
    """Add ``minutes`` to a subscription only if it still fits and the row is active-like."""
    new_used = Subscription.used_minutes + minutes
    return (
        update(Subscription)
        .where(
            and_(
                Subscription.id == subscription_id,
                Subscription.status.in_(sorted(ACTIVE_LIKE_STATUSES)),
                new_used <= Subscription.subscription_minutes,
            )
        )
        .values(used_minutes=new_used, updated_at=func.now())
        .returning(Subscription.used_minutes, Subscription.subscription_minutes)
        .execution_options(synchronize_session=False)
    )


def build_account_deduction(
    account_id: str, minutes: float, free_tier_minutes: float
) -> Update:
    """Add ``minutes`` to the free tier only while no subscription grants minutes."""
    quota = func.coalesce(User.total_minutes, free_tier_minutes)
    new_used = User.used_minutes + minutes
    has_current_subscription = exists().where(
        and_(
            Subscription.user_id == User.id,
            Subscription.status.in_(sorted(ACTIVE_LIKE_STATUSES)),
        )
    )
    return (
        update(User)
        .where(
            and_(
                User.id == account_id,
                User.deleted_at.is_(None),
                new_used <= quota,
                ~has_current_subscription,
            )
        )
        .values(used_minutes=new_used, updated_at=func.now())
        .returning(User.used_minutes, quota)
        .execution_options(synchronize_session=False)
    )


class QuotaStore:
    """SQL for the metering path: one snapshot read and two conditional writes."""

    def __init__(self, free_tier_minutes: Optional[float] = None) -> None:
        self.free_tier_minutes = (
            float(free_tier_minutes)
            if free_tier_minutes is not None
            else float(settings.FREE_TIER_MINUTES)
        )

    async def load_snapshot(
        self, session: AsyncSession, account_id: str
    ) -> Optional[QuotaSnapshot]:
        user_result = await session.execute(
            select(User.id, User.total_minutes, User.used_minutes).where(
                User.id == account_id, User.deleted_at.is_(None)
            )
        )
        user_row = user_result.one_or_none()
        if user_row is None:
            return None

        sub_result = await session.execute(
            select(
                Subscription.id,
                Subscription.plan,
                Subscription.status,
                Subscription.subscription_minutes,
                Subscription.used_minutes,
                Subscription.created_at,
            ).where(
                Subscription.user_id == account_id,
                Subscription.status.in_(sorted(ACTIVE_LIKE_STATUSES)),
            )
        )
        subscriptions = tuple(
            SubscriptionQuota(
                id=str(row.id),
                plan=row.plan,
                status=row.status,
                subscription_minutes=float(row.subscription_minutes or 0),
                used_minutes=float(row.used_minutes or 0),
                created_at=row.created_at,
            )
            for row in sub_result.all()
        )
        return QuotaSnapshot(
            account_id=str(user_row.id),
            total_minutes=user_row.total_minutes,
            used_minutes=user_row.used_minutes,
            subscriptions=subscriptions,
            free_tier_minutes=self.free_tier_minutes,
        )

    async def deduct_from_subscription(
        self, session: AsyncSession, subscription_id: str, minutes: float
    ) -> Optional[DeductionRow]:
        result = await session.execute(build_subscription_deduction(subscription_id, minutes))
        row = result.one_or_none()
        if row is None:
            return None
        return DeductionRow(used_minutes=float(row[0]), quota_minutes=float(row[1]))

    async def deduct_from_account(
        self, session: AsyncSession, account_id: str, minutes: float
    ) -> Optional[DeductionRow]:
        result = await session.execute(
            build_account_deduction(account_id, minutes, self.free_tier_minutes)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return DeductionRow(used_minutes=float(row[0]), quota_minutes=float(row[1]))
