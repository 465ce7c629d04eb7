"""Minute quota arithmetic.

Pure functions over immutable snapshots:
1. pick the subscription that currently grants minutes
2. decide whether a request of N minutes fits in the remaining quota

No I/O happens here; the metering service loads snapshots and persists the
outcome.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

DEFAULT_FREE_TIER_MINUTES = 30.0

ACTIVE_LIKE_STATUSES = frozenset({"active", "canceling"})

SOURCE_SUBSCRIPTION = "subscription"
SOURCE_ACCOUNT = "account"


@dataclass(frozen=True)
class SubscriptionQuota:
    id: str
    plan: str
    status: str
    subscription_minutes: float
    used_minutes: float
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class QuotaSnapshot:
    """Everything needed to decide admission for one account."""

    account_id: str
    total_minutes: Optional[float]
    used_minutes: Optional[float]
    subscriptions: tuple[SubscriptionQuota, ...] = field(default_factory=tuple)
    free_tier_minutes: float = DEFAULT_FREE_TIER_MINUTES


@dataclass(frozen=True)
class QuotaDecision:
    admissible: bool
    source: str  # subscription | account
    record_id: str
    quota_minutes: float
    used_minutes: float
    required_minutes: float
    remaining_minutes: float
    new_used_minutes: Optional[float] = None

    @property
    def remaining_after(self) -> float:
        if self.new_used_minutes is None:
            return self.remaining_minutes
        return max(self.quota_minutes - self.new_used_minutes, 0.0)


def minutes_from_seconds(duration_seconds: Optional[float]) -> float:
    if duration_seconds is None:
        return 0.0
    value = float(duration_seconds)
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value / 60


def _precedence_key(subscription: SubscriptionQuota) -> tuple[int, float, str]:
    created = subscription.created_at.timestamp() if subscription.created_at else 0.0
    return (1 if subscription.plan != "free" else 0, created, subscription.id)


def select_current_subscription(
    subscriptions: Iterable[SubscriptionQuota],
) -> Optional[SubscriptionQuota]:
    """Return the subscription that grants minutes right now.

    Only active-like rows qualify. A paid plan beats the free plan, then the
    most recently created row wins, then the highest id.
    """
    candidates = [item for item in subscriptions if item.status in ACTIVE_LIKE_STATUSES]
    if not candidates:
        return None
    return max(candidates, key=_precedence_key)


def evaluate(snapshot: QuotaSnapshot, requested_minutes: float) -> QuotaDecision:
    """Decide whether ``requested_minutes`` fits in the snapshot's quota.

    Args:
        snapshot: account and subscription state loaded in one read
        requested_minutes: minutes the caller wants to consume

    Returns:
        QuotaDecision, with ``new_used_minutes`` set only when admissible

    Raises:
        ValueError: when ``requested_minutes`` is negative or NaN
    """
    if math.isnan(requested_minutes) or requested_minutes < 0:
        raise ValueError("requested_minutes must be a non-negative number")

    current = select_current_subscription(snapshot.subscriptions)
    if current is not None:
        source = SOURCE_SUBSCRIPTION
        record_id = current.id
        quota = float(current.subscription_minutes or 0)
        used = float(current.used_minutes or 0)
    else:
        source = SOURCE_ACCOUNT
        record_id = snapshot.account_id
        quota = (
            float(snapshot.total_minutes)
            if snapshot.total_minutes is not None
            else float(snapshot.free_tier_minutes)
        )
        used = float(snapshot.used_minutes or 0)

    new_used = used + requested_minutes
    admissible = new_used <= quota
    return QuotaDecision(
        admissible=admissible,
        source=source,
        record_id=record_id,
        quota_minutes=quota,
        used_minutes=used,
        required_minutes=requested_minutes,
        remaining_minutes=max(quota - used, 0.0),
        new_used_minutes=new_used if admissible else None,
    )
