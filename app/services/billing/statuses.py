"""Payment-provider subscription status to local status mapping."""

from __future__ import annotations

from typing import Optional

ACTIVE = "active"
CANCELING = "canceling"
PAST_DUE = "past_due"
CANCELED = "canceled"
UNPAID = "unpaid"
INACTIVE = "inactive"

LOCAL_STATUSES = frozenset({ACTIVE, CANCELING, PAST_DUE, CANCELED, UNPAID, INACTIVE})

_PROVIDER_TO_LOCAL: dict[str, str] = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": PAST_DUE,
    "canceled": CANCELED,
    "incomplete_expired": CANCELED,
    "unpaid": UNPAID,
    "incomplete": INACTIVE,
    "paused": INACTIVE,
}


def map_provider_status(provider_status: Optional[str], cancel_at_period_end: bool = False) -> str:
    local = _PROVIDER_TO_LOCAL.get(provider_status or "", INACTIVE)
    if local == ACTIVE and cancel_at_period_end:
        return CANCELING
    return local


def subscribed_flag_for(local_status: str) -> Optional[bool]:
    """Account ``is_subscribed`` value implied by a status; None leaves it untouched."""
    if local_status == ACTIVE:
        return True
    if local_status in (CANCELED, UNPAID):
        return False
    return None
