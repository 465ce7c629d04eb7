"""Subscription reconciliation Celery task.

Webhooks can be lost or arrive out of order. This sweep re-reads every
locally live subscription from Stripe and applies it through the billing
state machine, the same way a ``customer.subscription.updated`` event would.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from app.core.exceptions import BusinessError
from app.db import create_database
from app.services.billing.state_machine import UNMATCHED, BillingStateMachine

logger = logging.getLogger(__name__)


async def reconcile_all(billing: BillingStateMachine) -> Dict[str, Any]:
    pairs = await billing.list_reconcilable()
    gateway = billing.gateway
    synced = 0
    unmatched = 0
    failed = 0
    for user_id, provider_subscription_id in pairs:
        try:
            payload = await gateway.retrieve_subscription(provider_subscription_id)
            status = await billing.apply_provider_subscription(payload)
        except BusinessError as exc:
            failed += 1
            logger.warning(
                "Reconcile failed for subscription %s (user %s): %s",
                provider_subscription_id,
                user_id,
                exc.code.name,
                extra={"user_id": user_id},
            )
            continue
        if status == UNMATCHED:
            unmatched += 1
        else:
            synced += 1
    return {"checked": len(pairs), "synced": synced, "unmatched": unmatched, "failed": failed}


@shared_task(name="worker.tasks.reconcile_subscriptions.reconcile_subscriptions")
def reconcile_subscriptions() -> Dict[str, Any]:
    """Re-sync active, past_due and canceling subscriptions from Stripe.

    Returns:
        Counts of checked, synced, unmatched and failed subscriptions
    """

    async def _run() -> Dict[str, Any]:
        database = create_database()
        try:
            return await reconcile_all(BillingStateMachine(database.session_factory))
        finally:
            await database.dispose()

    try:
        summary = asyncio.run(_run())
        logger.info("Subscription reconcile completed: %s", summary)
        return {"status": "success", **summary}
    except Exception as e:
        logger.exception("Subscription reconcile failed: %s", str(e))
        return {"status": "error", "error": str(e)}
