from __future__ import annotations

# Import all task modules so Celery can discover them
from worker.tasks import reconcile_subscriptions  # noqa: F401

__all__ = ["reconcile_subscriptions"]
