from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Optional

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import AccountNotFoundError, StorageUnavailableError
from app.services.metering_service import MeteringService
from app.services.quota_ledger import QuotaSnapshot, SubscriptionQuota
from app.services.quota_store import DeductionRow


class _FakeQuotaStore:
    """In-memory quota rows with the same conditional-update semantics as the SQL."""

    def __init__(self, snapshot: Optional[QuotaSnapshot]) -> None:
        self.snapshot = snapshot
        self.before_write: Optional[Callable[["_FakeQuotaStore"], None]] = None
        self.writes = 0

    async def load_snapshot(self, session: Any, account_id: str) -> Optional[QuotaSnapshot]:
        if self.snapshot is None or self.snapshot.account_id != account_id:
            return None
        return self.snapshot

    def _race(self) -> None:
        if self.before_write is not None:
            self.before_write(self)

    async def deduct_from_subscription(
        self, session: Any, subscription_id: str, minutes: float
    ) -> Optional[DeductionRow]:
        self._race()
        self.writes += 1
        assert self.snapshot is not None
        subs = list(self.snapshot.subscriptions)
        for index, sub in enumerate(subs):
            if sub.id != subscription_id:
                continue
            if sub.status not in ("active", "canceling"):
                return None
            if sub.used_minutes + minutes > sub.subscription_minutes:
                return None
            subs[index] = replace(sub, used_minutes=sub.used_minutes + minutes)
            self.snapshot = replace(self.snapshot, subscriptions=tuple(subs))
            return DeductionRow(subs[index].used_minutes, sub.subscription_minutes)
        return None

    async def deduct_from_account(
        self, session: Any, account_id: str, minutes: float
    ) -> Optional[DeductionRow]:
        self._race()
        self.writes += 1
        assert self.snapshot is not None
        quota = (
            self.snapshot.total_minutes
            if self.snapshot.total_minutes is not None
            else self.snapshot.free_tier_minutes
        )
        used = self.snapshot.used_minutes or 0
        if used + minutes > quota:
            return None
        self.snapshot = replace(self.snapshot, used_minutes=used + minutes)
        return DeductionRow(used + minutes, quota)


def _account(total: Optional[float] = None, used: float = 0, subs: tuple = ()) -> QuotaSnapshot:
    return QuotaSnapshot(
        account_id="user-1",
        total_minutes=total,
        used_minutes=used,
        subscriptions=subs,
        free_tier_minutes=30,
    )


def _subscription(used: float = 0, quota: float = 100) -> SubscriptionQuota:
    return SubscriptionQuota(
        id="sub-1", plan="pro", status="active", subscription_minutes=quota, used_minutes=used
    )


@pytest.mark.asyncio
async def test_check_admission_uses_free_tier(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(used=10))
    service = MeteringService(session_factory, store=store)

    result = await service.check_admission("user-1", 600)

    assert result.admissible
    assert result.source == "account"
    assert result.required_minutes == 10
    assert result.remaining_minutes == 20
    assert store.writes == 0


@pytest.mark.asyncio
async def test_check_admission_rejects_over_quota(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(subs=(_subscription(used=95),)))
    service = MeteringService(session_factory, store=store)

    result = await service.check_admission("user-1", 360)

    assert not result.admissible
    assert result.source == "subscription"
    assert result.remaining_minutes == 5
    assert result.required_minutes == 6


@pytest.mark.asyncio
async def test_unknown_account_raises(session_factory: Any) -> None:
    service = MeteringService(session_factory, store=_FakeQuotaStore(None))

    with pytest.raises(AccountNotFoundError):
        await service.check_admission("missing", 60)
    with pytest.raises(AccountNotFoundError):
        await service.commit_deduction("missing", 60)


@pytest.mark.asyncio
async def test_commit_deducts_from_subscription(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(subs=(_subscription(used=10),)))
    service = MeteringService(session_factory, store=store)

    result = await service.commit_deduction("user-1", 1200)

    assert result.committed
    assert result.deducted_minutes == 20
    assert result.remaining_minutes == 70
    assert result.source == "subscription"
    assert store.snapshot.subscriptions[0].used_minutes == 30
    # account usage is untouched while a subscription grants minutes
    assert store.snapshot.used_minutes == 0


@pytest.mark.asyncio
async def test_commit_rejected_when_quota_exhausted(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(used=29))
    service = MeteringService(session_factory, store=store)

    result = await service.commit_deduction("user-1", 120)

    assert not result.committed
    assert result.reason == "quota_exceeded"
    assert result.remaining_minutes == 1
    assert store.writes == 0
    assert store.snapshot.used_minutes == 29


@pytest.mark.asyncio
async def test_zero_duration_commits_without_write(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(used=30))
    service = MeteringService(session_factory, store=store)

    result = await service.commit_deduction("user-1", None)

    assert result.committed
    assert result.deducted_minutes == 0
    assert store.writes == 0


@pytest.mark.asyncio
async def test_lost_race_retries_and_reports_final_state(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(subs=(_subscription(used=80),)))

    def concurrent_commit(fake: _FakeQuotaStore) -> None:
        # another request consumes the rest of the quota before our write lands
        sub = fake.snapshot.subscriptions[0]
        fake.snapshot = replace(
            fake.snapshot, subscriptions=(replace(sub, used_minutes=100),)
        )
        fake.before_write = None

    store.before_write = concurrent_commit
    service = MeteringService(session_factory, store=store)

    result = await service.commit_deduction("user-1", 900)

    assert not result.committed
    assert result.reason == "quota_exceeded"
    assert result.remaining_minutes == 0
    assert store.snapshot.subscriptions[0].used_minutes == 100


@pytest.mark.asyncio
async def test_retry_moves_to_replacement_subscription(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(subs=(_subscription(used=0),)))

    def concurrent_renewal(fake: _FakeQuotaStore) -> None:
        old = fake.snapshot.subscriptions[0]
        renewed = SubscriptionQuota(
            id="sub-2", plan="pro", status="active", subscription_minutes=200, used_minutes=0
        )
        fake.snapshot = replace(
            fake.snapshot, subscriptions=(replace(old, status="canceled"), renewed)
        )
        fake.before_write = None

    store.before_write = concurrent_renewal
    service = MeteringService(session_factory, store=store)

    result = await service.commit_deduction("user-1", 300)

    assert result.committed
    assert result.deducted_minutes == 5
    assert result.remaining_minutes == 195
    assert store.writes == 2
    used = {sub.id: sub.used_minutes for sub in store.snapshot.subscriptions}
    assert used == {"sub-1": 0, "sub-2": 5}


@pytest.mark.asyncio
async def test_transient_storage_failure_is_retryable(session_factory: Any) -> None:
    session_factory.fail_with = OperationalError("SELECT 1", {}, Exception("connection reset"))
    service = MeteringService(session_factory, store=_FakeQuotaStore(_account()))

    with pytest.raises(StorageUnavailableError) as exc_info:
        await service.check_admission("user-1", 60)

    assert exc_info.value.retryable
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_persistent_misses_report_contention(session_factory: Any) -> None:
    store = _FakeQuotaStore(_account(used=0))

    async def always_miss(session: Any, account_id: str, minutes: float) -> None:
        store.writes += 1
        return None

    store.deduct_from_account = always_miss  # type: ignore[method-assign]
    service = MeteringService(session_factory, store=store)

    result = await service.commit_deduction("user-1", 60)

    assert not result.committed
    assert result.reason == "contention"
    assert store.writes == 3
