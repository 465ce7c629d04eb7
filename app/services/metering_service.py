from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import AccountNotFoundError
from app.db import translate_storage_errors
from app.services.quota_ledger import (
    SOURCE_SUBSCRIPTION,
    QuotaDecision,
    QuotaSnapshot,
    evaluate,
    minutes_from_seconds,
)
from app.services.quota_store import DeductionRow, QuotaStore

logger = logging.getLogger(__name__)

MAX_COMMIT_ATTEMPTS = 3


@dataclass(frozen=True)
class AdmissionResult:
    admissible: bool
    remaining_minutes: float
    required_minutes: float
    source: str


@dataclass(frozen=True)
class DeductionResult:
    committed: bool
    deducted_minutes: float
    remaining_minutes: float
    source: str
    reason: Optional[str] = None  # quota_exceeded | contention


class MeteringService:
    """Check-then-commit metering of transcription minutes.

    ``check_admission`` is a read-only pre-check. ``commit_deduction``
    re-evaluates against fresh state and persists with a conditional UPDATE,
    so two concurrent commits can never push usage past the quota.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: Optional[QuotaStore] = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store or QuotaStore()

    async def _load(self, session: AsyncSession, account_id: str) -> QuotaSnapshot:
        snapshot = await self._store.load_snapshot(session, account_id)
        if snapshot is None:
            raise AccountNotFoundError(account_id)
        return snapshot

    async def check_admission(
        self, account_id: str, duration_seconds: Optional[float]
    ) -> AdmissionResult:
        minutes = minutes_from_seconds(duration_seconds)
        async with translate_storage_errors():
            async with self._session_factory() as session:
                snapshot = await self._load(session, account_id)
        decision = evaluate(snapshot, minutes)
        return AdmissionResult(
            admissible=decision.admissible,
            remaining_minutes=decision.remaining_minutes,
            required_minutes=decision.required_minutes,
            source=decision.source,
        )

    async def commit_deduction(
        self, account_id: str, duration_seconds: Optional[float]
    ) -> DeductionResult:
        minutes = minutes_from_seconds(duration_seconds)
        async with translate_storage_errors():
            return await self._commit(account_id, minutes)

    async def _commit(self, account_id: str, minutes: float) -> DeductionResult:
        decision: Optional[QuotaDecision] = None
        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            async with self._session_factory() as session:
                async with session.begin():
                    snapshot = await self._load(session, account_id)
                    decision = evaluate(snapshot, minutes)
                    if not decision.admissible:
                        return _rejected(decision)
                    if minutes == 0:
                        return DeductionResult(
                            committed=True,
                            deducted_minutes=0.0,
                            remaining_minutes=decision.remaining_minutes,
                            source=decision.source,
                        )
                    row = await self._apply(session, decision, minutes)
            if row is not None:
                logger.info(
                    "Deducted %.4f minutes from %s %s (used=%.4f quota=%.4f)",
                    minutes,
                    decision.source,
                    decision.record_id,
                    row.used_minutes,
                    row.quota_minutes,
                )
                return DeductionResult(
                    committed=True,
                    deducted_minutes=minutes,
                    remaining_minutes=max(row.quota_minutes - row.used_minutes, 0.0),
                    source=decision.source,
                )
            logger.warning(
                "Conditional deduction missed for account %s (attempt %s/%s)",
                account_id,
                attempt,
                MAX_COMMIT_ATTEMPTS,
            )

        # Every attempt lost its race; report against the latest state.
        async with self._session_factory() as session:
            snapshot = await self._load(session, account_id)
        decision = evaluate(snapshot, minutes)
        if decision.admissible:
            return DeductionResult(
                committed=False,
                deducted_minutes=0.0,
                remaining_minutes=decision.remaining_minutes,
                source=decision.source,
                reason="contention",
            )
        return _rejected(decision)

    async def _apply(
        self, session: AsyncSession, decision: QuotaDecision, minutes: float
    ) -> Optional[DeductionRow]:
        if decision.source == SOURCE_SUBSCRIPTION:
            return await self._store.deduct_from_subscription(
                session, decision.record_id, minutes
            )
        return await self._store.deduct_from_account(session, decision.record_id, minutes)


def _rejected(decision: QuotaDecision) -> DeductionResult:
    logger.warning(
        "Deduction rejected: need %.4f minutes, %.4f left on %s %s",
        decision.required_minutes,
        decision.remaining_minutes,
        decision.source,
        decision.record_id,
    )
    return DeductionResult(
        committed=False,
        deducted_minutes=0.0,
        remaining_minutes=decision.remaining_minutes,
        source=decision.source,
        reason="quota_exceeded",
    )
