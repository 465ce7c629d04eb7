from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BusinessError
from app.i18n.codes import ErrorCode
from app.models.transcription import Transcription
from app.models.user import User
from app.utils.ids import is_uuid

logger = logging.getLogger(__name__)

TRANSCRIPTION_STATUSES = ("pending", "processing", "completed", "failed")


class TranscriptionService:
    @staticmethod
    async def list_transcriptions(
        db: AsyncSession,
        user: User,
        page: int,
        page_size: int,
        status: Optional[str] = None,
    ) -> tuple[Sequence[Transcription], int]:
        filters = [Transcription.user_id == user.id, Transcription.deleted_at.is_(None)]
        if status:
            filters.append(Transcription.status == status)
        total_result = await db.execute(
            select(func.count()).select_from(Transcription).where(*filters)
        )
        total = int(total_result.scalar_one() or 0)
        result = await db.execute(
            select(Transcription)
            .where(*filters)
            .order_by(Transcription.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return result.scalars().all(), total

    @staticmethod
    async def get_transcription(db: AsyncSession, user: User, transcription_id: str) -> Transcription:
        if not is_uuid(transcription_id):
            raise BusinessError(ErrorCode.TRANSCRIPTION_NOT_FOUND)
        result = await db.execute(
            select(Transcription).where(
                Transcription.id == transcription_id,
                Transcription.user_id == user.id,
                Transcription.deleted_at.is_(None),
            )
        )
        transcription = result.scalar_one_or_none()
        if transcription is None:
            raise BusinessError(ErrorCode.TRANSCRIPTION_NOT_FOUND)
        return transcription

    @staticmethod
    async def get_stats(db: AsyncSession, user: User) -> dict[str, int]:
        """Job counts per status plus ``total``; every known status is present."""
        result = await db.execute(
            select(Transcription.status, func.count())
            .where(Transcription.user_id == user.id, Transcription.deleted_at.is_(None))
            .group_by(Transcription.status)
        )
        stats = {status: 0 for status in TRANSCRIPTION_STATUSES}
        for status, count in result.all():
            stats[status] = int(count)
        stats["total"] = sum(stats.values())
        return stats

    @staticmethod
    async def delete_transcription(db: AsyncSession, user: User, transcription_id: str) -> None:
        transcription = await TranscriptionService.get_transcription(db, user, transcription_id)
        transcription.deleted_at = datetime.now(timezone.utc)
        await db.commit()
        logger.info("Transcription %s deleted by user %s", transcription.id, user.id)
