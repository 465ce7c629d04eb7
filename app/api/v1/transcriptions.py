from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_db
from app.core.response import success
from app.models.user import User
from app.schemas.common import PageResponse
from app.schemas.transcription import (
    TranscriptionDetailResponse,
    TranscriptionListItem,
    TranscriptionStatsResponse,
)
from app.services.transcription_service import TRANSCRIPTION_STATUSES, TranscriptionService

router = APIRouter(prefix="/transcriptions")


@router.get("")
async def list_transcriptions(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
) -> JSONResponse:
    if status not in TRANSCRIPTION_STATUSES:
        status = None
    items, total = await TranscriptionService.list_transcriptions(db, user, page, page_size, status)
    response = PageResponse[TranscriptionListItem](
        items=[TranscriptionListItem.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )
    return success(data=jsonable_encoder(response))


@router.get("/stats")
async def get_transcription_stats(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> JSONResponse:
    stats = await TranscriptionService.get_stats(db, user)
    return success(data=jsonable_encoder(TranscriptionStatsResponse(**stats)))


@router.get("/{transcription_id}")
async def get_transcription(
    transcription_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> JSONResponse:
    transcription = await TranscriptionService.get_transcription(db, user, transcription_id)
    response = TranscriptionDetailResponse.model_validate(transcription)
    return success(data=jsonable_encoder(response))


@router.delete("/{transcription_id}")
async def delete_transcription(
    transcription_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> JSONResponse:
    await TranscriptionService.delete_transcription(db, user, transcription_id)
    return success(data={"id": transcription_id})
