from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.api.deps import get_current_user, get_ingest_service
from app.config import settings
from app.core.exceptions import BusinessError
from app.core.response import success
from app.i18n.codes import ErrorCode
from app.models.user import User
from app.schemas.upload import UploadResponse
from app.services.ingest_service import IngestService, file_too_large

router = APIRouter(prefix="/upload")

_CHUNK_SIZE = 1024 * 1024


async def read_upload(file: UploadFile, max_size: Optional[int]) -> bytes:
    """Read the upload, stopping as soon as it exceeds ``max_size`` bytes."""
    if max_size and file.size is not None and file.size > max_size:
        raise file_too_large(max_size)
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if max_size and total > max_size:
            raise file_too_large(max_size)
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("")
async def upload_audio(
    file: UploadFile = File(...),
    language: Optional[str] = Form(default=None),
    user: User = Depends(get_current_user),
    ingest: IngestService = Depends(get_ingest_service),
) -> JSONResponse:
    if not file.filename:
        raise BusinessError(ErrorCode.MISSING_REQUIRED_PARAMETER, detail="file")
    content = await read_upload(file, settings.UPLOAD_MAX_SIZE_BYTES)
    job = await ingest.accept_upload(
        user,
        filename=file.filename,
        content=content,
        content_type=file.content_type,
        language=language,
    )
    response = UploadResponse(
        transcription_id=job.transcription_id,
        status=job.status,
        request_id=job.request_id,
        duration_seconds=job.duration_seconds,
        required_minutes=job.required_minutes,
        remaining_minutes=job.remaining_minutes,
    )
    return success(data=jsonable_encoder(response))
