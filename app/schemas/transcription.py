from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TranscriptionListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source: str
    original_filename: Optional[str] = None
    duration_seconds: Optional[float] = None
    language: Optional[str] = None
    status: str
    created_at: datetime


class TranscriptionDetailResponse(TranscriptionListItem):
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    transcript_text: Optional[str] = None
    confidence: Optional[float] = None
    word_count: Optional[int] = None
    error_message: Optional[str] = None
    updated_at: datetime


class TranscriptionStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
