from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class UploadResponse(BaseModel):
    transcription_id: str
    status: str
    request_id: Optional[str] = None
    duration_seconds: float
    required_minutes: float
    remaining_minutes: Optional[float] = None
