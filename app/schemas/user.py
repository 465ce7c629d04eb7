from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: Optional[str] = None
    whatsapp_number: Optional[str] = None
    language: str
    is_subscribed: bool
    created_at: datetime


class UserProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    # null clears the number; "whatsapp:" prefixes and separators are accepted
    whatsapp_number: Optional[str] = Field(default=None, max_length=40)
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)
