from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class TranscriptResult:
    request_id: str
    text: Optional[str]
    confidence: Optional[float]
    word_count: int
    duration_seconds: Optional[float] = None
    detected_language: Optional[str] = None


class TranscriptionProvider(ABC):
    """Asynchronous speech-to-text: submit now, receive the result on a callback."""

    @abstractmethod
    async def submit(self, audio_url: str, language: Optional[str]) -> str:
        """Start a job for ``audio_url`` and return the provider request id."""
        raise NotImplementedError

    @abstractmethod
    def parse_callback(self, payload: Mapping[str, Any]) -> TranscriptResult:
        raise NotImplementedError
