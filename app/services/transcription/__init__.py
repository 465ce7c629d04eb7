from __future__ import annotations

from app.services.transcription.base import TranscriptionProvider, TranscriptResult
from app.services.transcription.deepgram import DeepgramTranscriptionProvider
from app.services.transcription.factory import get_transcription_provider

__all__ = [
    "TranscriptionProvider",
    "TranscriptResult",
    "DeepgramTranscriptionProvider",
    "get_transcription_provider",
]
