from __future__ import annotations

from app.services.transcription.base import TranscriptionProvider
from app.services.transcription.deepgram import DeepgramTranscriptionProvider


def get_transcription_provider() -> TranscriptionProvider:
    return DeepgramTranscriptionProvider()
