from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from app.config import settings
from app.core.exceptions import BusinessError, WebhookPayloadError
from app.i18n.codes import ErrorCode
from app.services.transcription.base import TranscriptionProvider, TranscriptResult

logger = logging.getLogger("app.services.transcription.deepgram")


class DeepgramTranscriptionProvider(TranscriptionProvider):
    def __init__(
        self,
        api_key: Optional[str] = None,
        callback_url: Optional[str] = None,
        callback_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key or settings.DEEPGRAM_API_KEY
        self._callback_url = callback_url or settings.TRANSCRIPTION_CALLBACK_URL
        self._callback_token = callback_token or settings.TRANSCRIPTION_CALLBACK_TOKEN
        if not self._api_key:
            raise RuntimeError("DEEPGRAM_API_KEY is not set")
        if not self._callback_url:
            raise RuntimeError("TRANSCRIPTION_CALLBACK_URL is not set")
        self._timeout = timeout
        self._transport = transport

    def _callback(self) -> str:
        url = self._callback_url or ""
        if not self._callback_token:
            return url
        parts = urlsplit(url)
        query = parse_qsl(parts.query) + [("token", self._callback_token)]
        return urlunsplit(parts._replace(query=urlencode(query)))

    def _params(self, language: Optional[str]) -> dict[str, str]:
        params = {
            "model": settings.DEEPGRAM_MODEL,
            "smart_format": "true",
            "callback": self._callback(),
        }
        if language:
            params["language"] = language
        else:
            params["detect_language"] = "true"
        return params

    async def submit(self, audio_url: str, language: Optional[str]) -> str:
        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    settings.DEEPGRAM_BASE_URL,
                    params=self._params(language),
                    headers=headers,
                    json={"url": audio_url},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.error("Deepgram submit failed: %s", exc)
            raise BusinessError(ErrorCode.TRANSCRIPTION_SERVICE_FAILED) from exc

        request_id = data.get("request_id") if isinstance(data, dict) else None
        if not request_id:
            logger.error("Deepgram returned no request_id: %s", data)
            raise BusinessError(ErrorCode.TRANSCRIPTION_SERVICE_FAILED)
        logger.info("Deepgram job submitted: request_id=%s", request_id)
        return str(request_id)

    def parse_callback(self, payload: Mapping[str, Any]) -> TranscriptResult:
        metadata = payload.get("metadata")
        request_id = metadata.get("request_id") if isinstance(metadata, Mapping) else None
        if not request_id:
            raise WebhookPayloadError("metadata.request_id is required")

        duration = metadata.get("duration")
        alternative: Mapping[str, Any] = {}
        detected_language = None
        results = payload.get("results")
        if isinstance(results, Mapping):
            channels = results.get("channels") or []
            if channels and isinstance(channels[0], Mapping):
                detected_language = channels[0].get("detected_language")
                alternatives = channels[0].get("alternatives") or []
                if alternatives and isinstance(alternatives[0], Mapping):
                    alternative = alternatives[0]

        text = alternative.get("transcript") or None
        words = alternative.get("words")
        if isinstance(words, list):
            word_count = len(words)
        else:
            word_count = len(text.split()) if text else 0
        confidence = alternative.get("confidence")
        return TranscriptResult(
            request_id=str(request_id),
            text=text,
            confidence=float(confidence) if confidence is not None else None,
            word_count=word_count,
            duration_seconds=float(duration) if duration is not None else None,
            detected_language=detected_language,
        )
