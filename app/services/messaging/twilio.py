from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional
from urllib.parse import urlsplit

import httpx

from app.config import settings
from app.core.exceptions import BusinessError
from app.i18n.codes import ErrorCode
from app.services.messaging.base import MessagingService

logger = logging.getLogger("app.services.messaging.twilio")

_API_BASE = "https://api.twilio.com/2010-04-01"
WHATSAPP_PREFIX = "whatsapp:"
MEDIA_HOSTS = frozenset({"api.twilio.com"})


def normalize_whatsapp_number(value: str) -> str:
    """``whatsapp:+15551234567`` -> ``+15551234567``"""
    number = value.strip()
    if number.startswith(WHATSAPP_PREFIX):
        number = number[len(WHATSAPP_PREFIX):]
    return number.strip()


def compute_request_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """``X-Twilio-Signature`` for a form POST: HMAC-SHA1 over the full URL
    followed by every parameter name and value sorted by name, base64 encoded.
    """
    signed = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), signed.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def is_valid_request_signature(
    url: str,
    params: Mapping[str, str],
    signature: Optional[str],
    auth_token: Optional[str],
) -> bool:
    if not signature or not auth_token:
        return False
    expected = compute_request_signature(url, params, auth_token)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def is_twilio_media_url(media_url: str) -> bool:
    parts = urlsplit(media_url)
    return parts.scheme == "https" and (parts.hostname or "").lower() in MEDIA_HOSTS


class TwilioWhatsAppService(MessagingService):
    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self._auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self._from_number = from_number or settings.TWILIO_WHATSAPP_NUMBER
        if not self._account_sid or not self._auth_token or not self._from_number:
            raise RuntimeError("Twilio settings are not set")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            auth=(self._account_sid or "", self._auth_token or ""),
            transport=self._transport,
            follow_redirects=True,
        )

    async def send_message(self, to: str, body: str) -> None:
        url = f"{_API_BASE}/Accounts/{self._account_sid}/Messages.json"
        data = {
            "From": f"{WHATSAPP_PREFIX}{normalize_whatsapp_number(self._from_number or '')}",
            "To": f"{WHATSAPP_PREFIX}{normalize_whatsapp_number(to)}",
            "Body": body,
        }
        try:
            async with self._client() as client:
                response = await client.post(url, data=data)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Twilio send to %s failed: %s", to, exc)
            raise BusinessError(ErrorCode.MESSAGING_SERVICE_FAILED) from exc

    async def download_media(self, media_url: str) -> tuple[bytes, str]:
        # account credentials only ever go to Twilio
        if not is_twilio_media_url(media_url):
            logger.warning("Refusing media download from %s", urlsplit(media_url).hostname)
            raise BusinessError(ErrorCode.FILE_PROCESSING_ERROR)
        try:
            async with self._client() as client:
                response = await client.get(media_url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Twilio media download failed: %s", exc)
            raise BusinessError(ErrorCode.FILE_PROCESSING_ERROR) from exc
        content_type = response.headers.get("Content-Type", "application/octet-stream")
        return response.content, content_type.split(";")[0].strip()
