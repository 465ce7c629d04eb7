from __future__ import annotations

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_billing_state_machine, get_ingest_service
from app.config import settings
from app.core.exceptions import WebhookPayloadError, WebhookSignatureError
from app.core.response import success
from app.services.billing.state_machine import BillingStateMachine
from app.services.ingest_service import IngestService
from app.services.messaging.twilio import is_valid_request_signature

logger = logging.getLogger("app.api.webhooks")

router = APIRouter(prefix="/webhooks")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    billing: BillingStateMachine = Depends(get_billing_state_machine),
) -> JSONResponse:
    """Signed payment-provider events.

    400 on a bad signature or payload (the provider should not retry), 503 on
    transient storage failures (the provider retries), 200 otherwise,
    including duplicates and events that match nothing locally.
    """
    payload = await request.body()
    outcome = await billing.handle_webhook(payload, stripe_signature)
    return success(data={"received": True, "outcome": outcome.status})


@router.post("/whatsapp")
async def whatsapp_webhook(
    request: Request,
    twilio_signature: Optional[str] = Header(default=None, alias="X-Twilio-Signature"),
    ingest: IngestService = Depends(get_ingest_service),
) -> JSONResponse:
    """Inbound Twilio message; the form must carry a valid request signature."""
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}
    url = settings.TWILIO_WEBHOOK_URL or str(request.url)
    if not is_valid_request_signature(url, params, twilio_signature, settings.TWILIO_AUTH_TOKEN):
        logger.warning("Rejected WhatsApp webhook with a bad signature")
        raise WebhookSignatureError()

    sender = params.get("From")
    if not sender:
        raise WebhookPayloadError("From is required")
    outcome = await ingest.accept_whatsapp_message(
        sender, params.get("MediaUrl0"), params.get("MediaContentType0")
    )
    logger.info("WhatsApp message from %s handled: %s", sender, outcome.status)
    return success(data={"status": outcome.status, "transcription_id": outcome.transcription_id})


@router.post("/transcription")
async def transcription_callback(
    request: Request,
    token: Optional[str] = Query(default=None),
    ingest: IngestService = Depends(get_ingest_service),
) -> JSONResponse:
    expected = settings.TRANSCRIPTION_CALLBACK_TOKEN
    if not expected or not token or not hmac.compare_digest(
        token.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Rejected transcription callback with a bad token")
        raise WebhookSignatureError()
    try:
        payload = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError("body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadError("callback must be a JSON object")
    outcome = await ingest.complete_transcription(payload)
    return success(data={"status": outcome.status, "transcription_id": outcome.transcription_id})
