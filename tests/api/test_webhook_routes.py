from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Optional

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app.api.deps import get_billing_state_machine, get_ingest_service
from app.config import settings
from app.main import create_app
from app.services.billing.gateway import StripeGateway
from app.services.billing.state_machine import BillingStateMachine
from app.services.ingest_service import CallbackOutcome, WhatsAppOutcome
from app.services.messaging.twilio import compute_request_signature

WEBHOOK_SECRET = "whsec_test_secret"
TWILIO_TOKEN = "twilio-auth-token"
TWILIO_URL = "https://api.example.com/webhooks/whatsapp"
CALLBACK_TOKEN = "callback-secret"


class _EventLedgerStore:
    """Only what a deletion event for an unknown subscription touches."""

    def __init__(self) -> None:
        self.events: set[str] = set()
        self.fail: Optional[Exception] = None

    async def mark_event_processed(self, session: Any, event_id: str, event_type: str) -> bool:
        if self.fail is not None:
            raise self.fail
        if event_id in self.events:
            return False
        self.events.add(event_id)
        return True

    async def set_subscription_state(self, session: Any, *args: Any, **kwargs: Any) -> None:
        return None


class _FakeIngest:
    def __init__(self) -> None:
        self.whatsapp_calls: list[tuple[str, Optional[str], Optional[str]]] = []
        self.callbacks: list[dict[str, Any]] = []

    async def accept_whatsapp_message(
        self, sender: str, media_url: Optional[str], media_content_type: Optional[str] = None
    ) -> WhatsAppOutcome:
        self.whatsapp_calls.append((sender, media_url, media_content_type))
        return WhatsAppOutcome("accepted", "received", "job-1")

    async def complete_transcription(self, payload: dict[str, Any]) -> CallbackOutcome:
        self.callbacks.append(payload)
        return CallbackOutcome("completed", "job-1")


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _deleted_event(event_id: str) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_missing", "status": "canceled"}},
        }
    ).encode()


@pytest.fixture
def store() -> _EventLedgerStore:
    return _EventLedgerStore()


@pytest.fixture
def ingest() -> _FakeIngest:
    return _FakeIngest()


@pytest.fixture
def client(session_factory: Any, store: _EventLedgerStore, ingest: _FakeIngest) -> httpx.AsyncClient:
    app = create_app(database=object())  # type: ignore[arg-type]
    billing = BillingStateMachine(
        session_factory,
        gateway=StripeGateway(api_key="sk_test", webhook_secret=WEBHOOK_SECRET),
        store=store,  # type: ignore[arg-type]
    )
    app.dependency_overrides[get_billing_state_machine] = lambda: billing
    app.dependency_overrides[get_ingest_service] = lambda: ingest
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health(client: httpx.AsyncClient) -> None:
    async with client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_stripe_webhook_rejects_bad_signature(
    client: httpx.AsyncClient, store: _EventLedgerStore
) -> None:
    payload = _deleted_event("evt_1")
    async with client:
        response = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": _sign(payload, secret="whsec_other")},
        )
    assert response.status_code == 400
    assert response.json()["code"] == 40010
    assert store.events == set()


@pytest.mark.asyncio
async def test_stripe_webhook_requires_signature(client: httpx.AsyncClient) -> None:
    async with client:
        response = await client.post("/webhooks/stripe", content=_deleted_event("evt_1"))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_stripe_webhook_acknowledges_and_dedupes(
    client: httpx.AsyncClient, store: _EventLedgerStore
) -> None:
    payload = _deleted_event("evt_2")
    async with client:
        first = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": _sign(payload)}
        )
        second = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": _sign(payload)}
        )

    assert first.status_code == 200
    assert first.json()["data"] == {"received": True, "outcome": "unmatched"}
    assert second.status_code == 200
    assert second.json()["data"]["outcome"] == "duplicate"
    assert store.events == {"evt_2"}


@pytest.mark.asyncio
async def test_stripe_webhook_storage_outage_is_retryable(
    client: httpx.AsyncClient, store: _EventLedgerStore
) -> None:
    store.fail = OperationalError("INSERT", {}, Exception("server closed the connection"))
    payload = _deleted_event("evt_3")
    async with client:
        response = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": _sign(payload)}
        )

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == 50300
    assert body["data"] == {"retryable": True}


@pytest.mark.asyncio
async def test_stripe_webhook_rejects_malformed_event(client: httpx.AsyncClient) -> None:
    payload = json.dumps({"id": "evt_4", "type": "invoice.paid", "data": {}}).encode()
    async with client:
        response = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": _sign(payload)}
        )
    assert response.status_code == 400
    assert response.json()["code"] == 40011


@pytest.fixture
def webhook_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", TWILIO_TOKEN)
    monkeypatch.setattr(settings, "TWILIO_WEBHOOK_URL", TWILIO_URL)
    monkeypatch.setattr(settings, "TRANSCRIPTION_CALLBACK_TOKEN", CALLBACK_TOKEN)


def _whatsapp_form() -> dict[str, str]:
    return {
        "From": "whatsapp:+15550001111",
        "MediaUrl0": "https://api.twilio.com/media/1",
        "MediaContentType0": "audio/ogg",
        "NumMedia": "1",
    }


@pytest.mark.asyncio
async def test_whatsapp_webhook_reads_signed_twilio_form(
    client: httpx.AsyncClient, ingest: _FakeIngest, webhook_secrets: None
) -> None:
    form = _whatsapp_form()
    signature = compute_request_signature(TWILIO_URL, form, TWILIO_TOKEN)
    async with client:
        response = await client.post(
            "/webhooks/whatsapp", data=form, headers={"X-Twilio-Signature": signature}
        )

    assert response.status_code == 200
    assert response.json()["data"] == {"status": "accepted", "transcription_id": "job-1"}
    assert ingest.whatsapp_calls == [
        ("whatsapp:+15550001111", "https://api.twilio.com/media/1", "audio/ogg")
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", [None, "forged", "token-of-another-account"])
async def test_whatsapp_webhook_rejects_unsigned_or_forged_form(
    client: httpx.AsyncClient,
    ingest: _FakeIngest,
    webhook_secrets: None,
    signature: Optional[str],
) -> None:
    form = _whatsapp_form()
    if signature == "token-of-another-account":
        signature = compute_request_signature(TWILIO_URL, form, "other-token")
    headers = {"X-Twilio-Signature": signature} if signature else {}
    async with client:
        response = await client.post("/webhooks/whatsapp", data=form, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == 40010
    assert ingest.whatsapp_calls == []


@pytest.mark.asyncio
async def test_whatsapp_signature_covers_every_field(
    client: httpx.AsyncClient, ingest: _FakeIngest, webhook_secrets: None
) -> None:
    form = _whatsapp_form()
    signature = compute_request_signature(TWILIO_URL, form, TWILIO_TOKEN)
    form["From"] = "whatsapp:+15559999999"
    async with client:
        response = await client.post(
            "/webhooks/whatsapp", data=form, headers={"X-Twilio-Signature": signature}
        )

    assert response.status_code == 400
    assert ingest.whatsapp_calls == []


@pytest.mark.asyncio
async def test_whatsapp_webhook_rejected_without_auth_token(
    client: httpx.AsyncClient, ingest: _FakeIngest, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", None)
    monkeypatch.setattr(settings, "TWILIO_WEBHOOK_URL", TWILIO_URL)
    form = _whatsapp_form()
    signature = compute_request_signature(TWILIO_URL, form, "")
    async with client:
        response = await client.post(
            "/webhooks/whatsapp", data=form, headers={"X-Twilio-Signature": signature}
        )

    assert response.status_code == 400
    assert ingest.whatsapp_calls == []


@pytest.mark.asyncio
async def test_transcription_callback(
    client: httpx.AsyncClient, ingest: _FakeIngest, webhook_secrets: None
) -> None:
    url = f"/webhooks/transcription?token={CALLBACK_TOKEN}"
    async with client:
        ok = await client.post(url, json={"metadata": {"request_id": "r1"}})
        bad = await client.post(url, content=b"not json")

    assert ok.json()["data"] == {"status": "completed", "transcription_id": "job-1"}
    assert ingest.callbacks == [{"metadata": {"request_id": "r1"}}]
    assert bad.status_code == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "?token=wrong", "?token="])
async def test_transcription_callback_requires_token(
    client: httpx.AsyncClient, ingest: _FakeIngest, webhook_secrets: None, query: str
) -> None:
    async with client:
        response = await client.post(
            f"/webhooks/transcription{query}", json={"metadata": {"request_id": "r1"}}
        )

    assert response.status_code == 400
    assert response.json()["code"] == 40010
    assert ingest.callbacks == []


@pytest.mark.asyncio
async def test_transcription_callback_closed_when_token_unset(
    client: httpx.AsyncClient, ingest: _FakeIngest, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "TRANSCRIPTION_CALLBACK_TOKEN", None)
    async with client:
        response = await client.post(
            "/webhooks/transcription?token=anything", json={"metadata": {"request_id": "r1"}}
        )

    assert response.status_code == 400
    assert ingest.callbacks == []
