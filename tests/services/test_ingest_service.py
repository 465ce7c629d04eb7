from __future__ import annotations

from typing import Any, Mapping, Optional

import pytest
from sqlalchemy.sql.dml import Update

from app.core.exceptions import BusinessError, StorageUnavailableError
from app.i18n.codes import ErrorCode
from app.models.transcription import Transcription
from app.models.user import User
from app.services import ingest_service
from app.services.ingest_service import (
    REPLY_NO_MEDIA,
    REPLY_UNREADABLE,
    IngestService,
)
from app.services.metering_service import AdmissionResult, DeductionResult
from app.services.transcription.base import TranscriptResult

USER_ID = "5f1d2c3b-4a59-4e6f-8a7b-9c0d1e2f3a4b"


class _Result:
    def __init__(self, value: Any = None) -> None:
        self._value = value

    def scalar_one_or_none(self) -> Any:
        return self._value


class _FakeMetering:
    def __init__(self, remaining: float = 30.0) -> None:
        self.remaining = remaining
        self.commits: list[Optional[float]] = []
        self.commit_error: Optional[Exception] = None

    async def check_admission(self, account_id: str, duration_seconds: Optional[float]) -> AdmissionResult:
        required = (duration_seconds or 0) / 60
        return AdmissionResult(
            admissible=required <= self.remaining,
            remaining_minutes=self.remaining,
            required_minutes=required,
            source="account",
        )

    async def commit_deduction(self, account_id: str, duration_seconds: Optional[float]) -> DeductionResult:
        self.commits.append(duration_seconds)
        if self.commit_error is not None:
            raise self.commit_error
        minutes = (duration_seconds or 0) / 60
        self.remaining -= minutes
        return DeductionResult(True, minutes, self.remaining, "account")


class _FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def upload_bytes(self, object_name: str, content: bytes, content_type: str) -> None:
        self.objects[object_name] = content

    def generate_presigned_url(self, object_name: str, expires_in: int) -> str:
        return f"https://files.example.com/{object_name}?sig=1"


class _FakeTranscriber:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.submitted: list[str] = []

    async def submit(self, audio_url: str, language: Optional[str]) -> str:
        if self.fail:
            raise BusinessError(ErrorCode.TRANSCRIPTION_SERVICE_FAILED)
        self.submitted.append(audio_url)
        return f"req-{len(self.submitted)}"

    def parse_callback(self, payload: Mapping[str, Any]) -> TranscriptResult:
        text = payload.get("text")
        return TranscriptResult(
            request_id=payload["request_id"],
            text=text,
            confidence=0.93,
            word_count=len(text.split()) if text else 0,
        )


class _FakeMessenger:
    def __init__(self, media: Optional[bytes] = b"audio-bytes") -> None:
        self.media = media
        self.sent: list[tuple[str, str]] = []

    async def send_message(self, to: str, body: str) -> None:
        self.sent.append((to, body))

    async def download_media(self, media_url: str) -> tuple[bytes, str]:
        if self.media is None:
            raise BusinessError(ErrorCode.FILE_PROCESSING_ERROR)
        return self.media, "audio/ogg"


class _Harness:
    def __init__(self, session_factory: Any, user: Optional[User]) -> None:
        self.user = user
        self.metering = _FakeMetering()
        self.storage = _FakeStorage()
        self.transcriber = _FakeTranscriber()
        self.messenger = _FakeMessenger()
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.session_factory = session_factory
        session_factory.on_execute = self._execute

    @property
    def jobs(self) -> list[Transcription]:
        return [obj for obj in self.session_factory.added if isinstance(obj, Transcription)]

    def _execute(self, statement: Any) -> _Result:
        if isinstance(statement, Update):
            params = statement.compile().params
            for job in self.jobs:
                for key in ("status", "request_id", "error_message"):
                    if key in params:
                        setattr(job, key, params[key])
            return _Result()
        entity = statement.column_descriptions[0]["entity"]
        if entity is User:
            return _Result(self.user)
        params = statement.compile().params
        request_id = next(iter(params.values()))
        match = [job for job in self.jobs if job.request_id == request_id]
        return _Result(match[0] if match else None)

    async def publish(self, user_id: str, payload: dict[str, Any]) -> None:
        self.published.append((user_id, payload))

    def service(self) -> IngestService:
        return IngestService(
            self.session_factory,
            self.metering,  # type: ignore[arg-type]
            storage=self.storage,  # type: ignore[arg-type]
            transcriber=self.transcriber,  # type: ignore[arg-type]
            messenger=self.messenger,  # type: ignore[arg-type]
            publisher=self.publish,
        )


def _user() -> User:
    return User(id=USER_ID, email="a@example.com", language="en", whatsapp_number="+15550001111")


@pytest.fixture
def media_duration(monkeypatch: pytest.MonkeyPatch) -> dict[str, Optional[float]]:
    state: dict[str, Optional[float]] = {"duration": 120.0}

    async def fake_probe(content: bytes, suffix: str = "") -> Optional[float]:
        return state["duration"]

    monkeypatch.setattr(ingest_service, "probe_duration", fake_probe)
    return state


@pytest.mark.asyncio
async def test_upload_starts_job_and_deducts(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())

    result = await harness.service().accept_upload(
        _user(), "meeting.mp3", b"mp3-bytes", "audio/mpeg"
    )

    assert result.status == "processing"
    assert result.request_id == "req-1"
    assert result.required_minutes == 2
    assert result.deducted
    assert result.remaining_minutes == 28
    assert harness.metering.commits == [120.0]
    job = harness.jobs[0]
    assert job.status == "processing"
    assert job.request_id == "req-1"
    assert job.source == "upload"
    assert job.source_key.startswith(f"upload/{USER_ID}/")
    assert job.source_key.endswith(".mp3")
    assert list(harness.storage.objects) == [job.source_key]
    assert harness.published == [(USER_ID, {"id": result.transcription_id, "status": "processing"})]


@pytest.mark.asyncio
async def test_upload_over_quota_is_rejected(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())
    harness.metering.remaining = 1.0

    with pytest.raises(BusinessError) as exc_info:
        await harness.service().accept_upload(_user(), "meeting.mp3", b"mp3", "audio/mpeg")

    assert exc_info.value.code == ErrorCode.MINUTES_QUOTA_EXCEEDED
    assert exc_info.value.kwargs == {"remaining": "1.00", "required": "2.00"}
    assert harness.storage.objects == {}
    assert harness.jobs == []


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_extension(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())

    with pytest.raises(BusinessError) as exc_info:
        await harness.service().accept_upload(_user(), "notes.txt", b"hello", "text/plain")

    assert exc_info.value.code == ErrorCode.UNSUPPORTED_FILE_FORMAT


@pytest.mark.asyncio
async def test_unreadable_upload_is_metered_as_zero(session_factory: Any, media_duration: dict) -> None:
    media_duration["duration"] = None
    harness = _Harness(session_factory, _user())
    harness.metering.remaining = 0.0

    result = await harness.service().accept_upload(_user(), "voice.wav", b"wav", "audio/wav")

    assert result.status == "processing"
    assert result.required_minutes == 0
    assert harness.metering.commits == [0.0]


@pytest.mark.asyncio
async def test_failed_submit_does_not_deduct(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())
    harness.transcriber.fail = True

    result = await harness.service().accept_upload(_user(), "meeting.mp3", b"mp3", "audio/mpeg")

    assert result.status == "failed"
    assert not result.deducted
    assert harness.metering.commits == []
    assert harness.jobs[0].status == "failed"
    assert harness.published[-1][1]["status"] == "failed"


@pytest.mark.asyncio
async def test_deduction_failure_keeps_job(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())
    harness.metering.commit_error = StorageUnavailableError("pool exhausted")

    result = await harness.service().accept_upload(_user(), "meeting.mp3", b"mp3", "audio/mpeg")

    assert result.status == "processing"
    assert not result.deducted
    assert result.remaining_minutes is None


@pytest.mark.asyncio
async def test_whatsapp_unregistered_number(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, None)

    outcome = await harness.service().accept_whatsapp_message(
        "whatsapp:+15559990000", "https://api.twilio.com/media/1", "audio/ogg"
    )

    assert outcome.status == "not_registered"
    assert harness.messenger.sent[0][0] == "+15559990000"
    assert "not registered" in harness.messenger.sent[0][1]


@pytest.mark.asyncio
async def test_whatsapp_without_media(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())

    outcome = await harness.service().accept_whatsapp_message("whatsapp:+15550001111", None)

    assert outcome.status == "no_media"
    assert harness.messenger.sent == [("+15550001111", REPLY_NO_MEDIA)]


@pytest.mark.asyncio
async def test_whatsapp_unreadable_media(session_factory: Any, media_duration: dict) -> None:
    media_duration["duration"] = None
    harness = _Harness(session_factory, _user())

    outcome = await harness.service().accept_whatsapp_message(
        "whatsapp:+15550001111", "https://api.twilio.com/media/1", "audio/ogg"
    )

    assert outcome.status == "unreadable"
    assert harness.messenger.sent == [("+15550001111", REPLY_UNREADABLE)]
    assert harness.jobs == []


@pytest.mark.asyncio
async def test_whatsapp_over_quota(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())
    harness.metering.remaining = 1.5

    outcome = await harness.service().accept_whatsapp_message(
        "whatsapp:+15550001111", "https://api.twilio.com/media/1", "audio/ogg"
    )

    assert outcome.status == "quota_exceeded"
    assert "1.50 minutes left" in outcome.reply
    assert "2.00 minutes" in outcome.reply
    assert harness.storage.objects == {}


@pytest.mark.asyncio
async def test_whatsapp_message_round_trip(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())
    service = harness.service()

    outcome = await service.accept_whatsapp_message(
        "whatsapp:+15550001111", "https://api.twilio.com/media/1", "audio/ogg"
    )
    assert outcome.status == "accepted"
    job = harness.jobs[0]
    assert job.source == "whatsapp"
    assert job.reply_to == "+15550001111"

    done = await service.complete_transcription({"request_id": "req-1", "text": "hello there"})

    assert done.status == "completed"
    assert done.transcription_id == outcome.transcription_id
    assert job.transcript_text == "hello there"
    assert job.word_count == 2
    assert harness.messenger.sent[-1][0] == "+15550001111"
    assert harness.messenger.sent[-1][1].startswith("hello there")
    assert harness.published[-1] == (USER_ID, {"id": job.id, "status": "completed"})


@pytest.mark.asyncio
async def test_empty_transcript_marks_failed(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())
    service = harness.service()
    await service.accept_upload(_user(), "meeting.mp3", b"mp3", "audio/mpeg")

    done = await service.complete_transcription({"request_id": "req-1", "text": ""})

    assert done.status == "failed"
    assert harness.jobs[0].error_message == "empty transcript"
    assert harness.messenger.sent == []


@pytest.mark.asyncio
async def test_callback_for_unknown_request(session_factory: Any, media_duration: dict) -> None:
    harness = _Harness(session_factory, _user())

    done = await harness.service().complete_transcription({"request_id": "nope", "text": "x"})

    assert done.status == "unknown_request"
    assert harness.published == []


@pytest.mark.asyncio
async def test_repeated_callback_leaves_finished_job_alone(
    session_factory: Any, media_duration: dict
) -> None:
    harness = _Harness(session_factory, _user())
    service = harness.service()
    await service.accept_whatsapp_message(
        "whatsapp:+15550001111", "https://api.twilio.com/media/1", "audio/ogg"
    )
    first = await service.complete_transcription({"request_id": "req-1", "text": "hello there"})
    sent = list(harness.messenger.sent)
    published = list(harness.published)

    again = await service.complete_transcription({"request_id": "req-1", "text": ""})

    assert first.status == "completed"
    assert again.status == "duplicate"
    assert again.transcription_id == first.transcription_id
    job = harness.jobs[0]
    assert job.status == "completed"
    assert job.transcript_text == "hello there"
    assert job.error_message is None
    assert harness.messenger.sent == sent
    assert harness.published == published


@pytest.mark.asyncio
async def test_callback_for_failed_submission_is_ignored(
    session_factory: Any, media_duration: dict
) -> None:
    harness = _Harness(session_factory, _user())
    service = harness.service()
    await service.accept_upload(_user(), "meeting.mp3", b"mp3", "audio/mpeg")
    harness.jobs[0].status = "failed"

    done = await service.complete_transcription({"request_id": "req-1", "text": "late text"})

    assert done.status == "duplicate"
    assert harness.jobs[0].transcript_text is None
