"""Upload and WhatsApp intake.

Both paths share one pipeline: probe duration, check admission, store the
media, create the job row, submit it to the speech provider and finally
commit the minute deduction. The deduction is best-effort: a failure there is
logged and never fails an accepted job.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import BusinessError
from app.core.redis import publish_transcription_event
from app.db import translate_storage_errors
from app.i18n.codes import ErrorCode
from app.models.transcription import Transcription
from app.models.user import User
from app.services.messaging.base import MessagingService
from app.services.messaging.twilio import normalize_whatsapp_number
from app.services.metering_service import MeteringService
from app.services.storage.base import StorageService
from app.services.transcription.base import TranscriptionProvider
from app.utils.media import probe_duration

logger = logging.getLogger(__name__)

SOURCE_UPLOAD = "upload"
SOURCE_WHATSAPP = "whatsapp"

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

# a provider callback only finishes jobs still waiting on it
_OPEN_STATUSES = frozenset({STATUS_PENDING, STATUS_PROCESSING})

Publisher = Callable[[str, dict[str, Any]], Awaitable[None]]


def _frontend_url() -> str:
    return settings.FRONTEND_URL or ""


REPLY_NOT_REGISTERED = (
    "Phone number not registered. Please visit {url} and register your phone number."
)
REPLY_NO_MEDIA = "No audio/video file sent"
REPLY_UNREADABLE = "Sorry, we are unable to transcribe this message"
REPLY_QUOTA_EXCEEDED = (
    "You have {remaining} minutes left but this message needs {required} minutes. "
    "Please upgrade your plan at {url}"
)
REPLY_RECEIVED = (
    "We have received your file. Your file is being processed.\n\n"
    "You can track your result here {url}"
)
REPLY_SUBMIT_FAILED = "Sorry, we could not start the transcription. Please try again later."
REPLY_TRANSCRIPT = "{text}\n\nYou can see your result here {url}"
REPLY_TRANSCRIPTION_FAILED = "Transcription failed for your WA message."


@dataclass(frozen=True)
class JobAccepted:
    transcription_id: str
    status: str
    request_id: Optional[str]
    duration_seconds: float
    required_minutes: float
    remaining_minutes: Optional[float]
    deducted: bool


@dataclass(frozen=True)
class WhatsAppOutcome:
    status: str  # not_registered | no_media | unreadable | quota_exceeded | accepted | failed
    reply: str
    transcription_id: Optional[str] = None


@dataclass(frozen=True)
class CallbackOutcome:
    status: str  # completed | failed | duplicate | unknown_request
    transcription_id: Optional[str] = None


def _allowed_extensions() -> set[str]:
    raw = settings.UPLOAD_ALLOWED_EXTENSIONS or ""
    return {item.strip().lower().lstrip(".") for item in raw.split(",") if item.strip()}


def file_too_large(max_size: int) -> BusinessError:
    return BusinessError(ErrorCode.FILE_TOO_LARGE, max_size=f"{max_size // (1024 * 1024)} MB")


def _format_minutes(value: float) -> str:
    return f"{value:.2f}"


class IngestService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metering: MeteringService,
        storage: StorageService,
        transcriber: TranscriptionProvider,
        messenger: Optional[MessagingService] = None,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self._session_factory = session_factory
        self._metering = metering
        self._storage = storage
        self._transcriber = transcriber
        self._messenger = messenger
        self._publish = publisher or publish_transcription_event

    # ------------------------------------------------------------------
    # Web upload
    # ------------------------------------------------------------------

    async def accept_upload(
        self,
        user: User,
        filename: str,
        content: bytes,
        content_type: Optional[str],
        language: Optional[str] = None,
    ) -> JobAccepted:
        suffix = Path(filename or "").suffix.lower()
        allowed = _allowed_extensions()
        if suffix.lstrip(".") not in allowed:
            raise BusinessError(
                ErrorCode.UNSUPPORTED_FILE_FORMAT, allowed=", ".join(sorted(allowed))
            )
        if not content:
            raise BusinessError(ErrorCode.INVALID_PARAMETER, detail="file is empty")
        max_size = settings.UPLOAD_MAX_SIZE_BYTES
        if max_size and len(content) > max_size:
            raise file_too_large(max_size)

        duration = await probe_duration(content, suffix)
        if duration is None:
            logger.warning("Could not read duration of %s, metering as 0 seconds", filename)
            duration = 0.0

        admission = await self._metering.check_admission(user.id, duration)
        if not admission.admissible:
            raise BusinessError(
                ErrorCode.MINUTES_QUOTA_EXCEEDED,
                remaining=_format_minutes(admission.remaining_minutes),
                required=_format_minutes(admission.required_minutes),
            )

        return await self._start_job(
            user_id=user.id,
            source=SOURCE_UPLOAD,
            filename=filename,
            suffix=suffix,
            content=content,
            content_type=content_type or mimetypes.guess_type(filename)[0] or "",
            duration=duration,
            required_minutes=admission.required_minutes,
            language=language or user.language,
        )

    # ------------------------------------------------------------------
    # WhatsApp
    # ------------------------------------------------------------------

    async def _find_user_by_number(self, number: str) -> Optional[User]:
        async with translate_storage_errors():
            async with self._session_factory() as session:
                result = await session.execute(
                    select(User).where(
                        User.whatsapp_number == number,
                        User.deleted_at.is_(None),
                        User.status == "active",
                    )
                )
                return result.scalar_one_or_none()

    async def _reply(self, to: str, body: str) -> None:
        if self._messenger is None:
            logger.warning("No messaging service configured, dropping reply to %s", to)
            return
        try:
            await self._messenger.send_message(to, body)
        except BusinessError as exc:
            logger.warning("WhatsApp reply to %s failed: %s", to, exc.code.name)

    async def accept_whatsapp_message(
        self,
        sender: str,
        media_url: Optional[str],
        media_content_type: Optional[str] = None,
    ) -> WhatsAppOutcome:
        number = normalize_whatsapp_number(sender)
        user = await self._find_user_by_number(number)
        if user is None:
            reply = REPLY_NOT_REGISTERED.format(url=_frontend_url())
            await self._reply(number, reply)
            return WhatsAppOutcome("not_registered", reply)

        if not media_url or self._messenger is None:
            await self._reply(number, REPLY_NO_MEDIA)
            return WhatsAppOutcome("no_media", REPLY_NO_MEDIA)

        try:
            content, downloaded_type = await self._messenger.download_media(media_url)
        except BusinessError:
            await self._reply(number, REPLY_UNREADABLE)
            return WhatsAppOutcome("unreadable", REPLY_UNREADABLE)

        content_type = media_content_type or downloaded_type
        suffix = mimetypes.guess_extension(content_type or "") or ""
        duration = await probe_duration(content, suffix)
        if duration is None:
            logger.warning("Unreadable WhatsApp media from user %s", user.id)
            await self._reply(number, REPLY_UNREADABLE)
            return WhatsAppOutcome("unreadable", REPLY_UNREADABLE)

        admission = await self._metering.check_admission(user.id, duration)
        if not admission.admissible:
            reply = REPLY_QUOTA_EXCEEDED.format(
                remaining=_format_minutes(admission.remaining_minutes),
                required=_format_minutes(admission.required_minutes),
                url=_frontend_url(),
            )
            await self._reply(number, reply)
            return WhatsAppOutcome("quota_exceeded", reply)

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        job = await self._start_job(
            user_id=user.id,
            source=SOURCE_WHATSAPP,
            filename=f"WA-{stamp}{suffix}",
            suffix=suffix,
            content=content,
            content_type=content_type,
            duration=duration,
            required_minutes=admission.required_minutes,
            language=user.language,
            reply_to=number,
        )
        if job.status == STATUS_FAILED:
            await self._reply(number, REPLY_SUBMIT_FAILED)
            return WhatsAppOutcome("failed", REPLY_SUBMIT_FAILED, job.transcription_id)
        reply = REPLY_RECEIVED.format(url=_frontend_url())
        await self._reply(number, reply)
        return WhatsAppOutcome("accepted", reply, job.transcription_id)

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    async def _start_job(
        self,
        *,
        user_id: str,
        source: str,
        filename: str,
        suffix: str,
        content: bytes,
        content_type: str,
        duration: float,
        required_minutes: float,
        language: Optional[str],
        reply_to: Optional[str] = None,
    ) -> JobAccepted:
        object_name = f"{source}/{user_id}/{uuid4().hex}{suffix}"
        await self._storage.upload_bytes(object_name, content, content_type)

        async with translate_storage_errors():
            async with self._session_factory() as session:
                job = Transcription(
                    user_id=user_id,
                    source=source,
                    original_filename=filename,
                    source_key=object_name,
                    file_size=len(content),
                    mime_type=content_type or None,
                    duration_seconds=duration,
                    language=language,
                    status=STATUS_PENDING,
                    reply_to=reply_to,
                )
                session.add(job)
                await session.commit()
                job_id = str(job.id)

        try:
            audio_url = self._storage.generate_presigned_url(
                object_name, settings.MINIO_PRESIGN_EXPIRES
            )
            request_id = await self._transcriber.submit(audio_url, language)
        except BusinessError as exc:
            logger.error(
                "Transcription submit failed for job %s: %s",
                job_id,
                exc.code.name,
                extra={"transcription_id": job_id},
            )
            await self._set_status(job_id, STATUS_FAILED, error_message=exc.code.name)
            await self._publish(user_id, {"id": job_id, "status": STATUS_FAILED})
            return JobAccepted(
                transcription_id=job_id,
                status=STATUS_FAILED,
                request_id=None,
                duration_seconds=duration,
                required_minutes=required_minutes,
                remaining_minutes=None,
                deducted=False,
            )

        await self._set_status(job_id, STATUS_PROCESSING, request_id=request_id)
        await self._publish(user_id, {"id": job_id, "status": STATUS_PROCESSING})

        deducted = False
        remaining: Optional[float] = None
        try:
            deduction = await self._metering.commit_deduction(user_id, duration)
            deducted = deduction.committed
            remaining = deduction.remaining_minutes
            if not deduction.committed:
                logger.warning(
                    "Minutes not deducted for job %s: %s",
                    job_id,
                    deduction.reason,
                    extra={"transcription_id": job_id},
                )
        except Exception:
            logger.exception(
                "Deduction failed for job %s", job_id, extra={"transcription_id": job_id}
            )

        return JobAccepted(
            transcription_id=job_id,
            status=STATUS_PROCESSING,
            request_id=request_id,
            duration_seconds=duration,
            required_minutes=required_minutes,
            remaining_minutes=remaining,
            deducted=deducted,
        )

    async def _set_status(self, job_id: str, status: str, **values: Any) -> None:
        async with translate_storage_errors():
            async with self._session_factory() as session:
                await session.execute(
                    update(Transcription)
                    .where(Transcription.id == job_id)
                    .values(status=status, **values)
                )
                await session.commit()

    # ------------------------------------------------------------------
    # Provider callback
    # ------------------------------------------------------------------

    async def complete_transcription(self, payload: Mapping[str, Any]) -> CallbackOutcome:
        result = self._transcriber.parse_callback(payload)
        async with translate_storage_errors():
            async with self._session_factory() as session:
                found = await session.execute(
                    select(Transcription)
                    .where(Transcription.request_id == result.request_id)
                    .with_for_update()
                )
                job = found.scalar_one_or_none()
                if job is None:
                    logger.warning("No transcription for request_id %s", result.request_id)
                    return CallbackOutcome("unknown_request")
                if job.status not in _OPEN_STATUSES:
                    logger.info(
                        "Ignoring repeated callback for transcription %s (%s)",
                        job.id,
                        job.status,
                        extra={"transcription_id": str(job.id)},
                    )
                    return CallbackOutcome("duplicate", str(job.id))
                if result.text:
                    job.status = STATUS_COMPLETED
                    job.transcript_text = result.text
                    job.confidence = result.confidence
                    job.word_count = result.word_count
                    if result.duration_seconds is not None:
                        job.duration_seconds = result.duration_seconds
                else:
                    job.status = STATUS_FAILED
                    job.error_message = "empty transcript"
                await session.commit()
                job_id = str(job.id)
                user_id = str(job.user_id)
                status = job.status
                reply_to = job.reply_to

        logger.info("Transcription %s finished with status %s", job_id, status)
        if reply_to:
            if status == STATUS_COMPLETED:
                body = REPLY_TRANSCRIPT.format(text=result.text, url=_frontend_url())
            else:
                body = REPLY_TRANSCRIPTION_FAILED
            await self._reply(reply_to, body)
        await self._publish(user_id, {"id": job_id, "status": status})
        return CallbackOutcome(status, job_id)
