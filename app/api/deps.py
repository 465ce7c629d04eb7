from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import BusinessError
from app.core.security import subject_from_authorization
from app.db import Database, session_scope
from app.i18n.codes import ErrorCode
from app.models.user import User
from app.services.billing.state_machine import BillingStateMachine
from app.services.ingest_service import IngestService
from app.services.messaging.base import MessagingService
from app.services.messaging.twilio import TwilioWhatsAppService
from app.services.metering_service import MeteringService
from app.services.storage.factory import get_storage_service
from app.services.transcription.factory import get_transcription_provider
from app.utils.ids import is_uuid

logger = logging.getLogger(__name__)


def get_database(request: Request) -> Database:
    database: Optional[Database] = getattr(request.app.state, "database", None)
    if database is None:
        raise RuntimeError("Database is not initialized")
    return database


def get_session_factory(
    database: Database = Depends(get_database),
) -> async_sessionmaker[AsyncSession]:
    return database.session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    async for session in session_scope(session_factory):
        yield session


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    authorization: Optional[str] = Header(default=None),
) -> User:
    subject = subject_from_authorization(authorization)
    if not is_uuid(subject):
        raise BusinessError(ErrorCode.AUTH_TOKEN_INVALID)
    result = await db.execute(
        select(User).where(User.id == subject, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise BusinessError(ErrorCode.USER_NOT_FOUND)
    return user


def get_metering_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MeteringService:
    return MeteringService(session_factory)


def get_billing_state_machine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> BillingStateMachine:
    return BillingStateMachine(session_factory)


def _get_messenger() -> Optional[MessagingService]:
    try:
        return TwilioWhatsAppService()
    except RuntimeError as exc:
        logger.warning("WhatsApp replies disabled: %s", exc)
        return None


def get_ingest_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    metering: MeteringService = Depends(get_metering_service),
) -> IngestService:
    return IngestService(
        session_factory,
        metering,
        storage=get_storage_service(),
        transcriber=get_transcription_provider(),
        messenger=_get_messenger(),
    )
