from __future__ import annotations

import logging
import re
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BusinessError
from app.i18n.codes import ErrorCode
from app.models.user import User
from app.schemas.user import UserProfileUpdateRequest
from app.services.messaging.twilio import normalize_whatsapp_number

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s\-().]")
_E164 = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_phone_number(value: str) -> str:
    """``whatsapp:+1 (555) 123-4567`` -> ``+15551234567``; raises on anything else."""
    number = _SEPARATORS.sub("", normalize_whatsapp_number(value))
    if number and not number.startswith("+"):
        number = f"+{number}"
    if not _E164.match(number):
        raise BusinessError(ErrorCode.INVALID_PARAMETER, detail="whatsapp_number")
    return number


async def _number_taken(db: AsyncSession, user: User, number: str) -> bool:
    # the unique index covers soft-deleted accounts too
    result = await db.execute(
        select(User.id).where(User.whatsapp_number == number, User.id != user.id)
    )
    return result.scalar_one_or_none() is not None


async def update_user_profile(
    db: AsyncSession, user: User, payload: UserProfileUpdateRequest
) -> User:
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise BusinessError(ErrorCode.INVALID_PARAMETER, detail="no fields to update")

    if "name" in updates:
        user.name = updates["name"]
    if updates.get("language"):
        user.language = updates["language"]
    if "whatsapp_number" in updates:
        raw: Optional[str] = updates["whatsapp_number"]
        number = normalize_phone_number(raw) if raw else None
        if number is not None and await _number_taken(db, user, number):
            raise BusinessError(ErrorCode.WHATSAPP_NUMBER_IN_USE)
        user.whatsapp_number = number

    try:
        await db.commit()
    except IntegrityError as exc:
        logger.warning("WhatsApp number conflict for user %s: %s", user.id, exc)
        await db.rollback()
        raise BusinessError(ErrorCode.WHATSAPP_NUMBER_IN_USE) from exc
    await db.refresh(user)
    logger.info("Profile updated for user %s: %s", user.id, sorted(updates))
    return user
