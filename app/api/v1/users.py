from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_db
from app.core.response import success
from app.models.user import User
from app.schemas.user import UserProfileResponse, UserProfileUpdateRequest
from app.services.user_profile import update_user_profile

router = APIRouter(prefix="/users")


@router.get("/profile")
async def get_profile(user: User = Depends(get_current_user)) -> JSONResponse:
    response = UserProfileResponse.model_validate(user)
    return success(data=jsonable_encoder(response))


@router.put("/profile")
async def update_profile(
    payload: UserProfileUpdateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> JSONResponse:
    user = await update_user_profile(db, user, payload)
    response = UserProfileResponse.model_validate(user)
    return success(data=jsonable_encoder(response))
