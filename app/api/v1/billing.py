from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.api.deps import get_billing_state_machine, get_current_user, get_metering_service
from app.core.response import success
from app.models.user import User
from app.schemas.billing import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    MinutesCheckResponse,
    PaymentItem,
    SubscriptionSnapshotResponse,
)
from app.schemas.common import PageResponse
from app.services.billing.state_machine import BillingStateMachine
from app.services.metering_service import MeteringService

router = APIRouter(prefix="/billing")


@router.get("/minutes/check")
async def check_minutes(
    duration_seconds: float = Query(ge=0),
    user: User = Depends(get_current_user),
    metering: MeteringService = Depends(get_metering_service),
) -> JSONResponse:
    result = await metering.check_admission(user.id, duration_seconds)
    response = MinutesCheckResponse(**asdict(result))
    return success(data=jsonable_encoder(response))


@router.get("/subscription")
async def get_subscription(
    user: User = Depends(get_current_user),
    billing: BillingStateMachine = Depends(get_billing_state_machine),
) -> JSONResponse:
    snapshot = await billing.get_subscription_snapshot(user.id)
    response = SubscriptionSnapshotResponse.model_validate(snapshot)
    return success(data=jsonable_encoder(response))


@router.post("/subscription/cancel")
async def cancel_subscription(
    user: User = Depends(get_current_user),
    billing: BillingStateMachine = Depends(get_billing_state_machine),
) -> JSONResponse:
    snapshot = await billing.request_cancellation(user.id)
    response = SubscriptionSnapshotResponse.model_validate(snapshot)
    return success(data=jsonable_encoder(response))


@router.post("/subscription/reactivate")
async def reactivate_subscription(
    user: User = Depends(get_current_user),
    billing: BillingStateMachine = Depends(get_billing_state_machine),
) -> JSONResponse:
    snapshot = await billing.request_reactivation(user.id)
    response = SubscriptionSnapshotResponse.model_validate(snapshot)
    return success(data=jsonable_encoder(response))


@router.post("/checkout-session")
async def create_checkout_session(
    data: CheckoutSessionRequest,
    user: User = Depends(get_current_user),
    billing: BillingStateMachine = Depends(get_billing_state_machine),
) -> JSONResponse:
    session = await billing.start_checkout(user, data.price_id, data.plan_type, data.plan)
    response = CheckoutSessionResponse(**session)
    return success(data=jsonable_encoder(response))


@router.get("/payments")
async def list_payments(
    user: User = Depends(get_current_user),
    billing: BillingStateMachine = Depends(get_billing_state_machine),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
) -> JSONResponse:
    payments = await billing.list_payments(user.id, page, page_size)
    response = PageResponse[PaymentItem](
        items=[PaymentItem.model_validate(item) for item in payments.items],
        total=payments.total,
        page=payments.page,
        page_size=payments.page_size,
    )
    return success(data=jsonable_encoder(response))
