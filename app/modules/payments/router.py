"""Payments API router."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from app.core.enums import RoleEnum
from app.modules.identity.service import require_roles
from app.modules.payments.schemas import (
    CreateOrderRequest,
    OrderRead,
    PaymentVerificationRead,
    PurchaseSessionRead,
    VerifyPaymentRequest,
)
from app.modules.payments.service import PaymentsService, get_payments_service
from app.shared.exceptions import SignatureInvalidException, ValidationException
from app.shared.pagination import Page, build_page, get_pagination_params

router = APIRouter(prefix="/payments", tags=["payments"])

_CALLBACK_ERRORS = {
    400: (ValidationException.code, "Missing signature headers"),
    401: (SignatureInvalidException.code, "Invalid signature"),
}


@router.post("/create-order", response_model=PurchaseSessionRead)
async def create_order(
    payload: CreateOrderRequest,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.LEARNER)),
) -> PurchaseSessionRead:
    """Open a gateway order to upgrade a free enrollment."""
    return await service.create_purchase_order(payload.program_id, current_user)


@router.post("/verify", response_model=PaymentVerificationRead)
async def verify_payment(
    payload: VerifyPaymentRequest,
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.LEARNER)),
) -> PaymentVerificationRead:
    """Check order outcome with the gateway and apply it."""
    return await service.verify_payment(payload.order_id, current_user)


@router.post("/webhook", include_in_schema=False)
async def payment_webhook(
    request: Request,
    x_webhook_timestamp: str | None = Header(default=None),
    x_webhook_signature: str | None = Header(default=None),
    service: PaymentsService = Depends(get_payments_service),
) -> JSONResponse:
    """Gateway callback; authenticated by HMAC signature, not by bearer token."""
    raw_body = await request.body()
    status_code = await service.handle_callback(x_webhook_timestamp, raw_body, x_webhook_signature)
    if status_code in _CALLBACK_ERRORS:
        code, message = _CALLBACK_ERRORS[status_code]
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )
    return JSONResponse(status_code=status_code, content={"success": True})


@router.get("/orders", response_model=Page[OrderRead])
async def list_my_orders(
    pagination=Depends(get_pagination_params),
    service: PaymentsService = Depends(get_payments_service),
    current_user=Depends(require_roles(RoleEnum.LEARNER)),
) -> Page[OrderRead]:
    """List purchase history of current learner."""
    items, total = await service.list_learner_orders(
        actor=current_user,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    serialized = [OrderRead.model_validate(item) for item in items]
    return build_page(serialized, total, pagination)
