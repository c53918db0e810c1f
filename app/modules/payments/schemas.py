"""Payments schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.core.enums import OrderStatusEnum


class CreateOrderRequest(BaseModel):
    """Start purchase of a program the learner is enrolled in."""

    program_id: UUID


class PurchaseSessionRead(BaseModel):
    """Data the client needs to open the gateway checkout."""

    session_id: str
    order_id: str
    order_amount: Decimal
    order_currency: str
    gateway_env: str


class VerifyPaymentRequest(BaseModel):
    """Poll gateway for the outcome of an order."""

    order_id: str = Field(min_length=1, max_length=128)


class PaymentVerificationRead(BaseModel):
    """Learner-visible payment outcome."""

    status: OrderStatusEnum
    message: str


class OrderRead(BaseModel):
    """Order response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    program_id: UUID
    enrollment_id: UUID
    gateway_order_id: str
    amount: Decimal
    currency: str
    status: OrderStatusEnum
    payment_method: str | None
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime
