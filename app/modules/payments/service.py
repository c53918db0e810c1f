"""Payments business logic layer: purchase initiation and both confirmation channels."""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db_session
from app.core.enums import EnrollmentTypeEnum, GatewayAttemptStatusEnum, OrderStatusEnum
from app.core.metrics import record_webhook_delivery
from app.modules.audit.repository import AuditRepository
from app.modules.identity.models import User
from app.modules.payments.gateway import (
    BuyerInfo,
    PaymentGateway,
    get_payment_gateway,
    select_decisive_attempt,
)
from app.modules.payments.models import Order
from app.modules.payments.reconciliation import ReconciliationResult, ReconciliationService
from app.modules.payments.repository import PaymentsRepository
from app.modules.payments.schemas import PaymentVerificationRead, PurchaseSessionRead
from app.modules.payments.side_effects import get_side_effect_dispatcher
from app.modules.programs.repository import ProgramsRepository
from app.shared.exceptions import (
    AlreadyEntitledException,
    NoPriceException,
    NotFoundException,
    UnauthorizedException,
)
from app.shared.utils import to_money, utc_now

logger = logging.getLogger(__name__)

POLL_CHANNEL = "poll"
CALLBACK_CHANNEL = "callback"
DEFAULT_FAILURE_REASON = "Payment failed"


class PaymentsService:
    """Payments domain service."""

    def __init__(
        self,
        repository: PaymentsRepository,
        programs_repository: ProgramsRepository,
        audit_repository: AuditRepository,
        gateway: PaymentGateway,
        reconciliation: ReconciliationService,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.programs_repository = programs_repository
        self.audit_repository = audit_repository
        self.gateway = gateway
        self.reconciliation = reconciliation
        self.settings = settings

    async def create_purchase_order(self, program_id: UUID, actor: User) -> PurchaseSessionRead:
        """Resolve learner enrollment and program price, then open a gateway order."""
        enrollment = await self.programs_repository.get_enrollment(actor.id, program_id)
        if enrollment is None:
            raise NotFoundException("You are not enrolled in this program")
        if enrollment.type in (EnrollmentTypeEnum.PAID, EnrollmentTypeEnum.ADMIN):
            raise AlreadyEntitledException("You already have full access to this program")

        program = await self.programs_repository.get_program_by_id(program_id)
        if program is None or program.price is None or program.price <= 0:
            raise NoPriceException("This program does not have a price set")

        buyer = BuyerInfo(email=actor.email, name=actor.name, phone=actor.mobile)
        return await self.initiate_purchase(
            enrollment.id,
            to_money(program.price),
            program.currency or self.settings.default_currency,
            buyer,
        )

    async def initiate_purchase(
        self,
        enrollment_id: UUID,
        amount: Decimal,
        currency: str,
        buyer: BuyerInfo,
    ) -> PurchaseSessionRead:
        """Create gateway order and replace any abandoned PENDING order for the enrollment."""
        enrollment = await self.programs_repository.get_enrollment_by_id(enrollment_id)
        if enrollment is None:
            raise NotFoundException("Enrollment not found")
        if enrollment.type in (EnrollmentTypeEnum.PAID, EnrollmentTypeEnum.ADMIN):
            raise AlreadyEntitledException("You already have full access to this program")
        if amount <= 0:
            raise NoPriceException("This program does not have a price set")

        order_ref = f"order_{enrollment.id}_{int(utc_now().timestamp() * 1000)}"
        gateway_order = await self.gateway.create_order(
            order_ref=order_ref,
            amount=amount,
            currency=currency,
            buyer=buyer,
            return_url=(
                f"{self.settings.frontend_url}/programs/{enrollment.program_id}?payment=success"
            ),
            callback_url=f"{self.settings.backend_url}{self.settings.api_prefix}/payments/webhook",
        )

        discarded = await self.repository.delete_pending_orders(enrollment.id)
        if discarded:
            logger.info("Discarded %s abandoned pending order(s) for enrollment %s", discarded, enrollment.id)

        order = await self.repository.create_order(
            learner_id=enrollment.learner_id,
            enrollment_id=enrollment.id,
            program_id=enrollment.program_id,
            gateway_order_id=gateway_order.gateway_order_id,
            amount=amount,
            currency=currency,
            gateway_metadata={"gateway_internal_id": gateway_order.gateway_internal_id},
        )
        await self.audit_repository.create_audit_log(
            actor_id=enrollment.learner_id,
            action="payments.order.create",
            entity_type="order",
            entity_id=str(order.id),
            payload={
                "gateway_order_id": order.gateway_order_id,
                "enrollment_id": str(enrollment.id),
                "amount": str(order.amount),
                "currency": order.currency,
                "discarded_pending": discarded,
            },
        )
        return PurchaseSessionRead(
            session_id=gateway_order.client_session_token,
            order_id=order.gateway_order_id,
            order_amount=order.amount,
            order_currency=order.currency,
            gateway_env=self.gateway.environment,
        )

    async def verify_payment(self, gateway_order_id: str, actor: User) -> PaymentVerificationRead:
        """Poll the gateway for an order owned by the learner and reconcile the outcome."""
        order = await self.repository.get_order_by_gateway_order_id(gateway_order_id)
        if order is None:
            raise NotFoundException("Payment not found")
        if order.learner_id != actor.id:
            raise UnauthorizedException("Payment does not belong to current learner")

        if order.status == OrderStatusEnum.SUCCESS:
            return PaymentVerificationRead(
                status=OrderStatusEnum.SUCCESS,
                message="Payment already verified",
            )
        if order.status == OrderStatusEnum.FAILED:
            return PaymentVerificationRead(
                status=OrderStatusEnum.FAILED,
                message=order.failure_reason or DEFAULT_FAILURE_REASON,
            )

        attempts = await self.gateway.query_order_status(gateway_order_id)
        attempt = select_decisive_attempt(attempts)
        if attempt is None:
            return PaymentVerificationRead(
                status=OrderStatusEnum.PENDING,
                message="Payment is still being processed",
            )

        if attempt.attempt_status == GatewayAttemptStatusEnum.SUCCESS:
            result = await self.reconciliation.reconcile_success(
                order,
                attempt.paid_amount if attempt.paid_amount is not None else order.amount,
                attempt.gateway_payment_id,
                attempt.method_label,
                channel=POLL_CHANNEL,
            )
        else:
            result = await self.reconciliation.reconcile_failure(
                order,
                attempt.failure_message or DEFAULT_FAILURE_REASON,
                channel=POLL_CHANNEL,
            )
        return self._verification_from_result(result)

    async def handle_callback(
        self,
        timestamp: str | None,
        raw_body: bytes,
        signature: str | None,
    ) -> int:
        """Process a gateway callback; return the HTTP status to acknowledge with.

        Anything past authentication is acknowledged with 200, since retries
        are already safe to replay.
        """
        if not timestamp or not signature:
            record_webhook_delivery("missing_headers")
            return 400
        if not self.gateway.verify_callback_authenticity(timestamp, raw_body, signature):
            logger.warning("Rejected payment callback with invalid signature")
            record_webhook_delivery("invalid_signature")
            return 401

        try:
            outcome = await self._process_callback(raw_body)
        except Exception:
            logger.exception("Payment callback processing failed")
            outcome = "error"
        record_webhook_delivery(outcome)
        return 200

    async def _process_callback(self, raw_body: bytes) -> str:
        callback = self.gateway.parse_callback(raw_body)
        if callback is None:
            logger.warning("Ignoring malformed payment callback")
            return "malformed"

        order = await self.repository.get_order_by_gateway_order_id(callback.gateway_order_id)
        if order is None:
            logger.info("Ignoring callback for unknown order %s", callback.gateway_order_id)
            return "unknown_order"

        if order.status == OrderStatusEnum.SUCCESS:
            return "duplicate"

        attempt = callback.attempt
        if attempt is None:
            return "ignored"

        if attempt.attempt_status == GatewayAttemptStatusEnum.SUCCESS:
            result = await self.reconciliation.reconcile_success(
                order,
                callback.claimed_amount,
                attempt.gateway_payment_id,
                attempt.method_label,
                channel=CALLBACK_CHANNEL,
            )
            return "succeeded" if result.transitioned else "no_transition"

        if attempt.attempt_status == GatewayAttemptStatusEnum.FAILED:
            await self.reconciliation.reconcile_failure(
                order,
                attempt.failure_message or DEFAULT_FAILURE_REASON,
                channel=CALLBACK_CHANNEL,
            )
            return "failed"
        return "ignored"

    async def list_learner_orders(
        self,
        actor: User,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        """List purchase history of current learner."""
        return await self.repository.list_orders_by_learner(actor.id, limit=limit, offset=offset)

    @staticmethod
    def _verification_from_result(result: ReconciliationResult) -> PaymentVerificationRead:
        if result.status == OrderStatusEnum.SUCCESS:
            message = "Payment verified successfully" if result.transitioned else "Payment already verified"
            return PaymentVerificationRead(status=OrderStatusEnum.SUCCESS, message=message)
        if result.status == OrderStatusEnum.FAILED:
            return PaymentVerificationRead(
                status=OrderStatusEnum.FAILED,
                message=result.failure_reason or DEFAULT_FAILURE_REASON,
            )
        return PaymentVerificationRead(
            status=OrderStatusEnum.PENDING,
            message="Payment is still being processed",
        )


async def get_payments_service(
    session: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentsService:
    """Dependency provider for payments service."""
    return PaymentsService(
        repository=PaymentsRepository(session),
        programs_repository=ProgramsRepository(session),
        audit_repository=AuditRepository(session),
        gateway=gateway,
        reconciliation=ReconciliationService(dispatcher=get_side_effect_dispatcher()),
        settings=get_settings(),
    )
