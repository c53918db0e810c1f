"""Payment-to-entitlement reconciliation.

Both confirmation channels (learner poll and gateway callback) funnel into
``ReconciliationService``. The PENDING -> SUCCESS transition commits at most
once per order: the status read by the caller is only a shortcut, the
decision is taken on a row re-read under ``SELECT ... FOR UPDATE`` inside a
dedicated transaction. Only the caller that commits the transition receives
``transitioned=True`` and dispatches side effects.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.core.database import transaction_scope
from app.core.enums import OrderStatusEnum
from app.core.metrics import record_amount_mismatch, record_reconciliation
from app.modules.audit.repository import AuditRepository
from app.modules.payments.models import Order
from app.modules.payments.repository import PaymentsRepository
from app.modules.payments.side_effects import PaymentSideEffectDispatcher, PurchaseConfirmation
from app.modules.programs.repository import ProgramsRepository
from app.shared.exceptions import NotFoundException
from app.shared.utils import utc_now

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
AMOUNT_MISMATCH_REASON = "Amount mismatch"


@dataclass(slots=True)
class LedgerUnit:
    """Repositories bound to one reconciliation transaction."""

    payments: PaymentsRepository
    programs: ProgramsRepository
    audit: AuditRepository


@asynccontextmanager
async def ledger_transaction() -> AsyncIterator[LedgerUnit]:
    """Open a dedicated transaction; commit on clean exit, roll back on error."""
    async with transaction_scope() as session:
        yield LedgerUnit(
            payments=PaymentsRepository(session),
            programs=ProgramsRepository(session),
            audit=AuditRepository(session),
        )


LedgerTransactionFactory = Callable[[], AbstractAsyncContextManager[LedgerUnit]]


@dataclass(slots=True, frozen=True)
class ReconciliationResult:
    transitioned: bool
    status: OrderStatusEnum
    failure_reason: str | None = None


def amounts_match(claimed_amount: Decimal | None, expected_amount: Decimal) -> bool:
    if claimed_amount is None:
        return False
    return abs(Decimal(claimed_amount) - Decimal(expected_amount)) <= AMOUNT_TOLERANCE


class ReconciliationService:
    """Apply gateway outcomes to the order ledger and learner entitlement."""

    def __init__(
        self,
        dispatcher: PaymentSideEffectDispatcher | None,
        *,
        transaction_factory: LedgerTransactionFactory = ledger_transaction,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dispatcher = dispatcher
        self.transaction_factory = transaction_factory
        self.now_provider = now_provider

    async def reconcile_success(
        self,
        order: Order,
        claimed_amount: Decimal | None,
        gateway_payment_id: str | None,
        method_label: str | None,
        *,
        channel: str,
    ) -> ReconciliationResult:
        """Upgrade the enrollment for a confirmed payment, exactly once per order."""
        if order.status == OrderStatusEnum.SUCCESS:
            record_reconciliation(channel, "duplicate")
            return ReconciliationResult(transitioned=False, status=OrderStatusEnum.SUCCESS)

        if order.status == OrderStatusEnum.FAILED:
            logger.warning(
                "Success signal for order %s ignored: order already failed (%s) [channel=%s]",
                order.gateway_order_id,
                order.failure_reason,
                channel,
            )
            record_reconciliation(channel, "ignored_terminal")
            return ReconciliationResult(
                transitioned=False,
                status=OrderStatusEnum.FAILED,
                failure_reason=order.failure_reason,
            )

        if not amounts_match(claimed_amount, order.amount):
            logger.error(
                "Amount mismatch for order %s: expected %s %s, got %s [channel=%s]",
                order.gateway_order_id,
                order.amount,
                order.currency,
                claimed_amount,
                channel,
            )
            record_amount_mismatch(channel)
            return await self.reconcile_failure(
                order,
                AMOUNT_MISMATCH_REASON,
                channel=channel,
                audit_details={
                    "expected_amount": str(order.amount),
                    "claimed_amount": str(claimed_amount) if claimed_amount is not None else None,
                },
            )

        paid_at = self.now_provider()
        async with self.transaction_factory() as ledger:
            current = await ledger.payments.get_order_for_update(order.id)
            if current is None:
                logger.error(
                    "Order %s disappeared before reconciliation [channel=%s]",
                    order.gateway_order_id,
                    channel,
                )
                record_reconciliation(channel, "missing")
                return ReconciliationResult(transitioned=False, status=order.status)

            if current.status != OrderStatusEnum.PENDING:
                record_reconciliation(channel, "lost_race")
                return ReconciliationResult(
                    transitioned=False,
                    status=current.status,
                    failure_reason=current.failure_reason,
                )

            enrollment = await ledger.programs.get_enrollment_for_update(current.enrollment_id)
            if enrollment is None:
                raise NotFoundException("Enrollment not found")

            await ledger.payments.mark_order_succeeded(current, gateway_payment_id, method_label)
            await ledger.programs.grant_paid_entitlement(enrollment, paid_at)
            await ledger.audit.create_audit_log(
                actor_id=None,
                action="payments.order.succeeded",
                entity_type="order",
                entity_id=str(current.id),
                payload={
                    "gateway_order_id": current.gateway_order_id,
                    "gateway_payment_id": gateway_payment_id,
                    "enrollment_id": str(enrollment.id),
                    "amount": str(current.amount),
                    "currency": current.currency,
                    "channel": channel,
                    "paid_at": paid_at.isoformat(),
                },
            )

        logger.info(
            "Order %s reconciled as paid, enrollment %s upgraded [channel=%s]",
            order.gateway_order_id,
            order.enrollment_id,
            channel,
        )
        record_reconciliation(channel, "succeeded")

        if self.dispatcher is not None:
            try:
                await self.dispatcher.dispatch_purchase_confirmed(
                    PurchaseConfirmation.from_order(order),
                )
            except Exception:
                logger.exception("Side effects failed for order %s", order.gateway_order_id)
        return ReconciliationResult(transitioned=True, status=OrderStatusEnum.SUCCESS)

    async def reconcile_failure(
        self,
        order: Order,
        reason: str,
        *,
        channel: str,
        audit_details: dict | None = None,
    ) -> ReconciliationResult:
        """Mark a PENDING order as failed; terminal orders are left untouched."""
        if order.status != OrderStatusEnum.PENDING:
            return ReconciliationResult(
                transitioned=False,
                status=order.status,
                failure_reason=order.failure_reason,
            )

        async with self.transaction_factory() as ledger:
            current = await ledger.payments.get_order_for_update(order.id)
            if current is None:
                record_reconciliation(channel, "missing")
                return ReconciliationResult(transitioned=False, status=order.status)
            if current.status != OrderStatusEnum.PENDING:
                return ReconciliationResult(
                    transitioned=False,
                    status=current.status,
                    failure_reason=current.failure_reason,
                )

            await ledger.payments.mark_order_failed(current, reason)
            await ledger.audit.create_audit_log(
                actor_id=None,
                action="payments.order.failed",
                entity_type="order",
                entity_id=str(current.id),
                payload={
                    "gateway_order_id": current.gateway_order_id,
                    "reason": reason,
                    "channel": channel,
                    **(audit_details or {}),
                },
            )

        logger.info("Order %s marked failed: %s [channel=%s]", order.gateway_order_id, reason, channel)
        record_reconciliation(channel, "failed")
        return ReconciliationResult(
            transitioned=False,
            status=OrderStatusEnum.FAILED,
            failure_reason=reason,
        )
