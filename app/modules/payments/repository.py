"""Order ledger repository layer."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.enums import OrderStatusEnum
from app.modules.payments.models import Order


class PaymentsRepository:
    """DB access methods for purchase orders."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def delete_pending_orders(self, enrollment_id: UUID) -> int:
        stmt = delete(Order).where(
            Order.enrollment_id == enrollment_id,
            Order.status == OrderStatusEnum.PENDING,
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    async def create_order(
        self,
        learner_id: UUID,
        enrollment_id: UUID,
        program_id: UUID,
        gateway_order_id: str,
        amount: Decimal,
        currency: str,
        gateway_metadata: dict,
    ) -> Order:
        order = Order(
            learner_id=learner_id,
            enrollment_id=enrollment_id,
            program_id=program_id,
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency.upper(),
            status=OrderStatusEnum.PENDING,
            gateway_metadata=gateway_metadata,
        )
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order_by_gateway_order_id(self, gateway_order_id: str) -> Order | None:
        stmt = (
            select(Order)
            .options(selectinload(Order.learner), selectinload(Order.program))
            .where(Order.gateway_order_id == gateway_order_id)
        )
        return await self.session.scalar(stmt)

    async def get_order_for_update(self, order_id: UUID) -> Order | None:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def mark_order_succeeded(
        self,
        order: Order,
        gateway_payment_id: str | None,
        payment_method: str | None,
    ) -> Order:
        order.status = OrderStatusEnum.SUCCESS
        order.gateway_payment_id = gateway_payment_id
        order.payment_method = payment_method
        await self.session.flush()
        return order

    async def mark_order_failed(self, order: Order, reason: str) -> Order:
        order.status = OrderStatusEnum.FAILED
        order.failure_reason = reason
        await self.session.flush()
        return order

    async def list_orders_by_learner(
        self,
        learner_id: UUID,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        base_stmt: Select[tuple[Order]] = select(Order).where(Order.learner_id == learner_id)
        count_stmt = select(func.count()).select_from(base_stmt.subquery())
        total = int((await self.session.scalar(count_stmt)) or 0)

        stmt = base_stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset)
        items = (await self.session.scalars(stmt)).all()
        return items, total
