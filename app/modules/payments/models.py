"""Payment order (ledger) ORM models."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Enum as SAEnum, ForeignKey, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base, BaseModelMixin, enum_values
from app.core.enums import OrderStatusEnum
from app.modules.identity.models import User
from app.modules.programs.models import Enrollment, Program


class Order(BaseModelMixin, Base):
    """One purchase attempt against the payment gateway."""

    __tablename__ = "orders"

    learner_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    enrollment_id: Mapped[UUID] = mapped_column(
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    program_id: Mapped[UUID] = mapped_column(
        ForeignKey("programs.id", ondelete="CASCADE"),
        nullable=False,
    )
    gateway_order_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    status: Mapped[OrderStatusEnum] = mapped_column(
        SAEnum(
            OrderStatusEnum,
            name="order_status_enum",
            native_enum=False,
            values_callable=enum_values,
        ),
        default=OrderStatusEnum.PENDING,
        nullable=False,
        index=True,
    )
    gateway_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict, nullable=False)

    learner: Mapped[User] = relationship()
    enrollment: Mapped[Enrollment] = relationship()
    program: Mapped[Program] = relationship()
