"""Program and enrollment ORM models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base, BaseModelMixin, enum_values
from app.core.enums import EnrollmentTypeEnum
from app.modules.identity.models import User


class Program(BaseModelMixin, Base):
    """Purchasable learning program."""

    __tablename__ = "programs"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)


class Enrollment(BaseModelMixin, Base):
    """Learner relationship to a program; one row per (learner, program)."""

    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("learner_id", "program_id", name="uq_enrollments_learner_program"),)

    learner_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    program_id: Mapped[UUID] = mapped_column(
        ForeignKey("programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[EnrollmentTypeEnum] = mapped_column(
        SAEnum(
            EnrollmentTypeEnum,
            name="enrollment_type_enum",
            native_enum=False,
            values_callable=enum_values,
        ),
        default=EnrollmentTypeEnum.FREE,
        nullable=False,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    learner: Mapped[User] = relationship()
    program: Mapped[Program] = relationship()
