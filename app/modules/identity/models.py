"""Identity ORM models."""

from __future__ import annotations

from sqlalchemy import Boolean, Enum as SAEnum, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, BaseModelMixin, enum_values
from app.core.enums import RoleEnum


class User(BaseModelMixin, Base):
    """Platform user model (owned by the auth service, read here)."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    mobile: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[RoleEnum] = mapped_column(
        SAEnum(
            RoleEnum,
            name="role_enum",
            native_enum=False,
            values_callable=enum_values,
        ),
        default=RoleEnum.LEARNER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
