"""Initial schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 12:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


role_enum = sa.Enum("learner", "admin", name="role_enum", native_enum=False)
enrollment_type_enum = sa.Enum("free", "paid", "admin", name="enrollment_type_enum", native_enum=False)
order_status_enum = sa.Enum("pending", "success", "failed", name="order_status_enum", native_enum=False)


def _id_col() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False)


def _created_col() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def _updated_col() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        _id_col(),
        _created_col(),
        _updated_col(),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("mobile", sa.String(length=32), nullable=True),
        sa.Column("role", role_enum, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "programs",
        _id_col(),
        _created_col(),
        _updated_col(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
    )

    op.create_table(
        "enrollments",
        _id_col(),
        _created_col(),
        _updated_col(),
        sa.Column("learner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("program_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("type", enrollment_type_enum, nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["learner_id"], ["users.id"], name="fk_enrollments_learner_id_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["program_id"], ["programs.id"], name="fk_enrollments_program_id_programs", ondelete="CASCADE"),
        sa.UniqueConstraint("learner_id", "program_id", name="uq_enrollments_learner_program"),
    )
    op.create_index("ix_enrollments_learner_id", "enrollments", ["learner_id"], unique=False)
    op.create_index("ix_enrollments_program_id", "enrollments", ["program_id"], unique=False)

    op.create_table(
        "orders",
        _id_col(),
        _created_col(),
        _updated_col(),
        sa.Column("learner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("program_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("gateway_order_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", order_status_enum, nullable=False),
        sa.Column("gateway_payment_id", sa.String(length=128), nullable=True),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(["learner_id"], ["users.id"], name="fk_orders_learner_id_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], name="fk_orders_enrollment_id_enrollments", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["program_id"], ["programs.id"], name="fk_orders_program_id_programs", ondelete="CASCADE"),
        sa.UniqueConstraint("gateway_order_id", name="uq_orders_gateway_order_id"),
    )
    op.create_index("ix_orders_learner_id", "orders", ["learner_id"], unique=False)
    op.create_index("ix_orders_enrollment_id", "orders", ["enrollment_id"], unique=False)
    op.create_index("ix_orders_status", "orders", ["status"], unique=False)

    op.create_table(
        "audit_logs",
        _id_col(),
        _created_col(),
        _updated_col(),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], name="fk_audit_logs_actor_id_users", ondelete="SET NULL"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_enrollment_id", table_name="orders")
    op.drop_index("ix_orders_learner_id", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_enrollments_program_id", table_name="enrollments")
    op.drop_index("ix_enrollments_learner_id", table_name="enrollments")
    op.drop_table("enrollments")

    op.drop_table("programs")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
