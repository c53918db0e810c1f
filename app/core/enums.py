"""Core enums used across modules."""

from enum import StrEnum


class RoleEnum(StrEnum):
    """System roles."""

    LEARNER = "learner"
    ADMIN = "admin"


class EnrollmentTypeEnum(StrEnum):
    """Learner access level for a program."""

    FREE = "free"
    PAID = "paid"
    ADMIN = "admin"


class OrderStatusEnum(StrEnum):
    """Purchase attempt lifecycle status. SUCCESS and FAILED are terminal."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class GatewayAttemptStatusEnum(StrEnum):
    """Payment attempt status as reported by the gateway."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"
    USER_DROPPED = "USER_DROPPED"
    VOID = "VOID"
    CANCELLED = "CANCELLED"
