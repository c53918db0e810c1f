"""Program and enrollment repository layer."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import EnrollmentTypeEnum
from app.modules.programs.models import Enrollment, Program


class ProgramsRepository:
    """DB access methods for programs and enrollments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_program_by_id(self, program_id: UUID) -> Program | None:
        stmt = select(Program).where(Program.id == program_id)
        return await self.session.scalar(stmt)

    async def get_enrollment(self, learner_id: UUID, program_id: UUID) -> Enrollment | None:
        stmt = select(Enrollment).where(
            Enrollment.learner_id == learner_id,
            Enrollment.program_id == program_id,
        )
        return await self.session.scalar(stmt)

    async def get_enrollment_by_id(self, enrollment_id: UUID) -> Enrollment | None:
        stmt = select(Enrollment).where(Enrollment.id == enrollment_id)
        return await self.session.scalar(stmt)

    async def get_enrollment_for_update(self, enrollment_id: UUID) -> Enrollment | None:
        stmt = select(Enrollment).where(Enrollment.id == enrollment_id).with_for_update()
        return await self.session.scalar(stmt)

    async def grant_paid_entitlement(self, enrollment: Enrollment, paid_at: datetime) -> Enrollment:
        enrollment.type = EnrollmentTypeEnum.PAID
        enrollment.paid_at = paid_at
        await self.session.flush()
        return enrollment
