"""Identity business logic layer."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db_session
from app.core.enums import RoleEnum
from app.core.security import bearer_scheme, decode_token
from app.modules.identity.models import User
from app.modules.identity.repository import IdentityRepository
from app.shared.exceptions import UnauthorizedException


class IdentityService:
    """Resolve platform users from access tokens."""

    def __init__(self, repository: IdentityRepository) -> None:
        self.repository = repository

    async def get_user_from_access_token(self, token: str) -> User:
        """Resolve user from access token."""
        payload = decode_token(token)
        if payload.get("type") != "access":
            raise UnauthorizedException("Invalid access token")

        subject = payload.get("sub")
        if not subject:
            raise UnauthorizedException("Token subject is missing")

        try:
            user_id = UUID(str(subject))
        except ValueError as exc:
            raise UnauthorizedException("Token subject is malformed") from exc

        user = await self.repository.get_user_by_id(user_id)
        if user is None:
            raise UnauthorizedException("User not found")
        if not user.is_active:
            raise UnauthorizedException("User is inactive")

        return user


async def get_identity_service(session: AsyncSession = Depends(get_db_session)) -> IdentityService:
    """Dependency to provide identity service."""
    return IdentityService(IdentityRepository(session))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    service: IdentityService = Depends(get_identity_service),
) -> User:
    """Resolve currently authenticated user from bearer token."""
    return await service.get_user_from_access_token(credentials.credentials)


def require_roles(*roles: RoleEnum):
    """Dependency factory for role-based access."""

    async def _checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise UnauthorizedException("Operation not permitted for your role")
        return current_user

    return _checker
