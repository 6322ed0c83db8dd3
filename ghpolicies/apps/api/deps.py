from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.persistence.db import get_session
from ghpolicies.services.authorization import AuthorizationService
from ghpolicies.services.runtime import get_authorization_service


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_authorization() -> AuthorizationService:
    return get_authorization_service()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_team_member(
    authorization: str | None = Header(default=None),
    authz: AuthorizationService = Depends(get_authorization),
) -> str:
    """Require a GitHub user token whose owner belongs to the authorized team."""
    token = _parse_bearer_token(authorization)
    if not token:
        raise _auth_error("Missing GitHub user token")
    if not await authz.is_user_authorized(token):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "User is not a member of the authorized team"},
        )
    return token
