"""
FastAPI authentication + authorization helpers.

This centralizes:
- Bearer token -> ``AuthSession`` dependency
- Standard role-based route guards (dependencies)
"""

from __future__ import annotations

from typing import Optional, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from activity_engine.core.models import UserRole
from activity_engine.core.roles import has_role
from activity_engine.core.services.auth import (
    AuthSession,
    SessionProvider,
    get_session_provider,
)

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    provider: SessionProvider = Depends(get_session_provider),
) -> AuthSession:
    session = provider.current_session(credentials.credentials) if credentials else None
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


RoleInput = Union[UserRole, str]


def require_roles(*roles: RoleInput):
    """
    Dependency factory that enforces role membership and returns the session.

    Usage:
        actor: AuthSession = Depends(require_roles(UserRole.TEACHER, UserRole.ADMIN))
    """

    def _dep(actor: AuthSession = Depends(get_current_session)) -> AuthSession:
        if not has_role(actor, *roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized"
            )
        return actor

    return _dep


def require_staff(
    actor: AuthSession = Depends(require_roles(UserRole.ADMIN, UserRole.SYSTEM))
) -> AuthSession:
    return actor


def require_classroom_manager(
    actor: AuthSession = Depends(
        require_roles(UserRole.TEACHER, UserRole.ADMIN, UserRole.SYSTEM)
    )
) -> AuthSession:
    return actor
