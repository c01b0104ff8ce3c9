"""
FastAPI Dependencies for Authentication and Integration Services

Provides dependency injection for:
- Current authenticated user (from the session bearer token)
- Connection lifecycle manager bound to the request's session
"""

from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.database import get_session
from app.core.security import decode_session_token, SessionTokenError
from app.models.user import User
from app.services.integration_store import IntegrationStore
from app.services.connections import ConnectionManager
from app.services.audit import audit_notifier


http_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    session: AsyncSession = Depends(get_session),
) -> User:
    """
    Get current user from the session token.

    Flow:
    1. Extract token from Authorization header
    2. Verify the token signature and expiry
    3. Find the user by email claim, falling back to the subject

    Raises:
        HTTPException: 401 if the token is missing or invalid, 404 if no user matches
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        principal = decode_session_token(credentials.credentials)
    except SessionTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    if principal.email:
        query = select(User).where(User.email == principal.email)
    else:
        query = select(User).where(User.id == principal.subject)
    result = await session.execute(query)
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    return user


def get_connection_manager(session: AsyncSession = Depends(get_session)) -> ConnectionManager:
    return ConnectionManager(IntegrationStore(session), audit=audit_notifier)
