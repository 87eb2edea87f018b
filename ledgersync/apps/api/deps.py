from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.core.config import get_settings
from ledgersync.persistence.db import SessionLocal


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return SessionLocal


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with session_factory() as session:
        yield session


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    """Gate operator endpoints behind the shared admin token when one is configured."""
    expected = get_settings().admin_api_token
    if not expected:
        return
    token = _parse_bearer_token(authorization)
    if token is None or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Missing or invalid admin token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
