from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.domain.models import Connection


async def get_connection(session: AsyncSession, connection_id: str, *, reload: bool = False) -> Connection | None:
    stmt = select(Connection).where(Connection.id == connection_id)
    if reload:
        # Bypass the identity map so writes from other sessions are observed.
        stmt = stmt.execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_connection(
    session: AsyncSession, *, user_id: str, provider: str, tenant_id: str
) -> Connection | None:
    result = await session.execute(
        select(Connection).where(
            Connection.user_id == user_id,
            Connection.provider == provider,
            Connection.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def list_user_connections(
    session: AsyncSession, *, user_id: str, provider: str | None = None
) -> list[Connection]:
    stmt = select(Connection).where(Connection.user_id == user_id)
    if provider is not None:
        stmt = stmt.where(Connection.provider == provider)
    stmt = stmt.order_by(Connection.is_primary.desc(), Connection.created_at.asc())
    return list((await session.execute(stmt)).scalars().all())


async def resolve_user_connection(
    session: AsyncSession, *, user_id: str, tenant_id: str | None = None
) -> Connection | None:
    # Without a tenant, prefer the primary active connection, then the most recently touched one.
    stmt = select(Connection).where(Connection.user_id == user_id, Connection.is_active.is_(True))
    if tenant_id is not None:
        stmt = stmt.where(Connection.tenant_id == tenant_id)
    stmt = stmt.order_by(Connection.is_primary.desc(), Connection.updated_at.desc()).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_active_for_tenant(session: AsyncSession, *, provider: str, tenant_id: str) -> Connection | None:
    # Several users may link the same organisation; any active link can fetch on its behalf.
    stmt = (
        select(Connection)
        .where(
            Connection.provider == provider,
            Connection.tenant_id == tenant_id,
            Connection.is_active.is_(True),
            Connection.status != "error",
        )
        .order_by(Connection.is_primary.desc(), Connection.last_api_call_at.desc().nulls_last())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_active_connections(session: AsyncSession, *, provider: str | None = None) -> list[Connection]:
    stmt = select(Connection).where(Connection.is_active.is_(True), Connection.status == "active")
    if provider is not None:
        stmt = stmt.where(Connection.provider == provider)
    return list((await session.execute(stmt.order_by(Connection.created_at.asc()))).scalars().all())


async def list_expiring_connections(session: AsyncSession, *, before: datetime) -> list[Connection]:
    stmt = (
        select(Connection)
        .where(
            Connection.is_active.is_(True),
            Connection.status == "active",
            Connection.expires_at <= before,
        )
        .order_by(Connection.expires_at.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_cleanup_candidates(
    session: AsyncSession, *, unused_before: datetime, error_before: datetime
) -> list[Connection]:
    stmt = select(Connection).where(
        Connection.is_active.is_(True),
        or_(
            and_(Connection.last_api_call_at.is_(None), Connection.created_at < unused_before),
            Connection.last_api_call_at < unused_before,
            and_(Connection.status == "error", Connection.updated_at < error_before),
        ),
    )
    return list((await session.execute(stmt)).scalars().all())


async def deactivate_siblings(
    session: AsyncSession, *, user_id: str, provider: str, keep_id: str | None, now: datetime
) -> int:
    stmt = update(Connection).where(
        Connection.user_id == user_id,
        Connection.provider == provider,
        Connection.is_active.is_(True),
    )
    if keep_id is not None:
        stmt = stmt.where(Connection.id != keep_id)
    result = await session.execute(
        stmt.values(is_active=False, is_primary=False, status="inactive", updated_at=now).execution_options(
            synchronize_session=False
        )
    )
    return int(result.rowcount or 0)


async def clear_primary(session: AsyncSession, *, user_id: str, now: datetime, keep_id: str | None = None) -> None:
    # The kept row is skipped so its in-memory flag still matches the database.
    stmt = update(Connection).where(Connection.user_id == user_id, Connection.is_primary.is_(True))
    if keep_id is not None:
        stmt = stmt.where(Connection.id != keep_id)
    await session.execute(
        stmt.values(is_primary=False, updated_at=now).execution_options(synchronize_session=False)
    )


async def claim_refresh_lease(
    session: AsyncSession, *, connection_id: str, owner: str, now: datetime, ttl_seconds: int
) -> bool:
    # Conditional update: only one caller can move the lease from free (or expired) to owned.
    result = await session.execute(
        update(Connection)
        .where(
            Connection.id == connection_id,
            or_(
                Connection.refresh_lease_expires_at.is_(None),
                Connection.refresh_lease_expires_at < now,
            ),
        )
        .values(
            refresh_lease_owner=owner,
            refresh_lease_expires_at=now + timedelta(seconds=ttl_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def release_refresh_lease(session: AsyncSession, *, connection_id: str, owner: str) -> None:
    await session.execute(
        update(Connection)
        .where(Connection.id == connection_id, Connection.refresh_lease_owner == owner)
        .values(refresh_lease_owner=None, refresh_lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )


async def renew_refresh_lease(
    session: AsyncSession, *, connection_id: str, owner: str, now: datetime, ttl_seconds: int
) -> bool:
    result = await session.execute(
        update(Connection)
        .where(Connection.id == connection_id, Connection.refresh_lease_owner == owner)
        .values(refresh_lease_expires_at=now + timedelta(seconds=ttl_seconds))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0) == 1


async def store_refreshed_tokens(
    session: AsyncSession, *, connection_id: str, owner: str, values: dict[str, Any]
) -> bool:
    """Write rotated credentials only while ``owner`` still holds the refresh lease.

    Returns False when the lease was lost; the caller must not treat its grant as stored.
    """
    result = await session.execute(
        update(Connection)
        .where(Connection.id == connection_id, Connection.refresh_lease_owner == owner)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1
