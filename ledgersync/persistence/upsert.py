from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    # ON CONFLICT lives in dialect-specific insert constructs; pick the one matching the bind.
    dialect_name = getattr(getattr(session.get_bind(), "dialect", None), "name", "")
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        return pg_insert(table)
    from sqlalchemy.dialects.sqlite import insert as sqlite_insert

    return sqlite_insert(table)


async def insert_or_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    *,
    index_elements: list[str],
) -> bool:
    """Insert ``values`` unless the unique key already exists.

    Returns True when a new row was written.
    """
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return int(result.rowcount or 0) == 1


async def insert_or_update(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    *,
    index_elements: list[str],
    update_columns: list[str],
) -> None:
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={column: getattr(stmt.excluded, column) for column in update_columns},
    )
    await session.execute(stmt)
