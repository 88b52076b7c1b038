from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ownerportal.domain.models import Base


async def create_schema(engine: AsyncEngine, *, skip: Iterable[str] = ()) -> None:
    # Create every table except the skipped ones, to mimic a half-migrated database.
    skipped = set(skip)
    tables = [table for name, table in Base.metadata.tables.items() if name not in skipped]
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables))


async def add_rows(session_factory: async_sessionmaker[AsyncSession], *rows: Any) -> None:
    async with session_factory() as session:
        session.add_all(list(rows))
        await session.commit()
