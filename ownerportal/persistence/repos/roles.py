from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.models import UserRole
from ownerportal.domain.records import RoleRow


async def list_roles(session: AsyncSession) -> list[RoleRow]:
    result = await session.execute(select(UserRole.user_id, UserRole.role))
    return [RoleRow(user_id=user_id, role=role) for user_id, role in result.all()]


async def list_roles_for_user(session: AsyncSession, user_id: str) -> set[str]:
    result = await session.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    return set(result.scalars().all())


async def ensure_role(session: AsyncSession, *, user_id: str, role: str) -> bool:
    # Insert the (user_id, role) row unless present; returns True when inserted.
    existing = await session.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role)
    )
    if existing.scalar_one_or_none() is not None:
        return False
    session.add(UserRole(user_id=user_id, role=role))
    await session.flush()
    return True


async def remove_elevated_roles(session: AsyncSession, *, user_id: str) -> int:
    result = await session.execute(
        delete(UserRole).where(UserRole.user_id == user_id, UserRole.role != "user")
    )
    return int(result.rowcount or 0)
