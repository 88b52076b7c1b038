from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.models import AdminAuditLog


async def list_actions(
    session: AsyncSession,
    *,
    resource_id: str | None = None,
    action: str | None = None,
    limit: int = 50,
) -> list[AdminAuditLog]:
    stmt = select(AdminAuditLog)
    if resource_id:
        stmt = stmt.where(AdminAuditLog.resource_id == resource_id)
    if action:
        stmt = stmt.where(AdminAuditLog.action == action)
    stmt = stmt.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
