from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.models import UserAccessControl
from ownerportal.domain.records import AccessRow, as_utc


def to_access_row(record: UserAccessControl) -> AccessRow:
    return AccessRow(
        user_id=record.user_id,
        account_status=record.account_status,
        purchase_state=record.purchase_state,
        subscription_plan=record.subscription_plan,
        ai_features_enabled=bool(record.ai_features_enabled),
        blocked_reason=record.blocked_reason,
        blocked_until=as_utc(record.blocked_until),
    )


async def get_access_control(session: AsyncSession, user_id: str) -> UserAccessControl | None:
    result = await session.execute(
        select(UserAccessControl).where(UserAccessControl.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def list_access_controls(session: AsyncSession) -> list[AccessRow]:
    result = await session.execute(select(UserAccessControl))
    return [to_access_row(record) for record in result.scalars().all()]
