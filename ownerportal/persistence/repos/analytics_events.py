from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.models import ProductAnalyticsEvent
from ownerportal.domain.records import AnalyticsEvent, as_utc


async def list_events(session: AsyncSession, *, since: datetime, limit: int) -> list[AnalyticsEvent]:
    result = await session.execute(
        select(ProductAnalyticsEvent)
        .where(ProductAnalyticsEvent.occurred_at >= since)
        .order_by(ProductAnalyticsEvent.occurred_at.desc(), ProductAnalyticsEvent.id)
        .limit(max(0, limit))
    )
    return [
        AnalyticsEvent(
            session_id=event.session_id,
            event_name=event.event_name,
            occurred_at=as_utc(event.occurred_at),
            user_id=event.user_id,
            path=event.path,
            referrer=event.referrer,
            properties=dict(event.properties or {}),
        )
        for event in result.scalars().all()
    ]
