from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.models import (
    Conversation,
    CoverLetter,
    Message,
    Profile,
    Resume,
    TrackedJob,
    UserDocument,
)
from ownerportal.domain.records import ActivityRow, ConversationOwner, MessageRow, as_utc


# Per-feature usage tables keyed by the counter they feed.
FEATURE_MODELS = {
    "conversations": Conversation,
    "resumes": Resume,
    "tracked_jobs": TrackedJob,
    "cover_letters": CoverLetter,
    "documents": UserDocument,
}

COUNTED_MODELS = {
    "profiles": Profile,
    **FEATURE_MODELS,
    "messages": Message,
}


async def list_feature_rows(session: AsyncSession, feature: str, *, since: datetime) -> list[ActivityRow]:
    model = FEATURE_MODELS[feature]
    columns = [model.user_id, model.updated_at]
    if model is TrackedJob:
        columns.append(TrackedJob.status)
    result = await session.execute(select(*columns).where(model.updated_at >= since))
    rows: list[ActivityRow] = []
    for row in result.all():
        status = row[2] if len(row) > 2 else None
        rows.append(ActivityRow(user_id=row[0], updated_at=as_utc(row[1]), status=status))
    return rows


async def list_conversation_owners(session: AsyncSession) -> list[ConversationOwner]:
    result = await session.execute(select(Conversation.id, Conversation.user_id))
    return [ConversationOwner(conversation_id=cid, user_id=uid) for cid, uid in result.all()]


async def list_message_sample(session: AsyncSession, *, since: datetime, limit: int) -> list[MessageRow]:
    # Newest first so the sample keeps the most recent traffic when capped.
    result = await session.execute(
        select(Message.conversation_id, Message.role, Message.content, Message.created_at)
        .where(Message.created_at >= since)
        .order_by(Message.created_at.desc(), Message.id)
        .limit(max(0, limit))
    )
    return [
        MessageRow(conversation_id=cid, role=role, content=content or "", created_at=as_utc(created_at))
        for cid, role, content, created_at in result.all()
    ]


async def count_rows(session: AsyncSession, table: str) -> int:
    model = COUNTED_MODELS[table]
    result = await session.execute(select(func.count()).select_from(model))
    return int(result.scalar_one() or 0)
