from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.models import Profile
from ownerportal.domain.records import ProfileRow, SignupRow, as_utc


def _to_row(profile: Profile) -> ProfileRow:
    return ProfileRow(
        user_id=profile.user_id,
        email=profile.email,
        full_name=profile.full_name,
        location=profile.location,
        target_role=profile.target_role,
        onboarding_completed=bool(profile.onboarding_completed),
        created_at=as_utc(profile.created_at),
        updated_at=as_utc(profile.updated_at),
    )


async def list_profiles(session: AsyncSession) -> list[ProfileRow]:
    result = await session.execute(select(Profile).order_by(Profile.user_id))
    return [_to_row(profile) for profile in result.scalars().all()]


async def get_profile(session: AsyncSession, user_id: str) -> ProfileRow | None:
    result = await session.execute(select(Profile).where(Profile.user_id == user_id))
    profile = result.scalar_one_or_none()
    return _to_row(profile) if profile is not None else None


async def find_profiles_by_emails(session: AsyncSession, emails: list[str]) -> list[ProfileRow]:
    # Owner lookup; emails are compared lower-cased.
    if not emails:
        return []
    result = await session.execute(select(Profile).where(func.lower(Profile.email).in_(emails)))
    return [_to_row(profile) for profile in result.scalars().all()]


async def list_recent_signups(session: AsyncSession, *, since: datetime) -> list[SignupRow]:
    result = await session.execute(
        select(Profile.user_id, Profile.created_at).where(Profile.created_at >= since)
    )
    return [SignupRow(user_id=user_id, created_at=as_utc(created_at)) for user_id, created_at in result.all()]
