from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ProfileRow:
    user_id: str
    email: str | None
    full_name: str | None
    location: str | None
    target_role: str | None
    onboarding_completed: bool
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True)
class RoleRow:
    user_id: str
    role: str


@dataclass(frozen=True)
class AccessRow:
    user_id: str
    account_status: str
    purchase_state: str
    subscription_plan: str
    ai_features_enabled: bool
    blocked_reason: str | None
    blocked_until: datetime | None


@dataclass(frozen=True)
class ActivityRow:
    # One row of a per-feature usage table; status only set for tracked jobs.
    user_id: str
    updated_at: datetime | None
    status: str | None = None


@dataclass(frozen=True)
class ConversationOwner:
    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class MessageRow:
    conversation_id: str
    role: str
    content: str
    created_at: datetime | None


@dataclass(frozen=True)
class SignupRow:
    user_id: str
    created_at: datetime | None


@dataclass(frozen=True)
class AnalyticsEvent:
    session_id: str
    event_name: str
    occurred_at: datetime
    user_id: str | None = None
    path: str | None = None
    referrer: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DirectoryUser:
    # Identity-provider view of a user.
    id: str
    email: str | None
    provider: str | None = None
    created_at: datetime | None = None
    last_sign_in_at: datetime | None = None
    email_confirmed_at: datetime | None = None
    banned_until: datetime | None = None
