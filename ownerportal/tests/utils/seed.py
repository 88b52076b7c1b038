from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from ownerportal.domain.models import Profile, UserAccessControl, UserRole


def new_user_id() -> str:
    return str(uuid4())


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def profile(user_id: str, email: str | None, *, at: datetime | None = None, **fields) -> Profile:
    stamp = at or datetime.now(timezone.utc)
    return Profile(user_id=user_id, email=email, created_at=stamp, updated_at=stamp, **fields)


def role(user_id: str, name: str) -> UserRole:
    return UserRole(user_id=user_id, role=name)


def access(user_id: str, **fields) -> UserAccessControl:
    values = {
        "account_status": "active",
        "purchase_state": "trial",
        "subscription_plan": "free",
        "ai_features_enabled": True,
        "metadata_json": {},
    }
    values.update(fields)
    return UserAccessControl(user_id=user_id, **values)
