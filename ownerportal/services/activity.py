from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ownerportal.core.errors import OwnerPortalError
from ownerportal.domain.records import (
    EPOCH,
    AccessRow,
    ActivityRow,
    ConversationOwner,
    DirectoryUser,
    MessageRow,
    ProfileRow,
    RoleRow,
    SignupRow,
)
from ownerportal.persistence.guards import is_missing_relation
from ownerportal.persistence.repos.access_controls import list_access_controls
from ownerportal.persistence.repos.activity import (
    COUNTED_MODELS,
    FEATURE_MODELS,
    count_rows,
    list_conversation_owners,
    list_feature_rows,
    list_message_sample,
)
from ownerportal.persistence.repos.profiles import list_profiles, list_recent_signups
from ownerportal.persistence.repos.roles import list_roles
from ownerportal.services.access_gate import (
    DEFAULT_ACCOUNT_STATUS,
    DEFAULT_PURCHASE_STATE,
    DEFAULT_SUBSCRIPTION_PLAN,
)
from ownerportal.services.costs.estimator import CostRates, approx_tokens, estimate_user_cost, usd
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.services.timeseries import build_day_points, utc_day


logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_PRIORITY = {"admin": 3, "moderator": 2, "user": 1}
DEFAULT_ROLE = "user"
SAVED_JOB_STATUS = "saved"

# Feature table -> counter attribute on UserActivityRecord.
_FEATURE_COUNTERS = {
    "conversations": "conversations",
    "resumes": "resumes",
    "tracked_jobs": "tracked_jobs",
    "cover_letters": "cover_letters",
    "documents": "documents",
}


@dataclass
class UserActivityRecord:
    user_id: str
    email: str | None = None
    full_name: str | None = None
    location: str | None = None
    target_role: str | None = None
    onboarding_completed: bool = False
    role: str = DEFAULT_ROLE
    created_at: datetime | None = None
    last_active_at: datetime | None = None
    auth_provider: str | None = None
    last_sign_in_at: datetime | None = None
    email_confirmed_at: datetime | None = None
    banned_until: datetime | None = None
    has_access_record: bool = False
    account_status: str = DEFAULT_ACCOUNT_STATUS
    purchase_state: str = DEFAULT_PURCHASE_STATE
    subscription_plan: str = DEFAULT_SUBSCRIPTION_PLAN
    ai_features_enabled: bool = True
    blocked_reason: str | None = None
    blocked_until: datetime | None = None
    conversations: int = 0
    resumes: int = 0
    tracked_jobs: int = 0
    applied_jobs: int = 0
    cover_letters: int = 0
    documents: int = 0
    messages: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_ai_cost_usd: Decimal = Decimal("0")

    def observe(self, ts: datetime | None) -> None:
        # lastActiveAt only ever moves forward.
        if ts is None:
            return
        if self.last_active_at is None or ts > self.last_active_at:
            self.last_active_at = ts

    def to_payload(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "userId": self.user_id,
            "email": self.email,
            "fullName": self.full_name,
            "location": self.location,
            "targetRole": self.target_role,
            "onboardingCompleted": self.onboarding_completed,
            "role": self.role,
            "createdAt": _iso(self.created_at),
            "lastActiveAt": _iso(self.last_active_at),
            "authProvider": self.auth_provider,
            "lastSignInAt": _iso(self.last_sign_in_at),
            "emailConfirmedAt": _iso(self.email_confirmed_at),
            "bannedUntil": _iso(self.banned_until),
            "access": {
                "hasRecord": self.has_access_record,
                "accountStatus": self.account_status,
                "purchaseState": self.purchase_state,
                "subscriptionPlan": self.subscription_plan,
                "aiFeaturesEnabled": self.ai_features_enabled,
                "blockedReason": self.blocked_reason,
                "blockedUntil": _iso(self.blocked_until),
            },
            "conversations": self.conversations,
            "resumes": self.resumes,
            "trackedJobs": self.tracked_jobs,
            "appliedJobs": self.applied_jobs,
            "coverLetters": self.cover_letters,
            "documents": self.documents,
            "messages": self.messages,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "estimatedAiCostUsd": usd(self.estimated_ai_cost_usd),
        }


@dataclass(frozen=True)
class ActivitySources:
    """Everything the merge step needs, collected before it starts."""

    profiles: list[ProfileRow] = field(default_factory=list)
    roles: list[RoleRow] = field(default_factory=list)
    access: list[AccessRow] = field(default_factory=list)
    feature_rows: dict[str, list[ActivityRow]] = field(default_factory=dict)
    conversation_owners: list[ConversationOwner] = field(default_factory=list)
    messages: list[MessageRow] = field(default_factory=list)
    signups: list[SignupRow] = field(default_factory=list)
    directory_users: list[DirectoryUser] = field(default_factory=list)
    totals: dict[str, int] = field(default_factory=dict)
    directory_available: bool = False
    directory_pages: int = 0
    directory_truncated: bool = False
    warnings: list[str] = field(default_factory=list)


def effective_roles(rows: Iterable[RoleRow]) -> dict[str, str]:
    """Highest-priority role per user (admin > moderator > user)."""
    best: dict[str, str] = {}
    for row in rows:
        priority = ROLE_PRIORITY.get(row.role)
        if priority is None:
            continue
        current = best.get(row.user_id)
        if current is None or priority > ROLE_PRIORITY[current]:
            best[row.user_id] = row.role
    return best


def role_row_counts(rows: Iterable[RoleRow]) -> dict[str, int]:
    counts = {role: 0 for role in ROLE_PRIORITY}
    for row in rows:
        if row.role in counts:
            counts[row.role] += 1
    return counts


def merge_user_activity(sources: ActivitySources, *, rates: CostRates) -> list[UserActivityRecord]:
    """Join identity, role, access and usage rows into one record per user.

    The result depends only on the collected rows, not on the order in which
    sources or rows arrived: counters are sums and ``last_active_at`` is a
    running maximum. Records come back sorted by ``last_active_at`` descending
    with the user id as tie-breaker.
    """
    profiles = {row.user_id: row for row in sources.profiles}
    directory = {user.id: user for user in sources.directory_users if user.id}
    access = {row.user_id: row for row in sources.access}
    roles = effective_roles(sources.roles)
    users: dict[str, UserActivityRecord] = {}

    def ensure_user(user_id: str) -> UserActivityRecord:
        record = users.get(user_id)
        if record is not None:
            return record
        profile = profiles.get(user_id)
        dir_user = directory.get(user_id)
        record = UserActivityRecord(user_id=user_id, role=roles.get(user_id, DEFAULT_ROLE))
        if profile is not None:
            record.email = profile.email
            record.full_name = profile.full_name
            record.location = profile.location
            record.target_role = profile.target_role
            record.onboarding_completed = profile.onboarding_completed
            record.created_at = profile.created_at
            record.observe(profile.updated_at)
        if dir_user is not None:
            record.email = record.email or dir_user.email
            record.created_at = record.created_at or dir_user.created_at
            record.auth_provider = dir_user.provider
            record.last_sign_in_at = dir_user.last_sign_in_at
            record.email_confirmed_at = dir_user.email_confirmed_at
            record.banned_until = dir_user.banned_until
            record.observe(dir_user.last_sign_in_at)
        access_row = access.get(user_id)
        if access_row is not None:
            record.has_access_record = True
            record.account_status = access_row.account_status
            record.purchase_state = access_row.purchase_state
            record.subscription_plan = access_row.subscription_plan
            record.ai_features_enabled = access_row.ai_features_enabled
            record.blocked_reason = access_row.blocked_reason
            record.blocked_until = access_row.blocked_until
        users[user_id] = record
        return record

    for user_id in sorted(set(profiles) | set(directory)):
        ensure_user(user_id)

    for feature, counter in _FEATURE_COUNTERS.items():
        for row in sources.feature_rows.get(feature, []):
            record = ensure_user(row.user_id)
            setattr(record, counter, getattr(record, counter) + 1)
            if feature == "tracked_jobs" and (row.status or "").strip().lower() != SAVED_JOB_STATUS:
                record.applied_jobs += 1
            record.observe(row.updated_at)

    conversation_users = {owner.conversation_id: owner.user_id for owner in sources.conversation_owners}
    for message in sources.messages:
        user_id = conversation_users.get(message.conversation_id)
        if not user_id:
            continue
        record = ensure_user(user_id)
        tokens = approx_tokens(message.content)
        record.messages += 1
        if message.role == "assistant":
            record.output_tokens += tokens
        else:
            record.input_tokens += tokens
        record.observe(message.created_at)

    for record in users.values():
        record.estimated_ai_cost_usd = estimate_user_cost(record.input_tokens, record.output_tokens, rates)

    return sorted(users.values(), key=lambda item: (-(item.last_active_at or EPOCH).timestamp(), item.user_id))


def build_identity_trends(sources: ActivitySources, days: list[date]) -> list[dict[str, Any]]:
    """Daily signups and distinct active users, one point per day."""
    first_seen: dict[str, datetime] = {}
    for user_id, created_at in [(row.user_id, row.created_at) for row in sources.signups] + [
        (user.id, user.created_at) for user in sources.directory_users
    ]:
        if created_at is None:
            continue
        current = first_seen.get(user_id)
        if current is None or created_at < current:
            first_seen[user_id] = created_at
    signups = Counter(utc_day(ts) for ts in first_seen.values())

    active: dict[date, set[str]] = {}

    def mark(user_id: str | None, ts: datetime | None) -> None:
        if user_id and ts is not None:
            active.setdefault(utc_day(ts), set()).add(user_id)

    for rows in sources.feature_rows.values():
        for row in rows:
            mark(row.user_id, row.updated_at)
    for profile in sources.profiles:
        mark(profile.user_id, profile.updated_at)
    for user in sources.directory_users:
        mark(user.id, user.last_sign_in_at)
    conversation_users = {owner.conversation_id: owner.user_id for owner in sources.conversation_owners}
    for message in sources.messages:
        mark(conversation_users.get(message.conversation_id), message.created_at)

    return build_day_points(
        days,
        build=lambda day: {"signups": int(signups.get(day, 0)), "activeUsers": len(active.get(day, ()))},
    )


async def _guarded_fetch(
    session_factory: async_sessionmaker[AsyncSession],
    label: str,
    fetch: Callable[[AsyncSession], Awaitable[T]],
    default: T,
) -> tuple[T, str | None]:
    # Missing tables degrade to empty data plus a warning; other errors propagate.
    try:
        async with session_factory() as session:
            return await fetch(session), None
    except SQLAlchemyError as exc:
        if not is_missing_relation(exc):
            raise
        logger.warning("activity_source_missing source=%s", label)
        return default, f"{label}: table not provisioned yet; apply pending migrations."


async def _fetch_totals(session_factory: async_sessionmaker[AsyncSession]) -> tuple[dict[str, int], list[str]]:
    totals: dict[str, int] = {}
    missing: list[str] = []
    async with session_factory() as session:
        for table in COUNTED_MODELS:
            try:
                totals[table] = await count_rows(session, table)
            except SQLAlchemyError as exc:
                if not is_missing_relation(exc):
                    raise
                await session.rollback()
                totals[table] = 0
                missing.append(table)
    return totals, missing


async def _fetch_directory(
    directory: IdentityDirectoryClient | None,
    *,
    page_size: int,
    max_pages: int,
) -> tuple[list[DirectoryUser], int, bool, str | None]:
    if directory is None:
        return [], 0, False, "Identity directory not configured; showing profile data only."
    try:
        listing = await directory.list_all_users(page_size=page_size, max_pages=max_pages)
    except OwnerPortalError as exc:
        logger.warning("identity_directory_unavailable error=%s", exc.detail or exc.error)
        return [], 0, False, "Identity directory unavailable; showing profile data only."
    return listing.users, listing.pages, listing.truncated, None


async def collect_activity_sources(
    session_factory: async_sessionmaker[AsyncSession],
    directory: IdentityDirectoryClient | None,
    *,
    since: datetime,
    message_limit: int,
    directory_page_size: int,
    directory_max_pages: int,
) -> ActivitySources:
    """Fan out every source fetch concurrently and wait for all of them.

    Each database fetch runs on its own session. Nothing is merged until the
    gather completes.
    """
    feature_names = list(FEATURE_MODELS)

    def _feature_fetch(name: str) -> Callable[[AsyncSession], Awaitable[list[ActivityRow]]]:
        return lambda session: list_feature_rows(session, name, since=since)

    results = await asyncio.gather(
        _guarded_fetch(session_factory, "profiles", list_profiles, []),
        _guarded_fetch(session_factory, "user_roles", list_roles, []),
        _guarded_fetch(session_factory, "user_access_controls", list_access_controls, []),
        _guarded_fetch(session_factory, "conversation_owners", list_conversation_owners, []),
        _guarded_fetch(
            session_factory,
            "messages",
            lambda session: list_message_sample(session, since=since, limit=message_limit),
            [],
        ),
        _guarded_fetch(
            session_factory,
            "recent_signups",
            lambda session: list_recent_signups(session, since=since),
            [],
        ),
        *[_guarded_fetch(session_factory, name, _feature_fetch(name), []) for name in feature_names],
        _fetch_totals(session_factory),
        _fetch_directory(directory, page_size=directory_page_size, max_pages=directory_max_pages),
    )

    (profiles, w_profiles), (roles, w_roles), (access, w_access), (owners, w_owners) = results[:4]
    (messages, w_messages), (signups, w_signups) = results[4:6]
    feature_results = results[6 : 6 + len(feature_names)]
    totals, missing_totals = results[6 + len(feature_names)]
    dir_users, dir_pages, dir_truncated, w_directory = results[7 + len(feature_names)]

    warnings = [w for w in (w_profiles, w_roles, w_access, w_owners, w_messages, w_signups) if w]
    feature_rows: dict[str, list[ActivityRow]] = {}
    for name, (rows, warning) in zip(feature_names, feature_results):
        feature_rows[name] = rows
        if warning:
            warnings.append(warning)
    if missing_totals:
        warnings.append(f"Totals unavailable for: {', '.join(missing_totals)}.")
    if w_directory:
        warnings.append(w_directory)
    if dir_truncated:
        warnings.append(
            f"Identity directory listing stopped after {dir_pages} pages; user list may be incomplete."
        )

    return ActivitySources(
        profiles=profiles,
        roles=roles,
        access=access,
        feature_rows=feature_rows,
        conversation_owners=owners,
        messages=messages,
        signups=signups,
        directory_users=dir_users,
        totals=totals,
        directory_available=w_directory is None,
        directory_pages=dir_pages,
        directory_truncated=dir_truncated,
        warnings=warnings,
    )
