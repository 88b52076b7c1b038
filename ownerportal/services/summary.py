from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ownerportal.core.config import Settings
from ownerportal.persistence.guards import is_missing_relation
from ownerportal.persistence.repos.analytics_events import list_events
from ownerportal.services.activity import (
    build_identity_trends,
    collect_activity_sources,
    merge_user_activity,
    role_row_counts,
)
from ownerportal.services.costs.estimator import CostRates, estimate_cost_model
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.services.ownership import OwnerPolicy
from ownerportal.services.timeseries import day_range, utc_day
from ownerportal.services.traffic import WebsiteAnalytics, reconstruct_traffic


logger = logging.getLogger(__name__)

MIN_RANGE_DAYS = 7
MAX_RANGE_DAYS = 90
DEFAULT_RANGE_DAYS = 30
ACTIVE_WINDOW_DAYS = 7

EVENTS_TABLE_WARNING = (
    "Website analytics table (product_analytics_events) is not provisioned yet; "
    "apply pending migrations to enable traffic metrics."
)


def clamp_range_days(value: Any) -> int:
    try:
        days = int(value) if value not in (None, "") else DEFAULT_RANGE_DAYS
    except (TypeError, ValueError):
        days = DEFAULT_RANGE_DAYS
    return max(MIN_RANGE_DAYS, min(MAX_RANGE_DAYS, days))


@dataclass(frozen=True)
class SummaryLimits:
    message_sample: int
    event_sample: int
    user_list: int
    directory_page_size: int
    directory_max_pages: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "SummaryLimits":
        return cls(
            message_sample=settings.admin_cost_sample_limit,
            event_sample=settings.admin_event_sample_limit,
            user_list=settings.admin_user_list_limit,
            directory_page_size=settings.admin_directory_page_size,
            directory_max_pages=settings.admin_directory_max_pages,
        )


async def load_website_analytics(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    range_days: int,
    since: datetime,
    now: datetime,
    limit: int,
) -> WebsiteAnalytics:
    try:
        async with session_factory() as session:
            events = await list_events(session, since=since, limit=limit)
    except SQLAlchemyError as exc:
        if not is_missing_relation(exc):
            raise
        logger.warning("website_analytics_unavailable reason=missing_table")
        return WebsiteAnalytics.empty(range_days=range_days, end=utc_day(now), warning=EVENTS_TABLE_WARNING)
    return reconstruct_traffic(events, range_days=range_days, now=now)


async def build_summary(
    session_factory: async_sessionmaker[AsyncSession],
    directory: IdentityDirectoryClient | None,
    *,
    owners: OwnerPolicy,
    rates: CostRates,
    limits: SummaryLimits,
    range_days: int,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Compose the owner dashboard from identity, usage, cost and traffic data."""
    now = now or datetime.now(timezone.utc)
    range_days = clamp_range_days(range_days)
    days = day_range(range_days=range_days, end=utc_day(now))
    since = datetime.combine(days[0], time.min, tzinfo=timezone.utc)
    active_since = now - timedelta(days=ACTIVE_WINDOW_DAYS)

    sources, website = await asyncio.gather(
        collect_activity_sources(
            session_factory,
            directory,
            since=since,
            message_limit=limits.message_sample,
            directory_page_size=limits.directory_page_size,
            directory_max_pages=limits.directory_max_pages,
        ),
        load_website_analytics(
            session_factory,
            range_days=range_days,
            since=since,
            now=now,
            limit=limits.event_sample,
        ),
    )

    users = merge_user_activity(sources, rates=rates)
    input_tokens = sum(user.input_tokens for user in users)
    output_tokens = sum(user.output_tokens for user in users)
    cost_model = estimate_cost_model(input_tokens, output_tokens, range_days, rates)

    totals = sources.totals
    status_counts = Counter(user.account_status for user in users)
    purchase_counts = Counter(user.purchase_state for user in users)
    plan_counts = Counter(user.subscription_plan for user in users)
    owners_present = [
        {"userId": user.user_id, "email": user.email, "role": user.role}
        for user in users
        if owners.is_owner(user.email)
    ]

    warnings = list(sources.warnings)
    if website.warning:
        warnings.append(website.warning)

    return {
        "generatedAt": now.isoformat(),
        "ownerEmails": sorted(owners.emails),
        "company": {
            "totalUsers": len(users),
            "totalProfiles": totals.get("profiles", 0),
            "activeUsers7d": sum(
                1 for user in users if user.last_active_at is not None and user.last_active_at >= active_since
            ),
            "totalResumes": totals.get("resumes", 0),
            "totalTrackedJobs": totals.get("tracked_jobs", 0),
            "totalConversations": totals.get("conversations", 0),
            "totalCoverLetters": totals.get("cover_letters", 0),
            "totalDocuments": totals.get("documents", 0),
            "totalMessages": totals.get("messages", 0),
            "onboardingCompletedUsers": sum(1 for profile in sources.profiles if profile.onboarding_completed),
        },
        "access": {
            "model": "Role-based access control with per-user account controls",
            "roleCounts": role_row_counts(sources.roles),
            "accountStatusCounts": {
                status: status_counts.get(status, 0) for status in ("active", "suspended", "blocked")
            },
            "aiDisabledUsers": sum(1 for user in users if not user.ai_features_enabled),
            "ownersPresent": owners_present,
        },
        "billing": {
            "purchaseStateCounts": dict(sorted(purchase_counts.items())),
            "planCounts": dict(sorted(plan_counts.items())),
        },
        "website": website.to_payload(),
        "apiCosts": cost_model.to_payload(),
        "trends": build_identity_trends(sources, days),
        "websiteTrends": website.trend,
        "users": [user.to_payload() for user in users[: max(0, limits.user_list)]],
        "warnings": warnings,
        "meta": {
            "rangeDays": range_days,
            "windowStart": since.isoformat(),
            "userRecords": len(users),
            "userListLimit": limits.user_list,
            "costSampleRows": len(sources.messages),
            "costSampleLimit": limits.message_sample,
            "eventSampleRows": website.event_sample_rows,
            "eventSampleLimit": limits.event_sample,
            "directoryAvailable": sources.directory_available,
            "directoryPages": sources.directory_pages,
            "directoryTruncated": sources.directory_truncated,
            "warning": "; ".join(warnings) if warnings else None,
        },
    }
