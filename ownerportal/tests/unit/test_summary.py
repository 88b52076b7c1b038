from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from ownerportal.domain.models import (
    Conversation,
    Message,
    ProductAnalyticsEvent,
    Resume,
    TrackedJob,
)
from ownerportal.services.costs import CostRates
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.services.ownership import OwnerPolicy
from ownerportal.services.summary import SummaryLimits, build_summary, clamp_range_days
from ownerportal.tests.utils.db import add_rows, create_schema
from ownerportal.tests.utils.identity import identity_settings
from ownerportal.tests.utils.seed import access, new_user_id, profile, role


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
OWNERS = OwnerPolicy.from_emails(["owner@example.com"])


def _limits(**overrides) -> SummaryLimits:
    values = {
        "message_sample": 10_000,
        "event_sample": 50_000,
        "user_list": 120,
        "directory_page_size": 1000,
        "directory_max_pages": 20,
    }
    values.update(overrides)
    return SummaryLimits(**values)


def _rates(**overrides) -> CostRates:
    return CostRates.from_settings(identity_settings(**overrides))


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 30), ("", 30), ("abc", 30), (1, 7), (14, 14), ("45", 45), (365, 90)],
)
def test_clamp_range_days(raw, expected) -> None:
    assert clamp_range_days(raw) == expected


@pytest.mark.asyncio
async def test_summary_combines_usage_costs_and_traffic(session_factory, directory, identity_server) -> None:
    owner_id, member_id = new_user_id(), new_user_id()
    recent = NOW - timedelta(days=1)
    await add_rows(
        session_factory,
        profile(owner_id, "owner@example.com", at=recent, onboarding_completed=True),
        profile(member_id, "member@example.com", at=NOW - timedelta(days=3)),
        role(owner_id, "admin"),
        role(owner_id, "user"),
        role(member_id, "user"),
        access(member_id, account_status="suspended", ai_features_enabled=False, purchase_state="past_due"),
        Conversation(id="c-1", user_id=member_id, updated_at=recent),
        Message(id="m-1", conversation_id="c-1", role="user", content="x" * 4000, created_at=recent),
        Message(id="m-2", conversation_id="c-1", role="assistant", content="y" * 8000, created_at=recent),
        Resume(id="r-1", user_id=member_id, updated_at=recent),
        TrackedJob(id="j-1", user_id=member_id, status="applied", updated_at=recent),
        ProductAnalyticsEvent(
            id="e-1", session_id="s-1", event_name="page_view", path="/", occurred_at=recent, properties={}
        ),
        ProductAnalyticsEvent(
            id="e-2", session_id="s-1", event_name="page_view", path="/jobs", occurred_at=recent + timedelta(seconds=45), properties={}
        ),
    )
    identity_server.add_user(owner_id, "owner@example.com", last_sign_in_at=NOW - timedelta(hours=1))
    identity_server.add_user(new_user_id(), "directory-only@example.com", created_at=NOW - timedelta(days=2))

    summary = await build_summary(
        session_factory,
        directory,
        owners=OWNERS,
        rates=_rates(admin_vercel_monthly_usd=20),
        limits=_limits(),
        range_days=7,
        now=NOW,
    )

    assert summary["ownerEmails"] == ["owner@example.com"]
    assert summary["company"]["totalUsers"] == 3
    assert summary["company"]["totalProfiles"] == 2
    assert summary["company"]["totalMessages"] == 2
    assert summary["company"]["onboardingCompletedUsers"] == 1
    assert summary["access"]["roleCounts"] == {"admin": 1, "moderator": 0, "user": 2}
    assert summary["access"]["accountStatusCounts"] == {"active": 2, "suspended": 1, "blocked": 0}
    assert summary["access"]["aiDisabledUsers"] == 1
    assert [item["userId"] for item in summary["access"]["ownersPresent"]] == [owner_id]
    assert summary["billing"]["purchaseStateCounts"] == {"past_due": 1, "trial": 2}

    costs = summary["apiCosts"]
    assert costs["inputTokens"] == 1000
    assert costs["outputTokens"] == 2000
    assert costs["fixedInfraMonthlyUsd"] == 20.0

    assert summary["website"]["pageViews"] == 2
    assert summary["website"]["avgVisitDurationSec"] == 45.0
    assert len(summary["trends"]) == 7
    assert len(summary["websiteTrends"]) == 7

    member = next(user for user in summary["users"] if user["userId"] == member_id)
    assert member["appliedJobs"] == 1
    assert member["access"]["accountStatus"] == "suspended"
    assert summary["meta"]["directoryAvailable"] is True
    assert summary["meta"]["directoryTruncated"] is False
    assert summary["warnings"] == []


@pytest.mark.asyncio
async def test_summary_without_event_table_degrades(engine, directory) -> None:
    await create_schema(engine, skip={"product_analytics_events"})
    factory = async_sessionmaker(engine, expire_on_commit=False)
    summary = await build_summary(
        factory, directory, owners=OWNERS, rates=_rates(), limits=_limits(), range_days=7, now=NOW
    )
    website = summary["website"]
    assert website["rangeDays"] == 7
    assert website["uniqueVisitors"] == 0
    assert website["pageViews"] == 0
    assert website["warning"]
    assert len(summary["websiteTrends"]) == 7
    assert all(point["visitors"] == 0 for point in summary["websiteTrends"])
    assert summary["meta"]["rangeDays"] == 7
    assert summary["meta"]["warning"]


@pytest.mark.asyncio
async def test_summary_flags_directory_truncation_and_caps_users(session_factory, directory, identity_server) -> None:
    for idx in range(5):
        identity_server.add_user(new_user_id(), f"user{idx}@example.com")
    summary = await build_summary(
        session_factory,
        directory,
        owners=OWNERS,
        rates=_rates(),
        limits=_limits(directory_page_size=2, directory_max_pages=2, user_list=3),
        range_days=30,
        now=NOW,
    )
    assert summary["meta"]["directoryTruncated"] is True
    assert summary["meta"]["directoryPages"] == 2
    assert summary["meta"]["userRecords"] == 4
    assert len(summary["users"]) == 3
    assert any("stopped after 2 pages" in warning for warning in summary["warnings"])


@pytest.mark.asyncio
async def test_summary_survives_directory_outage(session_factory, directory, identity_server) -> None:
    identity_server.fail_listing = True
    await add_rows(session_factory, profile(new_user_id(), "member@example.com", at=NOW))
    summary = await build_summary(
        session_factory, None, owners=OWNERS, rates=_rates(), limits=_limits(), range_days=30, now=NOW
    )
    assert summary["company"]["totalUsers"] == 1
    assert summary["meta"]["directoryAvailable"] is False
    outage = await build_summary(
        session_factory, directory, owners=OWNERS, rates=_rates(), limits=_limits(), range_days=30, now=NOW
    )
    assert outage["meta"]["directoryAvailable"] is False
    assert any("Identity directory unavailable" in warning for warning in outage["warnings"])


def test_zero_usage_monthly_total_is_fixed_infra() -> None:
    rates = _rates(admin_supabase_monthly_usd=25, admin_mem0_monthly_usd=19)
    assert rates.fixed_infra_monthly == Decimal("44")


@pytest.mark.asyncio
async def test_summary_treats_unreadable_directory_as_unavailable(session_factory) -> None:
    def _gateway_page(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    directory = IdentityDirectoryClient(
        identity_settings(), client=httpx.AsyncClient(transport=httpx.MockTransport(_gateway_page))
    )
    await add_rows(session_factory, profile(new_user_id(), "member@example.com", at=NOW))
    try:
        summary = await build_summary(
            session_factory, directory, owners=OWNERS, rates=_rates(), limits=_limits(), range_days=30, now=NOW
        )
    finally:
        await directory.aclose()
    assert summary["company"]["totalUsers"] == 1
    assert summary["meta"]["directoryAvailable"] is False
    assert any("Identity directory unavailable" in warning for warning in summary["warnings"])


@pytest.mark.asyncio
async def test_summary_without_one_usage_table_keeps_other_sources(engine, directory) -> None:
    await create_schema(engine, skip={"resumes"})
    factory = async_sessionmaker(engine, expire_on_commit=False)
    member_id = new_user_id()
    recent = NOW - timedelta(days=1)
    await add_rows(
        factory,
        profile(member_id, "member@example.com", at=recent),
        TrackedJob(id="j-1", user_id=member_id, status="applied", updated_at=recent),
    )
    summary = await build_summary(
        factory, directory, owners=OWNERS, rates=_rates(), limits=_limits(), range_days=7, now=NOW
    )
    assert any(warning.startswith("resumes: table not provisioned yet") for warning in summary["warnings"])
    assert any("Totals unavailable for: resumes" in warning for warning in summary["warnings"])
    assert summary["company"]["totalResumes"] == 0
    assert summary["company"]["totalTrackedJobs"] == 1
    member = next(user for user in summary["users"] if user["userId"] == member_id)
    assert member["resumes"] == 0
    assert member["appliedJobs"] == 1
