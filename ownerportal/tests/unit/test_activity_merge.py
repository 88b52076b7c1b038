from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import random

from ownerportal.domain.records import (
    AccessRow,
    ActivityRow,
    ConversationOwner,
    DirectoryUser,
    MessageRow,
    ProfileRow,
    RoleRow,
    SignupRow,
)
from ownerportal.services.activity import (
    ActivitySources,
    build_identity_trends,
    effective_roles,
    merge_user_activity,
)
from ownerportal.services.costs import CostRates, ProviderRates
from ownerportal.services.timeseries import day_range


BASE = datetime(2026, 10, 10, 9, 0, tzinfo=timezone.utc)
RATES = CostRates(
    openai=ProviderRates(input_per_1k=Decimal("0.00015"), output_per_1k=Decimal("0.0006")),
    anthropic=ProviderRates(input_per_1k=Decimal("0.0008"), output_per_1k=Decimal("0.004")),
    openai_share=Decimal("0.7"),
)


def _profile(user_id: str, email: str, at: datetime) -> ProfileRow:
    return ProfileRow(
        user_id=user_id,
        email=email,
        full_name=None,
        location=None,
        target_role=None,
        onboarding_completed=False,
        created_at=at,
        updated_at=at,
    )


def _sources() -> ActivitySources:
    return ActivitySources(
        profiles=[_profile("u-a", "a@example.com", BASE), _profile("u-b", "b@example.com", BASE)],
        roles=[RoleRow("u-a", "user"), RoleRow("u-a", "moderator"), RoleRow("u-b", "user")],
        access=[
            AccessRow(
                user_id="u-b",
                account_status="suspended",
                purchase_state="past_due",
                subscription_plan="pro",
                ai_features_enabled=False,
                blocked_reason="fraud review",
                blocked_until=None,
            )
        ],
        feature_rows={
            "resumes": [ActivityRow("u-a", BASE + timedelta(hours=1)), ActivityRow("u-a", BASE + timedelta(hours=5))],
            "tracked_jobs": [
                ActivityRow("u-b", BASE + timedelta(hours=2), status="saved"),
                ActivityRow("u-b", BASE + timedelta(hours=3), status="Applied"),
                ActivityRow("u-b", BASE + timedelta(hours=4), status="interview"),
            ],
            "conversations": [ActivityRow("u-a", BASE + timedelta(hours=2))],
        },
        conversation_owners=[ConversationOwner("c-1", "u-a"), ConversationOwner("c-2", "u-c")],
        messages=[
            MessageRow("c-1", "user", "x" * 400, BASE + timedelta(hours=6)),
            MessageRow("c-1", "assistant", "y" * 800, BASE + timedelta(hours=6, minutes=1)),
            MessageRow("c-2", "user", "hello", BASE + timedelta(days=1)),
            MessageRow("c-orphan", "user", "lost", BASE + timedelta(days=2)),
        ],
        directory_users=[
            DirectoryUser(id="u-b", email="b-directory@example.com", provider="google", last_sign_in_at=BASE + timedelta(hours=8)),
            DirectoryUser(id="u-d", email="d@example.com", provider="email", created_at=BASE - timedelta(days=3)),
        ],
    )


def _by_id(records):
    return {record.user_id: record for record in records}


def test_merge_joins_all_sources() -> None:
    records = _by_id(merge_user_activity(_sources(), rates=RATES))
    assert set(records) == {"u-a", "u-b", "u-c", "u-d"}

    a = records["u-a"]
    assert a.role == "moderator"
    assert a.resumes == 2
    assert a.conversations == 1
    assert a.messages == 2
    assert a.input_tokens == 100
    assert a.output_tokens == 200
    assert a.last_active_at == BASE + timedelta(hours=6, minutes=1)
    assert a.estimated_ai_cost_usd > 0

    b = records["u-b"]
    # Profile email wins over the directory email.
    assert b.email == "b@example.com"
    assert b.auth_provider == "google"
    assert b.tracked_jobs == 3
    assert b.applied_jobs == 2
    assert b.account_status == "suspended"
    assert b.ai_features_enabled is False
    assert b.last_active_at == BASE + timedelta(hours=8)

    # Users only known from usage rows or the directory still get a record.
    assert records["u-c"].email is None
    assert records["u-c"].input_tokens == 2
    assert records["u-d"].email == "d@example.com"
    assert records["u-d"].role == "user"
    assert records["u-d"].account_status == "active"


def test_merge_is_independent_of_row_and_source_order() -> None:
    sources = _sources()
    expected = [record.to_payload() for record in merge_user_activity(sources, rates=RATES)]
    shuffler = random.Random(7)
    for _ in range(5):
        shuffled_features = {}
        for name in reversed(list(sources.feature_rows)):
            rows = list(sources.feature_rows[name])
            shuffler.shuffle(rows)
            shuffled_features[name] = rows
        lists = {}
        for attr in ("profiles", "roles", "access", "conversation_owners", "messages", "directory_users"):
            rows = list(getattr(sources, attr))
            shuffler.shuffle(rows)
            lists[attr] = rows
        shuffled = replace(sources, feature_rows=shuffled_features, **lists)
        assert [record.to_payload() for record in merge_user_activity(shuffled, rates=RATES)] == expected


def test_last_active_is_at_least_every_contributing_timestamp() -> None:
    sources = _sources()
    records = _by_id(merge_user_activity(sources, rates=RATES))
    for rows in sources.feature_rows.values():
        for row in rows:
            assert records[row.user_id].last_active_at >= row.updated_at
    owners = {owner.conversation_id: owner.user_id for owner in sources.conversation_owners}
    for message in sources.messages:
        user_id = owners.get(message.conversation_id)
        if user_id:
            assert records[user_id].last_active_at >= message.created_at


def test_records_sorted_by_last_active_then_id() -> None:
    records = merge_user_activity(_sources(), rates=RATES)
    assert [record.user_id for record in records] == ["u-c", "u-b", "u-a", "u-d"]


def test_effective_role_picks_highest_priority() -> None:
    roles = effective_roles(
        [RoleRow("u-1", "user"), RoleRow("u-1", "admin"), RoleRow("u-1", "moderator"), RoleRow("u-2", "ghost")]
    )
    assert roles == {"u-1": "admin"}


def test_identity_trends_count_signups_and_active_users() -> None:
    sources = replace(
        _sources(),
        signups=[SignupRow("u-a", BASE), SignupRow("u-b", BASE + timedelta(days=1))],
    )
    days = day_range(range_days=7, end=(BASE + timedelta(days=2)).date())
    trend = {point["date"]: point for point in build_identity_trends(sources, days)}
    assert len(trend) == 7
    assert trend["2026-10-07"]["signups"] == 1
    assert trend["2026-10-10"]["signups"] == 1
    assert trend["2026-10-11"]["signups"] == 1
    assert trend["2026-10-10"]["activeUsers"] == 2
    assert trend["2026-10-11"]["activeUsers"] == 1
    assert trend["2026-10-08"] == {"date": "2026-10-08", "signups": 0, "activeUsers": 0}
