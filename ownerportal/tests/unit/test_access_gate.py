from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ownerportal.domain.records import AccessRow
from ownerportal.services.access_gate import decide_access, evaluate_user_access
from ownerportal.tests.utils.db import add_rows, create_schema
from ownerportal.tests.utils.seed import access, new_user_id


def _row(**overrides) -> AccessRow:
    values = {
        "user_id": "u-1",
        "account_status": "active",
        "purchase_state": "trial",
        "subscription_plan": "free",
        "ai_features_enabled": True,
        "blocked_reason": None,
        "blocked_until": None,
    }
    values.update(overrides)
    return AccessRow(**values)


def test_missing_record_is_allowed() -> None:
    decision = decide_access(None)
    assert decision.allowed is True
    assert decision.to_payload() == {"allowed": True}


def test_blocked_wins_over_every_other_check() -> None:
    decision = decide_access(
        _row(account_status="blocked", purchase_state="canceled", ai_features_enabled=False)
    )
    assert decision.allowed is False
    assert decision.code == "account_blocked"
    assert decision.message == "This account is blocked. Contact support."


def test_suspended_checked_before_ai_and_purchase() -> None:
    decision = decide_access(_row(account_status="suspended", ai_features_enabled=False, purchase_state="past_due"))
    assert decision.code == "account_suspended"


def test_ai_disabled_checked_before_purchase_state() -> None:
    decision = decide_access(_row(ai_features_enabled=False, purchase_state="canceled"))
    assert decision.code == "ai_disabled"
    assert decision.message == "AI features are disabled for this account."


@pytest.mark.parametrize("state", ["past_due", "canceled"])
def test_purchase_state_outside_allowed_set_requires_purchase(state: str) -> None:
    decision = decide_access(_row(purchase_state=state))
    assert decision.code == "purchase_required"


@pytest.mark.parametrize("state", ["trial", "active", "manual"])
def test_allowed_purchase_states(state: str) -> None:
    assert decide_access(_row(purchase_state=state)).allowed is True


def test_blocked_reason_overrides_default_message() -> None:
    decision = decide_access(_row(account_status="blocked", blocked_reason="  Chargeback on file  "))
    assert decision.message == "Chargeback on file"


@pytest.mark.asyncio
async def test_evaluate_reads_current_row(session_factory) -> None:
    user_id = new_user_id()
    await add_rows(session_factory, access(user_id, account_status="suspended"))
    async with session_factory() as session:
        decision = await evaluate_user_access(session, user_id)
    assert decision.allowed is False
    assert decision.code == "account_suspended"

    async with session_factory() as session:
        assert (await evaluate_user_access(session, new_user_id())).allowed is True


@pytest.mark.asyncio
async def test_evaluate_fails_open_when_table_missing(engine) -> None:
    await create_schema(engine, skip={"user_access_controls"})
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        decision = await evaluate_user_access(session, new_user_id())
    assert decision.allowed is True


class _BrokenSession:
    def __init__(self) -> None:
        self.rolled_back = False

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    async def rollback(self) -> None:
        self.rolled_back = True


@pytest.mark.asyncio
async def test_evaluate_fails_closed_on_other_database_errors() -> None:
    session = _BrokenSession()
    decision = await evaluate_user_access(session, "u-1")  # type: ignore[arg-type]
    assert session.rolled_back is True
    assert decision.allowed is False
    assert decision.code == "account_suspended"
    assert decision.message == "Unable to verify account access."


def test_blocked_until_is_informational_only() -> None:
    future = datetime(2099, 1, 1, tzinfo=timezone.utc)
    decision = decide_access(_row(blocked_until=future))
    assert decision.allowed is True
