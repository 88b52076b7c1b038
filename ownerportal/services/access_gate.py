from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.domain.records import AccessRow
from ownerportal.persistence.guards import is_missing_relation
from ownerportal.persistence.repos.access_controls import get_access_control, to_access_row


logger = logging.getLogger(__name__)

ACCOUNT_STATUSES = ("active", "suspended", "blocked")
PURCHASE_STATES = ("trial", "active", "past_due", "canceled", "manual")
PURCHASE_ALLOWED = frozenset({"trial", "active", "manual"})

DEFAULT_ACCOUNT_STATUS = "active"
DEFAULT_PURCHASE_STATE = "trial"
DEFAULT_SUBSCRIPTION_PLAN = "free"

AccessGateCode = Literal["account_blocked", "account_suspended", "ai_disabled", "purchase_required"]


@dataclass(frozen=True)
class AccessGateDecision:
    allowed: bool
    code: AccessGateCode | None = None
    message: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"allowed": self.allowed}
        if self.code is not None:
            payload["code"] = self.code
        if self.message is not None:
            payload["message"] = self.message
        return payload


ALLOWED = AccessGateDecision(allowed=True)


def _denial_message(row: AccessRow) -> str:
    reason = (row.blocked_reason or "").strip()
    if reason:
        return reason
    if row.account_status == "blocked":
        return "This account is blocked. Contact support."
    if row.account_status == "suspended":
        return "This account is suspended. Contact support."
    if not row.ai_features_enabled:
        return "AI features are disabled for this account."
    return "AI access requires an active purchase state."


def decide_access(row: AccessRow | None) -> AccessGateDecision:
    """Apply the access policy to one access-control row.

    Checks run in a fixed order and the first failure wins: blocked,
    suspended, AI disabled, then purchase state outside trial/active/manual.
    A missing row means the account predates access controls and is open.
    """
    if row is None:
        return ALLOWED
    if row.account_status == "blocked":
        return AccessGateDecision(False, "account_blocked", _denial_message(row))
    if row.account_status == "suspended":
        return AccessGateDecision(False, "account_suspended", _denial_message(row))
    if not row.ai_features_enabled:
        return AccessGateDecision(False, "ai_disabled", _denial_message(row))
    if row.purchase_state not in PURCHASE_ALLOWED:
        return AccessGateDecision(False, "purchase_required", _denial_message(row))
    return ALLOWED


async def evaluate_user_access(session: AsyncSession, user_id: str) -> AccessGateDecision:
    # Re-read on every call; revocations must apply to the very next request.
    try:
        record = await get_access_control(session, user_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        if is_missing_relation(exc):
            logger.warning("access_gate_fail_open user_id=%s reason=missing_table", user_id)
            return ALLOWED
        logger.error("access_gate_lookup_failed user_id=%s", user_id, exc_info=exc)
        return AccessGateDecision(False, "account_suspended", "Unable to verify account access.")
    return decide_access(to_access_row(record) if record is not None else None)
