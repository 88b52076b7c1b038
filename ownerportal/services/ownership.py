from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import math
import re
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ownerportal.core.config import Settings
from ownerportal.core.errors import (
    InvalidRequestError,
    MigrationMissingError,
    NotFoundError,
    OwnerProtectedError,
    UpstreamError,
)
from ownerportal.domain.models import UserAccessControl
from ownerportal.domain.records import AccessRow, as_utc
from ownerportal.persistence.guards import is_missing_relation
from ownerportal.persistence.repos.access_controls import get_access_control, to_access_row
from ownerportal.persistence.repos.profiles import find_profiles_by_emails, get_profile
from ownerportal.persistence.repos.roles import ensure_role, list_roles_for_user, remove_elevated_roles
from ownerportal.services.access_gate import (
    ACCOUNT_STATUSES,
    DEFAULT_ACCOUNT_STATUS,
    DEFAULT_PURCHASE_STATE,
    DEFAULT_SUBSCRIPTION_PLAN,
    PURCHASE_STATES,
)
from ownerportal.services.identity.directory import (
    PERMANENT_BAN_DURATION,
    UNBAN_DURATION,
    IdentityDirectoryClient,
)


logger = logging.getLogger(__name__)

ROLES = ("admin", "moderator", "user")
USER_ID_PATTERN = re.compile(r"^[0-9a-f-]{36}$", re.IGNORECASE)
_MAX_PLAN_LENGTH = 64
_MAX_REASON_LENGTH = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str | None) -> str:
    return str(value or "").strip().lower()


@dataclass(frozen=True)
class OwnerPolicy:
    """The configured owner accounts, passed explicitly to every guard call."""

    emails: frozenset[str]

    @classmethod
    def from_emails(cls, emails: Iterable[str]) -> "OwnerPolicy":
        return cls(frozenset(normalize_email(email) for email in emails if normalize_email(email)))

    @classmethod
    def from_settings(cls, settings: Settings) -> "OwnerPolicy":
        return cls.from_emails(settings.owner_emails())

    def is_owner(self, email: str | None) -> bool:
        normalized = normalize_email(email)
        return bool(normalized) and normalized in self.emails


@dataclass(frozen=True)
class TargetUser:
    user_id: str
    email: str | None
    # The directory may know the user by a different address than the profile.
    directory_email: str | None = None

    def is_owned_by(self, owners: OwnerPolicy) -> bool:
        return owners.is_owner(self.email) or owners.is_owner(self.directory_email)


def default_access_row(user_id: str) -> AccessRow:
    return AccessRow(
        user_id=user_id,
        account_status=DEFAULT_ACCOUNT_STATUS,
        purchase_state=DEFAULT_PURCHASE_STATE,
        subscription_plan=DEFAULT_SUBSCRIPTION_PLAN,
        ai_features_enabled=True,
        blocked_reason=None,
        blocked_until=None,
    )


def normalize_account_status(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ACCOUNT_STATUSES else DEFAULT_ACCOUNT_STATUS


def normalize_purchase_state(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in PURCHASE_STATES else DEFAULT_PURCHASE_STATE


def normalize_plan(value: Any) -> str:
    normalized = str(value or "").strip()[:_MAX_PLAN_LENGTH]
    return normalized or DEFAULT_SUBSCRIPTION_PLAN


def normalize_reason(value: Any) -> str | None:
    normalized = str(value or "").strip()[:_MAX_REASON_LENGTH]
    return normalized or None


def parse_blocked_until(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))
    except ValueError as exc:
        raise InvalidRequestError("blockedUntil must be an ISO-8601 timestamp") from exc


def apply_access_patch(current: AccessRow, patch: dict[str, Any]) -> AccessRow:
    """Overlay the provided patch fields on ``current``, normalizing each one.

    Unknown statuses fall back to the open defaults rather than failing.
    """
    updated = current
    if "account_status" in patch:
        updated = replace(updated, account_status=normalize_account_status(patch["account_status"]))
    if "purchase_state" in patch:
        updated = replace(updated, purchase_state=normalize_purchase_state(patch["purchase_state"]))
    if "subscription_plan" in patch:
        updated = replace(updated, subscription_plan=normalize_plan(patch["subscription_plan"]))
    if "ai_features_enabled" in patch and patch["ai_features_enabled"] is not None:
        updated = replace(updated, ai_features_enabled=bool(patch["ai_features_enabled"]))
    if "blocked_reason" in patch:
        updated = replace(updated, blocked_reason=normalize_reason(patch["blocked_reason"]))
    if "blocked_until" in patch:
        updated = replace(updated, blocked_until=parse_blocked_until(patch["blocked_until"]))
    return updated


def compute_ban_duration(row: AccessRow, *, now: datetime) -> str:
    # GoTrue-style duration string: "<hours>h", or "none" to lift the ban.
    if row.account_status == DEFAULT_ACCOUNT_STATUS:
        return UNBAN_DURATION
    if row.blocked_until is not None and row.blocked_until > now:
        hours = math.ceil((row.blocked_until - now).total_seconds() / 3600)
        return f"{max(1, hours)}h"
    return PERMANENT_BAN_DURATION


def access_payload(row: AccessRow) -> dict[str, Any]:
    return {
        "accountStatus": row.account_status,
        "purchaseState": row.purchase_state,
        "subscriptionPlan": row.subscription_plan,
        "aiFeaturesEnabled": row.ai_features_enabled,
        "blockedReason": row.blocked_reason,
        "blockedUntil": row.blocked_until.isoformat() if row.blocked_until else None,
    }


async def resolve_target(
    session: AsyncSession,
    directory: IdentityDirectoryClient | None,
    target_user_id: str,
) -> TargetUser:
    # Validate the id format, then combine the profile with the directory record.
    user_id = str(target_user_id or "").strip()
    if not USER_ID_PATTERN.match(user_id):
        raise InvalidRequestError("Invalid user ID")
    try:
        profile = await get_profile(session, user_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        if is_missing_relation(exc):
            raise MigrationMissingError("profiles") from exc
        raise
    dir_user = await directory.get_user(user_id) if directory is not None else None
    if profile is not None:
        directory_email = dir_user.email if dir_user is not None else None
        return TargetUser(
            user_id=profile.user_id,
            email=profile.email or directory_email,
            directory_email=directory_email,
        )
    if dir_user is not None:
        return TargetUser(user_id=dir_user.id or user_id, email=dir_user.email, directory_email=dir_user.email)
    raise NotFoundError("Target user not found")


async def set_user_role(
    session: AsyncSession,
    directory: IdentityDirectoryClient | None,
    owners: OwnerPolicy,
    target_user_id: str,
    role: str,
) -> dict[str, Any]:
    """Grant ``role`` to a user; ``user`` strips every elevated role instead.

    Role rows are additive and a baseline ``user`` row always remains. Owners
    can only ever be set to ``admin``.
    """
    if role not in ROLES:
        raise InvalidRequestError("Invalid role value")
    target = await resolve_target(session, directory, target_user_id)
    if target.is_owned_by(owners) and role != "admin":
        raise OwnerProtectedError("Owner account cannot be demoted from admin")

    try:
        if role == "user":
            await remove_elevated_roles(session, user_id=target.user_id)
        else:
            await ensure_role(session, user_id=target.user_id, role=role)
        await ensure_role(session, user_id=target.user_id, role="user")
        await session.commit()
        roles = await list_roles_for_user(session, target.user_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        if is_missing_relation(exc):
            raise MigrationMissingError("user_roles") from exc
        raise
    return {"userId": target.user_id, "role": role, "roles": sorted(roles)}


async def set_access_control(
    session: AsyncSession,
    directory: IdentityDirectoryClient,
    owners: OwnerPolicy,
    target_user_id: str,
    patch: dict[str, Any],
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Persist an access-control patch, then mirror it as a directory ban.

    The local write commits before the directory call; if that call fails the
    two systems disagree and the caller receives an UpstreamError and must
    retry the whole operation.
    """
    now = now or _utc_now()
    target = await resolve_target(session, directory, target_user_id)
    try:
        record = await get_access_control(session, target.user_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        if is_missing_relation(exc):
            raise MigrationMissingError("user_access_controls") from exc
        raise

    current = to_access_row(record) if record is not None else default_access_row(target.user_id)
    desired = apply_access_patch(current, patch)
    if target.is_owned_by(owners) and (
        desired.account_status != DEFAULT_ACCOUNT_STATUS or not desired.ai_features_enabled
    ):
        raise OwnerProtectedError("Owner account must stay active with AI features enabled")

    if record is None:
        record = UserAccessControl(user_id=target.user_id, metadata_json={})
        session.add(record)
    record.account_status = desired.account_status
    record.purchase_state = desired.purchase_state
    record.subscription_plan = desired.subscription_plan
    record.ai_features_enabled = desired.ai_features_enabled
    record.blocked_reason = desired.blocked_reason
    record.blocked_until = desired.blocked_until
    record.last_admin_action_by = actor_id
    record.last_admin_action_at = now
    record.updated_at = now
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise

    ban_duration = compute_ban_duration(desired, now=now)
    try:
        await directory.set_ban(target.user_id, ban_duration)
    except UpstreamError as exc:
        logger.error(
            "access_control_directory_sync_failed user_id=%s ban_duration=%s",
            target.user_id,
            ban_duration,
        )
        raise UpstreamError(
            "Access controls were saved but the identity provider update failed; retry the operation."
        ) from exc
    return {"userId": target.user_id, "access": access_payload(desired), "banDuration": ban_duration}


async def force_sign_out(
    session: AsyncSession,
    directory: IdentityDirectoryClient,
    target_user_id: str,
) -> dict[str, Any]:
    target = await resolve_target(session, directory, target_user_id)
    await directory.sign_out_user(target.user_id)
    return {"userId": target.user_id, "signedOut": True}


async def issue_password_reset_link(
    session: AsyncSession,
    directory: IdentityDirectoryClient,
    *,
    email: str | None,
    target_user_id: str | None,
    redirect_to: str | None,
) -> dict[str, Any]:
    # An explicit email wins; otherwise the target user's email is used.
    resolved_email = normalize_email(email)
    user_id: str | None = None
    if not resolved_email:
        if not target_user_id:
            raise InvalidRequestError("email or targetUserId is required")
        target = await resolve_target(session, directory, target_user_id)
        user_id = target.user_id
        resolved_email = normalize_email(target.email)
        if not resolved_email:
            raise InvalidRequestError("Target user has no email address")
    if "@" not in resolved_email:
        raise InvalidRequestError("Invalid email address")
    link = await directory.generate_recovery_link(resolved_email, redirect_to=redirect_to)
    return {"userId": user_id, "email": resolved_email, "actionLink": link, "redirectTo": redirect_to}


async def find_directory_owner_ids(
    directory: IdentityDirectoryClient,
    owners: OwnerPolicy,
    *,
    page_size: int,
    max_pages: int,
) -> list[str]:
    """Owner user ids known to the directory by email, whatever their profile says."""
    listing = await directory.list_all_users(page_size=page_size, max_pages=max_pages)
    return sorted({user.id for user in listing.users if user.id and owners.is_owner(user.email)})


async def ensure_owner_invariants(
    session: AsyncSession,
    owners: OwnerPolicy,
    *,
    verified_owner_ids: Iterable[str] = (),
) -> list[str]:
    """Re-assert admin role and open access for every owner account.

    Owners are matched by profile email, plus ``verified_owner_ids`` already verified
    as owners through the directory (a profile email can be missing or stale).
    Returns the owner user ids handled. Tables that do not exist yet are
    skipped with a warning so the portal stays reachable mid-migration.
    """
    known_ids = {str(user_id) for user_id in verified_owner_ids if user_id}
    try:
        profiles = await find_profiles_by_emails(session, sorted(owners.emails))
    except SQLAlchemyError as exc:
        await session.rollback()
        if not is_missing_relation(exc):
            raise
        logger.warning("owner_invariants_skipped reason=missing_profiles")
        profiles = []
    owner_ids = sorted(known_ids | {profile.user_id for profile in profiles})
    if not owner_ids:
        return []

    try:
        for user_id in owner_ids:
            await ensure_role(session, user_id=user_id, role="admin")
            await ensure_role(session, user_id=user_id, role="user")
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        if not is_missing_relation(exc):
            raise
        logger.warning("owner_invariants_roles_skipped reason=missing_user_roles")

    try:
        for user_id in owner_ids:
            record = await get_access_control(session, user_id)
            if record is None:
                continue
            if record.account_status != DEFAULT_ACCOUNT_STATUS or not record.ai_features_enabled:
                logger.warning("owner_access_repaired user_id=%s", user_id)
                record.account_status = DEFAULT_ACCOUNT_STATUS
                record.ai_features_enabled = True
                record.blocked_reason = None
                record.blocked_until = None
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        if not is_missing_relation(exc):
            raise
        logger.warning("owner_invariants_access_skipped reason=missing_user_access_controls")
    return owner_ids
