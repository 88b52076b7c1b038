from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Annotated, Any, Awaitable, Callable, Literal, Union, get_args

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ownerportal.apps.api.deps import (
    Caller,
    get_db,
    get_directory,
    get_owner_caller,
    get_owner_policy,
    get_session_factory,
    settings_dependency,
)
from ownerportal.core.config import Settings
from ownerportal.core.errors import InvalidRequestError
from ownerportal.services.audit import spawn_admin_audit
from ownerportal.services.costs import CostRates
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.services.ownership import (
    OwnerPolicy,
    ensure_owner_invariants,
    force_sign_out,
    issue_password_reset_link,
    set_access_control,
    set_user_role,
)
from ownerportal.services.summary import SummaryLimits, build_summary


logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin-portal"])


class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SummaryCommand(_Command):
    action: Literal["summary"]
    # Lenient on purpose: anything non-numeric falls back to the default range.
    range_days: Any = Field(default=None, alias="rangeDays")


class SetRoleCommand(_Command):
    action: Literal["set-role"]
    target_user_id: str = Field(alias="targetUserId")
    role: Literal["admin", "moderator", "user"]


class SetAccountAccessCommand(_Command):
    action: Literal["set-account-access"]
    target_user_id: str = Field(alias="targetUserId")
    account_status: str | None = Field(default=None, alias="accountStatus")
    purchase_state: str | None = Field(default=None, alias="purchaseState")
    subscription_plan: str | None = Field(default=None, alias="subscriptionPlan")
    ai_features_enabled: bool | None = Field(default=None, alias="aiFeaturesEnabled")
    blocked_reason: str | None = Field(default=None, alias="blockedReason")
    blocked_until: str | None = Field(default=None, alias="blockedUntil")

    def patch(self) -> dict[str, Any]:
        # Only fields the caller actually sent take part in the update.
        fields = (
            "account_status",
            "purchase_state",
            "subscription_plan",
            "ai_features_enabled",
            "blocked_reason",
            "blocked_until",
        )
        return {name: getattr(self, name) for name in fields if name in self.model_fields_set}


class ForceSignOutCommand(_Command):
    action: Literal["force-signout"]
    target_user_id: str = Field(alias="targetUserId")


class PasswordResetLinkCommand(_Command):
    action: Literal["password-reset-link"]
    email: str | None = None
    target_user_id: str | None = Field(default=None, alias="targetUserId")
    redirect_to: str | None = Field(default=None, alias="redirectTo")


PortalCommand = Annotated[
    Union[
        SummaryCommand,
        SetRoleCommand,
        SetAccountAccessCommand,
        ForceSignOutCommand,
        PasswordResetLinkCommand,
    ],
    Field(discriminator="action"),
]

_command_adapter: TypeAdapter[Any] = TypeAdapter(PortalCommand)


@dataclass
class PortalContext:
    request: Request
    caller: Caller
    session: AsyncSession
    session_factory: async_sessionmaker[AsyncSession]
    directory: IdentityDirectoryClient
    owners: OwnerPolicy
    settings: Settings


def parse_command(payload: Any) -> Any:
    """Validate a request body into exactly one portal command."""
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    if not payload.get("action"):
        raise InvalidRequestError("Missing action")
    try:
        return _command_adapter.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        if first.get("type") == "union_tag_invalid":
            raise InvalidRequestError(f"Unsupported action: {payload.get('action')}") from exc
        location = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = first.get("msg", "invalid value")
        raise InvalidRequestError(f"{location}: {message}" if location else message) from exc


def _audit(ctx: PortalContext, action: str, resource_id: str | None, metadata: dict[str, Any]) -> None:
    spawn_admin_audit(
        ctx.session_factory,
        request=ctx.request,
        actor_id=ctx.caller.user_id,
        action=action,
        resource="user",
        resource_id=resource_id,
        metadata=metadata,
    )


async def _handle_summary(ctx: PortalContext, command: SummaryCommand) -> dict[str, Any]:
    return await build_summary(
        ctx.session_factory,
        ctx.directory,
        owners=ctx.owners,
        rates=CostRates.from_settings(ctx.settings),
        limits=SummaryLimits.from_settings(ctx.settings),
        range_days=command.range_days,
    )


async def _handle_set_role(ctx: PortalContext, command: SetRoleCommand) -> dict[str, Any]:
    result = await set_user_role(ctx.session, ctx.directory, ctx.owners, command.target_user_id, command.role)
    _audit(ctx, "set-role", result["userId"], {"role": command.role, "roles": result["roles"]})
    return {"ok": True, "result": result}


async def _handle_set_account_access(ctx: PortalContext, command: SetAccountAccessCommand) -> dict[str, Any]:
    patch = command.patch()
    result = await set_access_control(
        ctx.session,
        ctx.directory,
        ctx.owners,
        command.target_user_id,
        patch,
        actor_id=ctx.caller.user_id,
    )
    _audit(
        ctx,
        "set-account-access",
        result["userId"],
        {"patch": sorted(patch), "access": result["access"], "banDuration": result["banDuration"]},
    )
    return {"ok": True, "result": result}


async def _handle_force_signout(ctx: PortalContext, command: ForceSignOutCommand) -> dict[str, Any]:
    result = await force_sign_out(ctx.session, ctx.directory, command.target_user_id)
    _audit(ctx, "force-signout", result["userId"], {})
    return {"ok": True, "result": result}


async def _handle_password_reset_link(ctx: PortalContext, command: PasswordResetLinkCommand) -> dict[str, Any]:
    result = await issue_password_reset_link(
        ctx.session,
        ctx.directory,
        email=command.email,
        target_user_id=command.target_user_id,
        redirect_to=command.redirect_to or ctx.settings.admin_password_reset_redirect_url,
    )
    _audit(ctx, "password-reset-link", result["userId"], {"email": result["email"]})
    return {"ok": True, "result": result}


_HANDLERS: dict[type[BaseModel], Callable[[PortalContext, Any], Awaitable[dict[str, Any]]]] = {
    SummaryCommand: _handle_summary,
    SetRoleCommand: _handle_set_role,
    SetAccountAccessCommand: _handle_set_account_access,
    ForceSignOutCommand: _handle_force_signout,
    PasswordResetLinkCommand: _handle_password_reset_link,
}

_unhandled = set(get_args(get_args(PortalCommand)[0])) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"portal commands without handlers: {sorted(cls.__name__ for cls in _unhandled)}")


@router.post("/admin-portal")
async def admin_portal(
    request: Request,
    caller: Caller = Depends(get_owner_caller),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    directory: IdentityDirectoryClient = Depends(get_directory),
    owners: OwnerPolicy = Depends(get_owner_policy),
    settings: Settings = Depends(settings_dependency),
) -> dict[str, Any]:
    await ensure_owner_invariants(db, owners, verified_owner_ids=[caller.user_id])
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidRequestError("Request body must be valid JSON") from exc
    command = parse_command(payload)
    ctx = PortalContext(
        request=request,
        caller=caller,
        session=db,
        session_factory=session_factory,
        directory=directory,
        owners=owners,
        settings=settings,
    )
    logger.info("admin_portal_action action=%s actor_id=%s", command.action, caller.user_id)
    return await _HANDLERS[type(command)](ctx, command)
