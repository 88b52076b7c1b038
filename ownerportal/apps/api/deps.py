from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ownerportal.core.config import Settings, get_settings
from ownerportal.core.errors import ForbiddenError, OwnerPortalError, UnauthorizedError
from ownerportal.persistence.db import SessionLocal, get_session
from ownerportal.services.access_gate import AccessGateDecision, evaluate_user_access
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.services.ownership import OwnerPolicy


def settings_dependency() -> Settings:
    return get_settings()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # Fan-out services open one session per fetch from this factory.
    return SessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_directory(
    settings: Settings = Depends(settings_dependency),
) -> AsyncGenerator[IdentityDirectoryClient, None]:
    directory = IdentityDirectoryClient(settings)
    try:
        yield directory
    finally:
        await directory.aclose()


def get_owner_policy(settings: Settings = Depends(settings_dependency)) -> OwnerPolicy:
    return OwnerPolicy.from_settings(settings)


class Caller(BaseModel):
    # Authenticated identity resolved from the caller's bearer token.
    user_id: str
    email: str | None = None


class AccessDeniedError(OwnerPortalError):
    """Access gate denial, rendered with the gate's code and message."""

    status_code = 403

    def __init__(self, decision: AccessGateDecision) -> None:
        super().__init__(decision.message)
        self.error = decision.code or "access_denied"
        self.decision = decision


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise UnauthorizedError("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise UnauthorizedError("Missing or invalid bearer token")
    return parts[1]


async def get_current_user(
    request: Request,
    directory: IdentityDirectoryClient = Depends(get_directory),
) -> Caller:
    token = _parse_bearer_token(request.headers.get("Authorization"))
    user = await directory.get_user_for_token(token)
    return Caller(user_id=user.id, email=user.email)


async def get_owner_caller(
    caller: Caller = Depends(get_current_user),
    owners: OwnerPolicy = Depends(get_owner_policy),
) -> Caller:
    if not owners.is_owner(caller.email):
        raise ForbiddenError("This portal is restricted to owner accounts")
    return caller


async def require_ai_access(
    caller: Caller = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Caller:
    # Gate privileged AI features on the caller's current access-control row.
    decision = await evaluate_user_access(db, caller.user_id)
    if not decision.allowed:
        raise AccessDeniedError(decision)
    return caller
