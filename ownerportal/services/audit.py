from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request

from ownerportal.domain.models import AdminAuditLog


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "action_link"]
_REDACTED_VALUE = "[REDACTED]"

# Strong references to in-flight audit tasks; the loop only keeps weak ones.
_pending: set[asyncio.Task[None]] = set()


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively redact credential-like keys, keeping the structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address: str | None = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return {"ip_address": ip_address, "user_agent": request.headers.get("user-agent")}


async def record_admin_action(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    actor_id: str | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    occurred_at: datetime | None = None,
) -> bool:
    """Write one audit row on a dedicated session.

    Never raises: any failure is logged and reported as ``False``.
    """
    entry = AdminAuditLog(
        actor_id=actor_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        metadata_json=sanitize_metadata(metadata or {}),
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=occurred_at or datetime.now(timezone.utc),
    )
    try:
        async with session_factory() as session:
            try:
                session.add(entry)
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
    except Exception as exc:  # noqa: BLE001 - audit writes never reach the caller
        logger.warning("admin_audit_write_failed action=%s resource_id=%s", action, resource_id, exc_info=exc)
        return False
    return True


def spawn_admin_audit(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    request: Request | None,
    actor_id: str | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> asyncio.Task[None]:
    """Schedule an audit write without awaiting it.

    Best effort only: a crash or shutdown before the task runs loses the row.
    """
    context = get_request_context(request)

    async def _run() -> None:
        await record_admin_action(
            session_factory,
            actor_id=actor_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            metadata=metadata,
            ip_address=context["ip_address"],
            user_agent=context["user_agent"],
        )

    task = asyncio.create_task(_run())
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_pending_audits() -> None:
    # Wait for scheduled audit writes; used on shutdown and in tests.
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
