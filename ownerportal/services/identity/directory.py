from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

import httpx

from ownerportal.core.config import Settings
from ownerportal.core.errors import IdentityConfigError, UnauthorizedError, UpstreamError
from ownerportal.domain.records import DirectoryUser, as_utc


logger = logging.getLogger(__name__)

# "Forever" for ban purposes: roughly a century.
PERMANENT_BAN_DURATION = "876000h"
UNBAN_DURATION = "none"


@dataclass(frozen=True)
class DirectoryListing:
    users: list[DirectoryUser]
    pages: int
    # True when the page cap stopped iteration before the directory ran out.
    truncated: bool


def _parse_ts(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    # Some directories emit nanoseconds; fromisoformat accepts at most six digits.
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for idx, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[idx:]
                break
            digits += char
        text = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_directory_user(payload: dict[str, Any]) -> DirectoryUser:
    app_metadata = payload.get("app_metadata") or {}
    return DirectoryUser(
        id=str(payload.get("id") or ""),
        email=payload.get("email") or None,
        provider=app_metadata.get("provider"),
        created_at=_parse_ts(payload.get("created_at")),
        last_sign_in_at=_parse_ts(payload.get("last_sign_in_at")),
        email_confirmed_at=_parse_ts(payload.get("email_confirmed_at") or payload.get("confirmed_at")),
        banned_until=_parse_ts(payload.get("banned_until")),
    )


class IdentityDirectoryClient:
    """Thin async client for a GoTrue-style identity directory admin API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.identity_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        base_url = self._settings.identity_base_url
        if not base_url:
            raise IdentityConfigError("IDENTITY_BASE_URL is required")
        return f"{base_url.rstrip('/')}/auth/v1{path}"

    def _admin_headers(self) -> dict[str, str]:
        service_key = self._settings.identity_service_key
        if not service_key:
            raise IdentityConfigError("IDENTITY_SERVICE_KEY is required")
        return {"apikey": service_key, "Authorization": f"Bearer {service_key}"}

    async def _request(self, method: str, path: str, *, operation: str, **kwargs: Any) -> httpx.Response:
        url = self._url(path)
        try:
            return await self._get_client().request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("identity_request_failed operation=%s", operation, exc_info=exc)
            raise UpstreamError(f"Identity provider {operation} request failed") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.status_code < 400:
            return
        logger.warning("identity_request_rejected operation=%s status=%s", operation, response.status_code)
        raise UpstreamError(f"Identity provider {operation} failed with status {response.status_code}")

    @staticmethod
    def _json_body(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("identity_response_invalid operation=%s status=%s", operation, response.status_code)
            raise UpstreamError(f"Identity provider {operation} returned an invalid body") from exc

    @classmethod
    def _user_body(cls, response: httpx.Response, operation: str) -> DirectoryUser:
        body = cls._json_body(response, operation)
        if not isinstance(body, dict):
            raise UpstreamError(f"Identity provider {operation} returned an invalid body")
        return parse_directory_user(body)

    async def get_user_for_token(self, token: str) -> DirectoryUser:
        """Resolve a caller's bearer token to their directory identity."""
        anon_key = self._settings.identity_anon_key or self._settings.identity_service_key
        if not anon_key:
            raise IdentityConfigError("IDENTITY_ANON_KEY is required")
        response = await self._request(
            "GET",
            "/user",
            operation="get_user",
            headers={"apikey": anon_key, "Authorization": f"Bearer {token}"},
        )
        if response.status_code in {401, 403}:
            raise UnauthorizedError("Invalid or expired token")
        self._raise_for_status(response, "get_user")
        user = self._user_body(response, "get_user")
        if not user.id:
            raise UnauthorizedError("Invalid or expired token")
        return user

    async def get_user(self, user_id: str) -> DirectoryUser | None:
        response = await self._request(
            "GET", f"/admin/users/{user_id}", operation="get_user_by_id", headers=self._admin_headers()
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "get_user_by_id")
        return self._user_body(response, "get_user_by_id")

    async def list_users(self, *, page: int, per_page: int) -> tuple[list[DirectoryUser], bool]:
        """Fetch one page; the flag says whether another page may follow."""
        response = await self._request(
            "GET",
            "/admin/users",
            operation="list_users",
            headers=self._admin_headers(),
            params={"page": page, "per_page": per_page},
        )
        self._raise_for_status(response, "list_users")
        body = self._json_body(response, "list_users")
        raw_users = body.get("users") if isinstance(body, dict) else body
        users = [parse_directory_user(item) for item in raw_users or [] if isinstance(item, dict)]
        if response.headers.get("link"):
            has_next = "next" in response.links
        else:
            has_next = len(users) >= per_page
        return users, bool(users) and has_next

    async def list_all_users(self, *, page_size: int, max_pages: int) -> DirectoryListing:
        # Cursor-style paging is inherently sequential; max_pages bounds it.
        users: list[DirectoryUser] = []
        pages = 0
        has_next = True
        while has_next and pages < max(1, max_pages):
            batch, has_next = await self.list_users(page=pages + 1, per_page=page_size)
            pages += 1
            users.extend(batch)
        truncated = has_next
        if truncated:
            logger.warning("identity_directory_truncated pages=%s users=%s", pages, len(users))
        return DirectoryListing(users=users, pages=pages, truncated=truncated)

    async def set_ban(self, user_id: str, ban_duration: str) -> None:
        response = await self._request(
            "PUT",
            f"/admin/users/{user_id}",
            operation="set_ban",
            headers=self._admin_headers(),
            json={"ban_duration": ban_duration},
        )
        self._raise_for_status(response, "set_ban")

    async def sign_out_user(self, user_id: str) -> None:
        response = await self._request(
            "POST", f"/admin/users/{user_id}/logout", operation="sign_out", headers=self._admin_headers()
        )
        self._raise_for_status(response, "sign_out")

    async def generate_recovery_link(self, email: str, *, redirect_to: str | None) -> str:
        payload: dict[str, Any] = {"type": "recovery", "email": email}
        if redirect_to:
            payload["redirect_to"] = redirect_to
        response = await self._request(
            "POST",
            "/admin/generate_link",
            operation="generate_link",
            headers=self._admin_headers(),
            json=payload,
        )
        self._raise_for_status(response, "generate_link")
        body = self._json_body(response, "generate_link")
        if not isinstance(body, dict):
            raise UpstreamError("Identity provider generate_link returned an invalid body")
        link = body.get("action_link") or (body.get("properties") or {}).get("action_link")
        if not link:
            raise UpstreamError("Identity provider returned no recovery link")
        return str(link)
