from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
from typing import Any
from urllib.parse import quote

import httpx

from ownerportal.core.config import Settings
from ownerportal.services.identity.directory import IdentityDirectoryClient


IDENTITY_BASE_URL = "https://identity.test"


def identity_settings(**overrides: Any) -> Settings:
    # Deterministic settings pointing at the in-memory identity server.
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "identity_base_url": IDENTITY_BASE_URL,
        "identity_service_key": "service-key",
        "identity_anon_key": "anon-key",
        "admin_owner_emails": "owner@example.com",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class FakeIdentityServer:
    """In-memory stand-in for the identity directory admin API."""

    users: dict[str, dict[str, Any]] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)
    bans: dict[str, str] = field(default_factory=dict)
    signed_out: list[str] = field(default_factory=list)
    recovery_requests: list[dict[str, Any]] = field(default_factory=list)
    list_calls: list[tuple[int, int]] = field(default_factory=list)
    fail_admin_writes: bool = False
    fail_listing: bool = False

    def add_user(
        self,
        user_id: str,
        email: str | None,
        *,
        token: str | None = None,
        created_at: datetime | None = None,
        last_sign_in_at: datetime | None = None,
        provider: str = "email",
    ) -> None:
        self.users[user_id] = {
            "id": user_id,
            "email": email,
            "app_metadata": {"provider": provider},
            "created_at": _iso(created_at),
            "last_sign_in_at": _iso(last_sign_in_at),
            "email_confirmed_at": _iso(created_at),
        }
        if token:
            self.tokens[token] = user_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/auth/v1")
        if path == "/user" and request.method == "GET":
            token = request.headers.get("authorization", "").removeprefix("Bearer ").strip()
            user_id = self.tokens.get(token)
            if user_id is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self.users[user_id])
        if request.headers.get("apikey") != "service-key":
            return httpx.Response(403, json={"msg": "forbidden"})
        if path == "/admin/users" and request.method == "GET":
            if self.fail_listing:
                return httpx.Response(500, json={"msg": "unavailable"})
            page = int(request.url.params.get("page", "1"))
            per_page = int(request.url.params.get("per_page", "50"))
            self.list_calls.append((page, per_page))
            ordered = [self.users[key] for key in sorted(self.users)]
            start = (page - 1) * per_page
            return httpx.Response(200, json={"users": ordered[start : start + per_page]})
        if path == "/admin/generate_link" and request.method == "POST":
            if self.fail_admin_writes:
                return httpx.Response(500, json={"msg": "unavailable"})
            body = json.loads(request.content or b"{}")
            self.recovery_requests.append(body)
            link = f"{IDENTITY_BASE_URL}/verify?type=recovery&email={quote(body.get('email', ''))}"
            return httpx.Response(200, json={"properties": {"action_link": link}})
        if path.startswith("/admin/users/"):
            rest = path.removeprefix("/admin/users/")
            if rest.endswith("/logout") and request.method == "POST":
                user_id = rest.removesuffix("/logout")
                if self.fail_admin_writes:
                    return httpx.Response(500, json={"msg": "unavailable"})
                self.signed_out.append(user_id)
                return httpx.Response(204)
            user = self.users.get(rest)
            if request.method == "GET":
                return httpx.Response(200, json=user) if user else httpx.Response(404, json={"msg": "not found"})
            if request.method == "PUT":
                if self.fail_admin_writes:
                    return httpx.Response(500, json={"msg": "unavailable"})
                if user is None:
                    return httpx.Response(404, json={"msg": "not found"})
                body = json.loads(request.content or b"{}")
                self.bans[rest] = body.get("ban_duration")
                return httpx.Response(200, json=user)
        return httpx.Response(404, json={"msg": "no route"})

    def client(self, settings: Settings) -> IdentityDirectoryClient:
        transport = httpx.MockTransport(self.handler)
        return IdentityDirectoryClient(settings, client=httpx.AsyncClient(transport=transport))
