from __future__ import annotations

from typing import AsyncGenerator

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ownerportal.apps.api.deps import get_db, get_directory, get_session_factory, settings_dependency
from ownerportal.apps.api.main import create_app
from ownerportal.core.config import Settings
from ownerportal.services.identity.directory import IdentityDirectoryClient
from ownerportal.tests.utils.identity import FakeIdentityServer


def build_test_app(
    session_factory: async_sessionmaker[AsyncSession],
    identity_server: FakeIdentityServer,
    settings: Settings,
) -> FastAPI:
    # Wire the real app to a SQLite database and the in-memory identity server.
    app = create_app()

    async def _db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _directory() -> AsyncGenerator[IdentityDirectoryClient, None]:
        directory = identity_server.client(settings)
        try:
            yield directory
        finally:
            await directory.aclose()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[settings_dependency] = lambda: settings
    app.dependency_overrides[get_directory] = _directory
    return app
