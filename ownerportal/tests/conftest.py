from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ownerportal.core.config import get_settings
from ownerportal.services.audit import drain_pending_audits
from ownerportal.tests.utils.db import create_schema
from ownerportal.tests.utils.identity import FakeIdentityServer, identity_settings


@pytest.fixture
async def engine(tmp_path):
    # One SQLite file per test keeps data and schema fully isolated.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")
    yield engine
    await drain_pending_audits()
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    await create_schema(engine)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return identity_settings()


@pytest.fixture
def identity_server() -> FakeIdentityServer:
    return FakeIdentityServer()


@pytest.fixture
async def directory(identity_server, settings):
    client = identity_server.client(settings)
    yield client
    await client.aclose()


@pytest.fixture(autouse=True)
async def isolate_between_tests():
    # Flush fire-and-forget audit writes before the engine is disposed.
    get_settings.cache_clear()
    yield
    await drain_pending_audits()
    get_settings.cache_clear()
