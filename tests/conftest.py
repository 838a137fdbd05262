"""Shared fixtures.

Settings come from environment variables pointing at a per-test SQLite
file and storage directory, so every ``get_settings()`` call in the code
under test sees the same configuration.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import explorable.models  # noqa: F401
from explorable.concurrency import locks
from explorable.config import Settings, get_settings
from tests.fakes import FakeDriver, FakeFragmentGenerator

ADMIN_USER = "admin-user"


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch) -> Settings:
    """Isolated settings for each test."""
    monkeypatch.setenv("EXPLORABLE_CONFIG_FILE", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("EXPLORABLE_DATABASE__URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("EXPLORABLE_STORAGE__ROOT_PATH", str(tmp_path / "storage"))
    monkeypatch.setenv("EXPLORABLE_PIPELINE__BOOT_TIMEOUT_SECONDS", "1")
    monkeypatch.setenv("EXPLORABLE_PIPELINE__RUN_TIMEOUT_SECONDS", "10")
    monkeypatch.setenv("EXPLORABLE_SECURITY__ADMIN_USER_IDS", f'["{ADMIN_USER}"]')
    monkeypatch.setenv("EXPLORABLE_GC__ENABLED", "false")

    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_locks():
    """In-memory locks must not leak between event loops."""
    locks._template_locks.clear()
    locks._project_locks.clear()
    yield
    locks._template_locks.clear()
    locks._project_locks.clear()


@pytest.fixture(autouse=True)
def ready_probe():
    """Readiness probes pass immediately unless a test says otherwise."""
    with patch(
        "explorable.managers.instance.instance.probe_tcp",
        new=AsyncMock(return_value=True),
    ) as probe:
        yield probe


@pytest.fixture
async def session_factory(settings: Settings):
    """File-backed SQLite so independent sessions share one database."""
    engine = create_async_engine(settings.database.url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def fake_generator() -> FakeFragmentGenerator:
    return FakeFragmentGenerator()
