"""Shared fixtures: a throwaway SQLite database per test and configured providers."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.core.config import settings
from app.core.database import Base
from app.models.user import User
import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.services.audit import AuditNotifier
from app.services.connections import ConnectionManager
from app.services.integration_store import IntegrationStore


PROVIDER_SETTING_PREFIXES = ("SALESFORCE", "MICROSOFT", "HUBSPOT", "GOOGLE", "MONDAY")


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session):
    return IntegrationStore(session)


@pytest.fixture
def audit(session_factory):
    return AuditNotifier(session_factory=session_factory)


@pytest.fixture
def manager(store, audit):
    return ConnectionManager(store, audit=audit)


@pytest.fixture
def configured_providers(monkeypatch):
    for prefix in PROVIDER_SETTING_PREFIXES:
        monkeypatch.setattr(settings, f"{prefix}_CLIENT_ID", f"{prefix.lower()}-client")
        monkeypatch.setattr(settings, f"{prefix}_CLIENT_SECRET", f"{prefix.lower()}-secret")


def make_user(user_id: str, organization_id=None, role: str = "member") -> User:
    return User(
        id=user_id,
        email=f"{user_id.lower()}@example.com",
        organization_id=organization_id,
        role=role,
        is_active=True,
    )
