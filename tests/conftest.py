"""Shared test fixtures — per-test async SQLite file DB, services and test client."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, select

# Import all models so metadata is populated
import licensing.models  # noqa: F401
from licensing.api import deps
from licensing.core.cache import DecisionCache
from licensing.core.periods import monthly_period
from licensing.main import app
from licensing.models.license import LicenseCreate, ModuleLicenseCreate
from licensing.models.license_audit import LicenseAudit
from licensing.services.audit_logger import AuditLogger
from licensing.services.license_store import LicenseStore
from licensing.services.license_validator import LicenseValidator
from licensing.services.usage_tracker import UsageTracker

START = datetime(2026, 10, 15, 12, 0, 0)


class FakeClock:
    """Drives both the wall clock (naive UTC) and the monotonic clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start
        self.ticks = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.ticks

    def advance(self, **kwargs: float) -> None:
        delta = timedelta(**kwargs)
        self.current += delta
        self.ticks += delta.total_seconds()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    # A file DB so concurrent sessions use separate connections
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'licensing.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
def cache(clock) -> DecisionCache:
    return DecisionCache(ttl=60.0, clock=clock.monotonic)


@pytest.fixture
def audit(test_session_factory, clock) -> AuditLogger:
    return AuditLogger(test_session_factory, clock=clock.now)


@pytest.fixture
def store(test_session_factory, audit, cache, clock) -> LicenseStore:
    return LicenseStore(test_session_factory, audit, cache, clock=clock.now)


@pytest.fixture
def validator(store, audit, cache, clock) -> LicenseValidator:
    return LicenseValidator(store, audit, cache, clock=clock.now)


@pytest.fixture
def tracker(test_session_factory, store, audit, clock) -> UsageTracker:
    return UsageTracker(
        test_session_factory,
        store,
        audit,
        period_fn=monthly_period,
        clock=clock.now,
        batch_interval=3600,
    )


@pytest.fixture
def seed_license(store, clock):
    """Create a license; ``modules`` maps module key → ModuleLicenseCreate kwargs."""

    async def _seed(tenant_id: str, modules: dict[str, dict] | None = None, **kwargs):
        entries = []
        for key, options in (modules or {}).items():
            options = {"expires_at": clock.now() + timedelta(days=365), **options}
            entries.append(ModuleLicenseCreate(module_key=key, **options))
        return await store.create_license(
            LicenseCreate(
                tenant_id=tenant_id,
                subscription_id=f"sub-{tenant_id}",
                modules=entries,
                **kwargs,
            )
        )

    return _seed


@pytest.fixture
def audit_rows(test_session_factory):
    """Fetch persisted audit rows for a tenant, oldest first."""

    async def _rows(tenant_id: str, event_type=None) -> list[LicenseAudit]:
        stmt = select(LicenseAudit).where(LicenseAudit.tenant_id == tenant_id)
        if event_type is not None:
            stmt = stmt.where(LicenseAudit.event_type == event_type)
        async with test_session_factory() as sess:
            result = await sess.execute(stmt.order_by(LicenseAudit.timestamp))
            return list(result.scalars().all())

    return _rows


@pytest.fixture
async def client(audit, store, validator, tracker) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with the services bound to the test DB."""
    app.dependency_overrides[deps.get_audit_logger] = lambda: audit
    app.dependency_overrides[deps.get_license_store] = lambda: store
    app.dependency_overrides[deps.get_license_validator] = lambda: validator
    app.dependency_overrides[deps.get_usage_tracker] = lambda: tracker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
