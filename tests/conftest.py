"""
Shared test fixtures.

These replace real infrastructure with lightweight in-memory alternatives:
- PostgreSQL → SQLite (in memory for service tests, a temp file when the sync
  services and the async API endpoints must see the same rows)
- Redis → fakeredis (pure Python Redis mock)
- HTTP server → httpx.AsyncClient with ASGI transport (no network)
- Wall clock → FakeClock, so lease expiry and delayed items are deterministic

This means tests:
- Run without Docker
- Run in milliseconds (no network, no real waiting)
- Are fully isolated (each test gets a fresh database and Redis)
"""

import fakeredis
import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.dependencies import (
    get_breakers,
    get_db,
    get_detector,
    get_redis,
    get_registry,
    get_scheduler,
    get_tracking,
)
from api.main import create_app
from errors.circuit_breaker import CircuitBreakerRegistry
from errors.tracking import ErrorTrackingService
from models.base import Base
from queues.broker import RedisBroker
from queues.compensation import CompensationLog
from queues.registry import QueueRegistry
from recovery.stuck_tasks import InMemoryStuckCounterStore, StuckTaskDetector
from scheduler.recurring import RecurringScheduler


class FakeClock:
    """Stand-in for time.time(); tests move it forward explicitly."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Sync stack (services, worker) ───────────────────────────────
@pytest.fixture
def session_factory():
    """A fresh in-memory database shared by every session the test opens."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def redis_client():
    r = fakeredis.FakeRedis(decode_responses=True)
    yield r
    r.flushall()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(redis_client, clock):
    return RedisBroker(redis_client, prefix="test", clock=clock)


@pytest.fixture
def alerts():
    """Collects alerts raised by the tracking service instead of logging them."""
    return []


@pytest.fixture
def tracking(session_factory, alerts):
    return ErrorTrackingService(session_factory, alert_sink=alerts.append)


@pytest.fixture
def compensation_log():
    return CompensationLog()


@pytest.fixture
def registry(session_factory, broker, compensation_log):
    return QueueRegistry(session_factory, broker, compensation_log)


@pytest.fixture
def stuck_counters():
    return InMemoryStuckCounterStore()


@pytest.fixture
def detector(session_factory, broker, tracking, stuck_counters, compensation_log):
    return StuckTaskDetector(session_factory, broker, tracking, stuck_counters, compensation_log)


@pytest.fixture
def recurring(broker):
    return RecurringScheduler(broker)


# ── Async stack (API) ───────────────────────────────────────────
@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "jobs.db"


@pytest_asyncio.fixture
async def async_engine(db_path):
    """Async engine over the same SQLite file the sync services write to."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(async_engine):
    """Create a database session bound to the test engine."""
    factory = async_sessionmaker(async_engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def file_session_factory(db_path, async_engine):
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    yield sessionmaker(engine, expire_on_commit=False)
    engine.dispose()


@pytest_asyncio.fixture
async def fake_redis():
    """Create a fake async Redis instance for the health endpoint."""
    r = FakeRedis()
    yield r
    await r.flushall()


@pytest.fixture
def api_services(file_session_factory, redis_client, clock):
    broker = RedisBroker(redis_client, prefix="test", clock=clock)
    compensation_log = CompensationLog()
    tracking = ErrorTrackingService(file_session_factory, alert_sink=lambda alert: None)
    return {
        "broker": broker,
        "session_factory": file_session_factory,
        "tracking": tracking,
        "registry": QueueRegistry(file_session_factory, broker, compensation_log),
        "scheduler": RecurringScheduler(broker),
        "detector": StuckTaskDetector(
            file_session_factory, broker, tracking, InMemoryStuckCounterStore(), compensation_log
        ),
        "breakers": CircuitBreakerRegistry(redis_client, prefix="test", clock=clock),
    }


@pytest_asyncio.fixture
async def client(async_session, fake_redis, api_services):
    """
    Create a test HTTP client that talks directly to the FastAPI app.

    dependency_overrides tells FastAPI: "instead of the services the lifespan
    would build, use these test versions." ASGITransport doesn't run the
    lifespan, so nothing touches real Postgres or Redis.
    """
    app = create_app()

    async def override_get_db():
        yield async_session

    async def override_get_redis():
        return fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_registry] = lambda: api_services["registry"]
    app.dependency_overrides[get_tracking] = lambda: api_services["tracking"]
    app.dependency_overrides[get_scheduler] = lambda: api_services["scheduler"]
    app.dependency_overrides[get_detector] = lambda: api_services["detector"]
    app.dependency_overrides[get_breakers] = lambda: api_services["breakers"]

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
