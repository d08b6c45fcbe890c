"""
Centralized Test Configuration.
"""

import os
import tempfile

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool, Pool

from fleet_backend.app.main import app
from fleet_backend.app.db.session import get_db, Base
from fleet_backend.app.core.jwt import create_access_token
from fleet_backend.app.core.locks import KeyedLock
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.schemas.truck import TruckCreate
from fleet_backend.app.services.event_bus import EventBus
from fleet_backend.app.services.truck_registry import TruckRegistry
import fleet_backend.app.core.redis_client as redis_client_module

# File-backed database so concurrent sessions get their own connections
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"fleet_dispatch_test_{os.getpid()}.db")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{TEST_DB_PATH}"


# Event handler to enable foreign keys for SQLite
@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"timeout": 30},
    poolclass=NullPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.published = []
        self.fail = False
        self._closed = False

    async def ping(self):
        if self._closed or self.fail:
            return False
        return True

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("Redis unavailable")
        self.published.append((channel, message))
        return 1

    def reset(self):
        self.published = []
        self.fail = False

    async def aclose(self):
        self._closed = True


@pytest.fixture(scope="session")
def mock_redis():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides(mock_redis):
    """Apply overrides once for the session."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = mock_redis

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
async def setup_database(mock_redis):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    mock_redis.reset()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory():
    """Factory for independent sessions (one per concurrent caller)."""
    return TestingSessionLocal


@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def event_bus():
    """Fresh event bus, also installed on the app for API tests."""
    bus = EventBus(queue_size=100)
    original = app.state.event_bus
    app.state.event_bus = bus
    yield bus
    app.state.event_bus = original


@pytest.fixture
def record_locks():
    locks = KeyedLock()
    original = app.state.record_locks
    app.state.record_locks = locks
    yield locks
    app.state.record_locks = original


@pytest.fixture
async def client(event_bus, record_locks):
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_truck(db_session):
    """Onboard a truck and commit it; returns the Truck."""
    counter = {"n": 0}

    async def _make_truck(latitude=None, longitude=None, **overrides):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "truck_code": f"TRK-{n:03d}",
            "driver_name": f"Driver {n}",
            "driver_phone": f"+25470000{n:04d}",
            "driver_user_id": 300 + n,
            "license_plate": f"kc{n:03d}x",
            "latitude": latitude,
            "longitude": longitude,
        }
        data.update(overrides)
        truck = await TruckRegistry(db_session).onboard(TruckCreate(**data))
        await db_session.commit()
        return truck

    return _make_truck


def make_token(user_id: int, role: UserRole, username: str = None) -> str:
    return create_access_token({"sub": username or f"user{user_id}", "user_id": user_id, "role": role.value})


def auth_headers(user_id: int, role: UserRole) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def token_for():
    return make_token


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def operator_headers():
    return auth_headers(1, UserRole.OPERATOR)


@pytest.fixture
def customer_headers():
    return auth_headers(101, UserRole.CUSTOMER)
