"""
Centralized Test Configuration.
"""

import pytest
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from courier_backend.app.main import app
from courier_backend.app.db.session import get_db, Base
from courier_backend.app.core.redis_client import get_redis
from courier_backend.app.core.jwt import create_access_token
from courier_backend.app.domain.parcels import parcel_service
from courier_backend.app.models.hub import Hub
from courier_backend.app.models.merchant_finance_transaction import MerchantFinanceTransaction
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import ParcelStatus
from courier_backend.app.models.rider import Rider
from courier_backend.app.schemas.parcel import DeliveryOutcome, ParcelCreate
import courier_backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

MERCHANT_ID = 501
OTHER_MERCHANT_ID = 502
ADMIN_USER_ID = 1
HUB_MANAGER_USER_ID = 10
RIDER_USER_ID = 20


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if self._closed:
            return False
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis_client():
    return MockRedis()


@pytest.fixture
async def client(session_factory, redis_client):
    """Async client wired to the test database and mock Redis."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client

    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        return redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


def auth_headers(role: str, user_id: int, **scope) -> dict:
    token = create_access_token(data={"sub": f"{role.lower()}-{user_id}", "user_id": user_id, "role": role, **scope})
    return {"Authorization": f"Bearer {token}"}


# Fixture data. Fixtures hand out ids: ORM objects expire when a failed
# operation rolls the shared session back.

async def _add(db: AsyncSession, obj):
    db.add(obj)
    await db.commit()
    return obj.id


@pytest.fixture
async def hub_id(db_session):
    return await _add(db_session, Hub(code="DHK-01", name="Dhaka Central", manager_id=HUB_MANAGER_USER_ID))


@pytest.fixture
async def second_hub_id(db_session):
    return await _add(db_session, Hub(code="CTG-01", name="Chattogram"))


@pytest.fixture
async def third_hub_id(db_session):
    return await _add(db_session, Hub(code="SYL-01", name="Sylhet"))


@pytest.fixture
async def rider_id(db_session, hub_id):
    return await _add(db_session, Rider(hub_id=hub_id, user_id=RIDER_USER_ID, full_name="Karim Uddin"))


@pytest.fixture
async def other_rider_id(db_session, second_hub_id):
    return await _add(db_session, Rider(hub_id=second_hub_id, full_name="Rahim Mia"))


@pytest.fixture
def make_parcel(db_session, hub_id):
    """Book a parcel at the test hub; returns its id."""
    async def _make(**overrides):
        data = {
            "merchant_id": MERCHANT_ID,
            "pickup_hub_id": hub_id,
            "customer_name": "Test Customer",
            "pickup_address": "Store 4, Gulshan",
            "delivery_address": "House 12, Road 5, Dhanmondi",
            "delivery_charge": Decimal("60"),
            "is_cod": True,
            "cod_amount": Decimal("500"),
        }
        data.update(overrides)
        parcel = await parcel_service.create_parcel(db_session, ParcelCreate(**data), actor_id=HUB_MANAGER_USER_ID)
        return parcel.id
    return _make


@pytest.fixture
def out_for_delivery(db_session, hub_id, rider_id, make_parcel):
    """Book a parcel and walk it to OUT_FOR_DELIVERY with the test rider."""
    async def _dispatch(**overrides):
        parcel_id = await make_parcel(**overrides)
        await parcel_service.mark_received(db_session, parcel_id, hub_id)
        await parcel_service.assign_to_rider(db_session, parcel_id, hub_id, rider_id)
        await parcel_service.dispatch_for_delivery(db_session, parcel_id, rider_id)
        return parcel_id
    return _dispatch


@pytest.fixture
def deliver(db_session, rider_id):
    """Apply a delivery outcome as the test rider."""
    async def _deliver(parcel_id, status=ParcelStatus.DELIVERED, collected=None, reason=None):
        outcome = DeliveryOutcome(
            parcel_id=parcel_id,
            selected_status=status,
            collected_amount=collected,
            reason=reason,
        )
        return await parcel_service.apply_delivery_outcome(db_session, outcome, rider_id, actor_id=RIDER_USER_ID)
    return _deliver


async def fetch_parcel(db: AsyncSession, parcel_id: int) -> Parcel:
    result = await db.execute(
        select(Parcel).where(Parcel.id == parcel_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def ledger_rows(db: AsyncSession, merchant_id: int = MERCHANT_ID):
    result = await db.execute(
        select(MerchantFinanceTransaction)
        .where(MerchantFinanceTransaction.merchant_id == merchant_id)
        .order_by(MerchantFinanceTransaction.sequence)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.fixture
def fetch():
    """Fresh reads that bypass stale identity-map state."""
    class Fetch:
        parcel = staticmethod(fetch_parcel)
        ledger = staticmethod(ledger_rows)
    return Fetch
