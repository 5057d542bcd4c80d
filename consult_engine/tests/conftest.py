"""
Centralized Test Configuration.
"""

import itertools
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool, Pool
from redis.exceptions import ConnectionError as RedisConnectionError

from consult_engine.app.main import app
from consult_engine.app.db.session import get_db, Base
from consult_engine.app.core.clock import FrozenClock, get_clock
from consult_engine.app.core.redis_client import get_redis
from consult_engine.app.core.reliability import notification_circuit_breaker
import consult_engine.app.core.redis_client as redis_client_module
from consult_engine.app.models.user import User
from consult_engine.app.models.enums import UserRole
from consult_engine.app.models.subscription import Subscription
from consult_engine.app.models.text_session import TextSession
from consult_engine.app.models.call_session import CallSession
from consult_engine.app.models.appointment import Appointment
from consult_engine.app.models.wallet import ProviderWallet, WalletTransaction
from consult_engine.app.models.audit_log import AuditLog
from consult_engine.app.models.notification import Notification
from consult_engine.app.models.consultation_enums import (
    TextSessionStatus, CallSessionStatus, CallType, ConsultationType,
    AppointmentStatus, SubscriptionStatus,
)

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Monday morning, naive UTC
T0 = datetime(2026, 3, 2, 9, 0, 0)


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}
        self._closed = False

    async def ping(self):
        return not self._closed

    async def get(self, key):
        if self._closed or key not in self.store:
            return None
        return str(self.store[key])

    async def set(self, key, value, ex=None):
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def incr(self, key, amount=1):
        self.store[key] = int(self.store.get(key, 0)) + amount
        return self.store[key]

    async def expire(self, key, seconds):
        if key not in self.store:
            return False
        self.ttls[key] = seconds
        return True

    async def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    async def flushdb(self):
        self.store = {}
        self.ttls = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class FailingRedis(MockRedis):
    """Counter store that is down."""

    async def ping(self):
        raise RedisConnectionError("Connection refused")

    async def get(self, key):
        raise RedisConnectionError("Connection refused")

    async def incr(self, key, amount=1):
        raise RedisConnectionError("Connection refused")

    async def expire(self, key, seconds):
        raise RedisConnectionError("Connection refused")


class Factory:
    """Persists fixture rows and reads ledger state back."""

    def __init__(self, db: AsyncSession, clock: FrozenClock):
        self.db = db
        self.clock = clock
        self._seq = itertools.count(1)

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def user(self, role: UserRole, country=None) -> User:
        n = next(self._seq)
        return await self._save(User(
            email=f"{role.value.lower()}{n}@test.com",
            full_name=f"{role.value.title()} {n}",
            role=role,
            country=country,
        ))

    async def patient(self) -> User:
        return await self.user(UserRole.PATIENT)

    async def provider(self, country=None) -> User:
        return await self.user(UserRole.PROVIDER, country=country)

    async def subscription(
        self, patient_id, text=10, voice=10, video=10,
        start=None, end=None, plan_duration_days=30, metadata=None,
    ) -> Subscription:
        now = self.clock.now()
        return await self._save(Subscription(
            user_id=patient_id,
            plan_name="Standard",
            plan_duration_days=plan_duration_days,
            text_sessions_remaining=text,
            voice_calls_remaining=voice,
            video_calls_remaining=video,
            is_active=True,
            status=SubscriptionStatus.ACTIVE,
            start_date=start or now - timedelta(days=10),
            end_date=end or now + timedelta(days=20),
            payment_transaction_id=f"txn_{patient_id}",
            payment_gateway="paychangu",
            payment_metadata=metadata,
        ))

    async def text_session(
        self, patient_id, provider_id, status=TextSessionStatus.ACTIVE,
        activated_at=None, processed=0, snapshot=10, started_at=None, last_activity_at=None,
    ) -> TextSession:
        now = self.clock.now()
        if activated_at is None and status != TextSessionStatus.WAITING_FOR_PROVIDER:
            activated_at = now
        return await self._save(TextSession(
            patient_id=patient_id,
            provider_id=provider_id,
            status=status,
            started_at=started_at or activated_at or now,
            activated_at=activated_at,
            last_activity_at=last_activity_at or activated_at or now,
            sessions_used=processed,
            auto_deductions_processed=processed,
            sessions_remaining_before_start=snapshot,
        ))

    async def call_session(
        self, patient_id, provider_id, call_type=CallType.VOICE, status=CallSessionStatus.ACTIVE,
        connected_at=None, processed=0, snapshot=10, started_at=None,
    ) -> CallSession:
        now = self.clock.now()
        if connected_at is None and status == CallSessionStatus.ACTIVE:
            connected_at = now
        return await self._save(CallSession(
            patient_id=patient_id,
            provider_id=provider_id,
            call_type=call_type,
            status=status,
            started_at=started_at or connected_at or now,
            answered_at=connected_at,
            connected_at=connected_at,
            last_activity_at=connected_at or now,
            sessions_used=processed,
            auto_deductions_processed=processed,
            sessions_remaining_before_start=snapshot,
            call_duration_seconds=0,
        ))

    async def appointment(
        self, patient_id, provider_id, consultation_type=ConsultationType.TEXT,
        status=AppointmentStatus.CONFIRMED, scheduled_at=None,
        session_type=None, session_id=None, sessions_deducted=0, earnings_awarded=0.0,
    ) -> Appointment:
        return await self._save(Appointment(
            patient_id=patient_id,
            provider_id=provider_id,
            consultation_type=consultation_type,
            status=status,
            scheduled_at_utc=scheduled_at or self.clock.now() - timedelta(minutes=1),
            session_type=session_type,
            session_id=session_id,
            sessions_deducted=sessions_deducted,
            earnings_awarded=earnings_awarded,
        ))

    async def reload(self, model, row_id):
        result = await self.db.execute(
            select(model).where(model.id == row_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def wallet(self, provider_id):
        result = await self.db.execute(
            select(ProviderWallet)
            .where(ProviderWallet.provider_id == provider_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transactions(self, provider_id):
        result = await self.db.execute(
            select(WalletTransaction)
            .join(ProviderWallet, WalletTransaction.wallet_id == ProviderWallet.id)
            .where(ProviderWallet.provider_id == provider_id)
            .order_by(WalletTransaction.id)
        )
        return result.scalars().all()

    async def audit_actions(self, target_type, target_id):
        result = await self.db.execute(
            select(AuditLog.action)
            .where(AuditLog.target_type == target_type, AuditLog.target_id == target_id)
            .order_by(AuditLog.id)
        )
        return result.scalars().all()

    async def notifications(self, user_id):
        result = await self.db.execute(
            select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
        )
        return result.scalars().all()


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    notification_circuit_breaker.reset_state()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def failing_redis():
    return FailingRedis()


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def make(db_session, clock):
    return Factory(db_session, clock)


@pytest.fixture
async def client(mock_redis, clock, monkeypatch):
    """Async client for testing."""
    monkeypatch.setattr(redis_client_module, "redis_client", mock_redis)

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}


@pytest.fixture
async def file_sessionmaker(tmp_path):
    """
    File-backed database for tests that run several sessions at once.
    Each AsyncSession gets its own connection, as against PostgreSQL.
    """
    file_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}")
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)

    await file_engine.dispose()


@pytest.fixture
async def file_make(file_sessionmaker, clock):
    async with file_sessionmaker() as session:
        yield Factory(session, clock)
