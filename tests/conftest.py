"""
Общие фикстуры: SQLite в памяти вместо PostgreSQL, фейковый Redis
"""
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import RedisError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shared import admin_notifier
from shared.database import Base, get_session, utcnow
from affiliate_api.services import click_service
from affiliate_api.services.affiliate_service import AffiliateService
from affiliate_api.services.competition_service import CompetitionService
from affiliate_api.services.referral_service import ReferralService


class FakeCache:
    """Счётчики rate limit в памяти"""

    def __init__(self):
        self.counters = {}
        self.fail = False

    async def incr(self, key: str, ttl: int) -> int:
        if self.fail:
            raise RedisError("connection refused")
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def ping(self) -> bool:
        return True


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """
    Файловая SQLite для параллельных сессий: у каждой своё соединение

    BEGIN IMMEDIATE берёт блокировку записи в начале транзакции,
    остальные ждут её в пределах timeout.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'affiliates.db'}",
        connect_args={"timeout": 30}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def fake_cache(monkeypatch):
    cache = FakeCache()
    monkeypatch.setattr(click_service, "cache", cache)
    return cache


@pytest.fixture
def admin_messages(monkeypatch):
    """Уведомления админам, перехваченные вместо доставки"""
    messages = []

    async def send(admin_id, message):
        messages.append((admin_id, message))

    monkeypatch.setattr(admin_notifier, "ADMIN_IDS", ["admin-1"])
    admin_notifier.set_send_func(send)
    yield messages
    admin_notifier.set_send_func(None)


@pytest.fixture
def make_affiliate(session):
    async def _make(user_id: str = "creator-1", rate=None, payout_method: str = "paypal"):
        return await AffiliateService.register(
            session,
            user_id=user_id,
            payout_method=payout_method,
            payout_details={"email": f"{user_id}@example.com"},
            commission_rate=rate
        )
    return _make


@pytest.fixture
def make_referral(session):
    async def _make(affiliate, amount, buyer: str = "buyer-1", **kwargs):
        return await ReferralService.record_referral(
            session,
            affiliate_id=affiliate.id,
            referred_user_id=buyer,
            sale_amount=Decimal(amount),
            **kwargs
        )
    return _make


@pytest.fixture
def make_competition(session):
    async def _make(
        prize_pool="1000",
        starts_in=timedelta(hours=-1),
        ends_in=timedelta(hours=1),
        rules=None,
        name="Spring sales sprint"
    ):
        now = utcnow()
        return await CompetitionService.create(
            session,
            name=name,
            start_date=now + starts_in,
            end_date=now + ends_in,
            prize_pool=Decimal(prize_pool),
            rules=rules
        )
    return _make


@pytest_asyncio.fixture
async def client(session_maker):
    from affiliate_api.main import app

    async def override_get_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
