import os
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

TEST_DB_PATH = Path(os.path.dirname(__file__)) / "test_db.sqlite"
if TEST_DB_PATH.exists():
    TEST_DB_PATH.unlink()
TEST_DB_URL = f"sqlite+aiosqlite:///{TEST_DB_PATH.as_posix()}"

os.environ.setdefault("DATABASE_URL", TEST_DB_URL)
os.environ.setdefault("ROTATION_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db import Base, get_session, get_session_factory
from errors import OracleUnavailable
from main import app
import models  # noqa: F401
from models import Market, User
from oracle_client import SENTINEL_PRICE, get_oracle_client
from routes.auth import get_current_address
from timeutils import utcnow


class FakeOracle:
    """Stands in for OracleClient; ``prices`` maps coingecko id -> USD price."""

    def __init__(self) -> None:
        self.prices: dict[str, float] = {}
        self.calls: list[str] = []

    async def get_price(self, asset_id: str) -> float:
        self.calls.append(asset_id)
        price = self.prices.get(asset_id)
        if price is None or price <= 0:
            raise OracleUnavailable(asset_id, "no quote")
        return price

    async def get_details(self, asset_id: str):
        try:
            price = await self.get_price(asset_id)
        except OracleUnavailable:
            return {"price": SENTINEL_PRICE, "image_url": None}
        return {"price": price, "image_url": f"https://img.test/{asset_id}.png"}

    def last_known_good(self, asset_id: str):
        return None

    async def retry_failed(self):
        return []


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    engine = create_async_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()
        if TEST_DB_PATH.exists():
            TEST_DB_PATH.unlink()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory):
    async with session_factory() as s:
        yield s
        await s.rollback()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest_asyncio.fixture(autouse=True)
async def override_dependencies(session_factory, oracle):
    async def _get_session_override():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _get_session_override
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_oracle_client] = lambda: oracle
    yield
    app.dependency_overrides.pop(get_session, None)
    app.dependency_overrides.pop(get_session_factory, None)
    app.dependency_overrides.pop(get_oracle_client, None)


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def make_user(session_factory):
    async def _make(balance=1000, wallet="0x1111111111111111111111111111111111111111"):
        async with session_factory() as s:
            user = User(
                wallet=wallet.lower(),
                balance=Decimal(str(balance)),
                total_pnl=Decimal(0),
                created_at=utcnow(),
            )
            s.add(user)
            await s.commit()
            return user

    return _make


@pytest.fixture
def make_market(session_factory):
    async def _make(
        symbol="bitcoin",
        start_price=100,
        duration_min=5,
        seconds_left=300,
        yes_count=0,
        no_count=0,
    ):
        now = utcnow()
        end_time = now + timedelta(seconds=seconds_left)
        async with session_factory() as s:
            market = Market(
                symbol=symbol,
                title=f"Will {symbol} go up in {duration_min}m?",
                duration_min=duration_min,
                start_time=end_time - timedelta(minutes=duration_min),
                end_time=end_time,
                start_price=Decimal(str(start_price)),
                resolved=False,
                yes_count=yes_count,
                no_count=no_count,
                created_at=now,
            )
            s.add(market)
            await s.commit()
            return market

    return _make


@pytest.fixture
def login():
    """Authenticate API calls as ``wallet`` without a signature round trip."""

    def _login(wallet: str):
        app.dependency_overrides[get_current_address] = lambda: wallet.lower()

    yield _login
    app.dependency_overrides.pop(get_current_address, None)
