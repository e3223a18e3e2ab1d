import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db import get_session
from main import app


@pytest.mark.asyncio
async def test_price_for_supported_asset(client, oracle):
    oracle.prices["ethereum"] = 3200.5

    res = await client.get("/prices/ETH")

    assert res.status_code == 200
    data = res.json()
    assert (data["symbol"], data["ticker"], data["price"]) == ("ethereum", "ETH", 3200.5)
    assert data["image_url"] == "https://img.test/ethereum.png"
    assert data["stale"] is False


@pytest.mark.asyncio
async def test_unsupported_asset(client, oracle):
    res = await client.get("/prices/notacoin")

    assert res.status_code == 404
    assert oracle.calls == []


@pytest.mark.asyncio
async def test_oracle_outage_is_reported_not_zero(client, oracle):
    res = await client.get("/prices/bitcoin")

    assert res.status_code == 503
    body = res.json()
    assert "BTC" in body["detail"]
    assert "last_known_good" not in body


@pytest.mark.asyncio
async def test_outage_includes_stale_quote_when_cached(client, oracle, monkeypatch):
    monkeypatch.setattr(
        oracle,
        "last_known_good",
        lambda _asset_id: ({"price": 61000.0, "image_url": None}, 42.0),
    )

    res = await client.get("/prices/bitcoin")

    assert res.status_code == 503
    stale = res.json()["last_known_good"]
    assert stale["price"] == 61000.0
    assert stale["stale"] is True
    assert stale["age_seconds"] == 42.0


@pytest.mark.asyncio
async def test_health(client, make_user, make_market):
    await make_user()
    await make_market()

    res = await client.get("/health")

    assert res.status_code == 200
    assert res.json() == {"ok": True, "users": 1, "markets": 1, "rotation": False}


@pytest.mark.asyncio
async def test_health_reports_unreachable_database(client):
    broken = create_async_engine("sqlite+aiosqlite:////nonexistent-dir/fliq.sqlite")
    broken_factory = async_sessionmaker(broken, class_=AsyncSession)

    async def _broken_session():
        async with broken_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _broken_session
    try:
        res = await client.get("/health")
    finally:
        await broken.dispose()

    assert res.status_code == 503
    assert res.json()["ok"] is False
