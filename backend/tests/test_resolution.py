import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from core.ledger import place_wager
from core.resolution import determine_outcome, resolve_expired_markets
from core.supply import ensure_supply
from models import Market, Outcome, User, Wager
from timeutils import utcnow


async def _expire(session_factory, market_id):
    async with session_factory() as s:
        m = await s.get(Market, market_id)
        m.end_time = utcnow() - timedelta(seconds=1)
        await s.commit()


async def _market(session_factory, market_id):
    async with session_factory() as s:
        return await s.get(Market, market_id)


@pytest.mark.parametrize(
    "start,end,expected",
    [(100, 110, Outcome.YES), (100, 90, Outcome.NO), (100, 100, Outcome.PUSH)],
)
def test_determine_outcome(start, end, expected):
    assert determine_outcome(Decimal(start), Decimal(end)) == expected


@pytest.mark.asyncio
async def test_yes_scenario_end_to_end(session_factory, oracle, make_user, make_market):
    user = await make_user(balance=1000)
    market = await make_market(symbol="bitcoin", start_price=100)
    wager, balance = await place_wager(session_factory, user.id, market.id, "YES", 100)
    assert wager.payout_mult == 2.0
    assert balance == Decimal(900)
    await _expire(session_factory, market.id)
    oracle.prices["bitcoin"] = 110.0

    report = await resolve_expired_markets(session_factory, oracle)

    assert report.resolved == 1
    assert report.settled_count == 1
    m = await _market(session_factory, market.id)
    assert (m.resolved, m.outcome, m.end_price) == (True, Outcome.YES, Decimal(110))
    async with session_factory() as s:
        w = await s.get(Wager, wager.id)
        u = await s.get(User, user.id)
    assert (w.settled, w.win, w.pnl) == (True, True, Decimal(100))
    assert u.balance == Decimal(1100)
    assert u.total_pnl == Decimal(100)


@pytest.mark.asyncio
async def test_no_scenario_end_to_end(session_factory, oracle, make_user, make_market):
    user = await make_user(balance=1000)
    market = await make_market(symbol="bitcoin", start_price=100)
    wager, _ = await place_wager(session_factory, user.id, market.id, "YES", 100)
    await _expire(session_factory, market.id)
    oracle.prices["bitcoin"] = 90.0

    await resolve_expired_markets(session_factory, oracle)

    async with session_factory() as s:
        w = await s.get(Wager, wager.id)
        u = await s.get(User, user.id)
        m = await s.get(Market, market.id)
    assert m.outcome == Outcome.NO
    assert (w.win, w.pnl) == (False, Decimal(-100))
    assert u.balance == Decimal(900)
    assert u.total_pnl == Decimal(-100)


@pytest.mark.asyncio
async def test_only_expired_markets_are_resolved(session_factory, oracle, make_market):
    live = await make_market(symbol="bitcoin", seconds_left=120)
    expired = await make_market(symbol="ethereum", seconds_left=-5)
    oracle.prices.update({"bitcoin": 1.0, "ethereum": 1.0})

    report = await resolve_expired_markets(session_factory, oracle)

    assert report.resolved == 1
    assert (await _market(session_factory, live.id)).resolved is False
    assert (await _market(session_factory, expired.id)).resolved is True
    assert oracle.calls == ["ethereum"]


@pytest.mark.asyncio
async def test_oracle_failure_leaves_market_pending_and_retries(session_factory, oracle, make_user, make_market):
    user = await make_user()
    market = await make_market(symbol="solana", start_price=150)
    await place_wager(session_factory, user.id, market.id, "NO", 100)
    await _expire(session_factory, market.id)

    first = await resolve_expired_markets(session_factory, oracle)

    assert first.resolved == 0
    assert first.skipped == [market.id]
    m = await _market(session_factory, market.id)
    assert m.resolved is False
    assert m.outcome is None and m.end_price is None
    assert m.start_price == Decimal(150)

    oracle.prices["solana"] = 140.0
    second = await resolve_expired_markets(session_factory, oracle)

    assert second.resolved == 1
    m = await _market(session_factory, market.id)
    assert (m.resolved, m.outcome) == (True, Outcome.NO)
    assert m.start_price == Decimal(150)
    async with session_factory() as s:
        assert (await s.get(User, user.id)).balance == Decimal(1100)


@pytest.mark.asyncio
async def test_resolving_twice_is_a_no_op(session_factory, oracle, make_user, make_market):
    user = await make_user()
    market = await make_market(symbol="bitcoin", start_price=100)
    await place_wager(session_factory, user.id, market.id, "YES", 100)
    await _expire(session_factory, market.id)
    oracle.prices["bitcoin"] = 120.0

    first = await resolve_expired_markets(session_factory, oracle)
    oracle.prices["bitcoin"] = 80.0
    second = await resolve_expired_markets(session_factory, oracle)

    assert first.resolved == 1
    assert second.resolved == 0
    m = await _market(session_factory, market.id)
    assert (m.outcome, m.end_price) == (Outcome.YES, Decimal(120))
    async with session_factory() as s:
        assert (await s.get(User, user.id)).balance == Decimal(1100)


@pytest.mark.asyncio
async def test_concurrent_triggers_resolve_and_settle_once(session_factory, oracle, make_user, make_market):
    user = await make_user()
    market = await make_market(symbol="bitcoin", start_price=100)
    await place_wager(session_factory, user.id, market.id, "YES", 100)
    await _expire(session_factory, market.id)
    oracle.prices["bitcoin"] = 101.0

    reports = await asyncio.gather(
        *(resolve_expired_markets(session_factory, oracle) for _ in range(3))
    )

    assert sum(r.resolved for r in reports) == 1
    async with session_factory() as s:
        assert (await s.get(User, user.id)).balance == Decimal(1100)
        assert (await s.get(Wager, 1)).settled is True


@pytest.mark.asyncio
async def test_resolution_endpoint_is_idempotent(client, oracle, make_user, make_market, session_factory):
    user = await make_user()
    market = await make_market(symbol="bitcoin", start_price=100)
    stuck = await make_market(symbol="ethereum", start_price=100, seconds_left=-1)
    await place_wager(session_factory, user.id, market.id, "YES", 100)
    await _expire(session_factory, market.id)
    oracle.prices["bitcoin"] = 150.0

    first = await client.post("/resolution/run")
    second = await client.post("/resolution/run")

    assert first.status_code == 200
    assert first.json() == {
        "resolved_count": 1,
        "skipped": [stuck.id],
        "settled_count": 1,
        "failed_wagers": [],
    }
    assert second.json()["resolved_count"] == 0
    assert second.json()["settled_count"] == 0
    async with session_factory() as s:
        assert (await s.get(User, user.id)).balance == Decimal(1100)


@pytest.mark.asyncio
async def test_unchanged_sub_cent_quote_is_a_push(session_factory, oracle, make_user):
    oracle.prices["pepe"] = 9.87654321e-06
    await ensure_supply(session_factory, oracle, target_count=1, target_diversity=1, durations=[1])
    user = await make_user()
    async with session_factory() as s:
        market = (await s.execute(select(Market).where(Market.symbol == "pepe"))).scalar_one()
    await place_wager(session_factory, user.id, market.id, "YES", 100)
    await _expire(session_factory, market.id)

    await resolve_expired_markets(session_factory, oracle)

    m = await _market(session_factory, market.id)
    assert m.start_price == m.end_price == Decimal("0.0000098765")
    assert m.outcome == Outcome.PUSH
    async with session_factory() as s:
        assert (await s.get(User, user.id)).balance == Decimal(1000)
