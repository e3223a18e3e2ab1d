import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db import run_transaction
from errors import (
    InsufficientBalance,
    InvalidInput,
    InvariantViolation,
    MarketUnavailable,
    UserNotFound,
)
from models import Market, Side, User, Wager
from odds import compute_odds, multiplier_for
from settings import get_settings
from timeutils import utcnow, with_timezone


logger = logging.getLogger(__name__)
settings = get_settings()


WAGERS_PLACED = Counter(
    "wagers_placed_total",
    "Wagers committed by the ledger",
    ["side"],
)


def parse_side(side) -> Side:
    if isinstance(side, Side):
        return side
    try:
        return Side(str(side).upper())
    except ValueError:
        raise InvalidInput(f"side must be YES or NO, got {side!r}")


def parse_stake(stake) -> Decimal:
    if stake is None:
        return Decimal(settings.default_stake)
    if isinstance(stake, bool):
        raise InvalidInput("stake must be a number")
    try:
        value = Decimal(str(stake))
    except InvalidOperation:
        raise InvalidInput(f"stake must be a number, got {stake!r}")
    if not value.is_finite():
        raise InvalidInput("stake must be finite")
    if value != value.quantize(Decimal("0.01")):
        raise InvalidInput("stake supports at most two decimal places")
    if value < settings.min_stake or value > settings.max_stake:
        raise InvalidInput(
            f"stake must be between {settings.min_stake} and {settings.max_stake}"
        )
    return value


def accepts_wagers(market: Market, now: datetime) -> bool:
    if market.resolved:
        return False
    cutoff = with_timezone(market.end_time) - timedelta(seconds=settings.wager_cutoff_seconds)
    return now < cutoff


async def place_wager(
    session_factory: async_sessionmaker,
    user_id: int,
    market_id: int,
    side,
    stake=None,
    now: Optional[datetime] = None,
) -> Tuple[Wager, Decimal]:
    """
    Record a wager, debit the stake and bump the market's pool in one
    transaction. The multiplier is taken from the pool as it stood before
    this wager and is frozen on the row.

    Returns the new wager and the user's balance after the debit.
    """
    side = parse_side(side)
    stake = parse_stake(stake)

    async def _place(session: AsyncSession) -> Tuple[Wager, Decimal]:
        current = now or utcnow()

        user = (
            await session.execute(select(User).where(User.id == user_id).with_for_update())
        ).scalar_one_or_none()
        if user is None:
            raise UserNotFound(user_id)
        if user.balance < stake:
            raise InsufficientBalance(stake, user.balance)

        market = (
            await session.execute(select(Market).where(Market.id == market_id).with_for_update())
        ).scalar_one_or_none()
        if market is None:
            raise MarketUnavailable(market_id, "not found")
        if not accepts_wagers(market, current):
            reason = "is resolved" if market.resolved else "is closed for wagers"
            raise MarketUnavailable(market_id, reason)

        debit = await session.execute(
            update(User)
            .where(User.id == user_id, User.balance >= stake)
            .values(balance=User.balance - stake)
            .execution_options(synchronize_session=False)
        )
        if debit.rowcount != 1:
            raise InsufficientBalance(stake, user.balance)

        counter = Market.yes_count if side == Side.YES else Market.no_count
        bump = await session.execute(
            update(Market)
            .where(Market.id == market_id, Market.resolved.is_(False))
            .values({counter: counter + 1})
            .returning(Market.yes_count, Market.no_count)
            .execution_options(synchronize_session=False)
        )
        pool = bump.first()
        if pool is None:
            raise MarketUnavailable(market_id, "was resolved concurrently")

        # The increment returns the pool including this wager; price it on
        # the pool as it stood just before.
        yes_before, no_before = pool.yes_count, pool.no_count
        if side == Side.YES:
            yes_before -= 1
        else:
            no_before -= 1
        payout_mult = multiplier_for(compute_odds(yes_before, no_before), side)

        wager = Wager(
            user_id=user_id,
            market_id=market_id,
            side=side,
            stake=stake,
            payout_mult=payout_mult,
            settled=False,
            created_at=current,
        )
        session.add(wager)
        await session.flush()

        new_balance = (
            await session.execute(select(User.balance).where(User.id == user_id))
        ).scalar_one()
        if new_balance < 0:
            raise InvariantViolation(f"balance of user {user_id} would go negative")
        return wager, Decimal(str(new_balance))

    wager, new_balance = await run_transaction(session_factory, _place)
    WAGERS_PLACED.labels(side=side.value).inc()
    logger.info(
        "Wager %s placed: user=%s market=%s side=%s stake=%s mult=%.4f",
        wager.id, user_id, market_id, side.value, stake, wager.payout_mult,
    )
    return wager, new_balance
