import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db import run_transaction
from errors import AppError, MarketUnavailable, UserNotFound
from models import Market, Outcome, Side, User, Wager


logger = logging.getLogger(__name__)


WAGERS_SETTLED = Counter(
    "wagers_settled_total",
    "Wagers transitioned to settled",
    ["result"],
)
SETTLEMENT_FAILURES = Counter(
    "settlement_failures_total",
    "Wagers whose settlement transaction failed and was left for the next sweep",
)


@dataclass
class SettlementReport:
    market_id: Optional[int] = None
    settled: int = 0
    failed: List[int] = field(default_factory=list)


def payout_amount(stake: Decimal, payout_mult: float) -> Decimal:
    # Half-up rounding to a whole token, same as JavaScript's Math.round.
    return Decimal(math.floor(float(stake) * payout_mult + 0.5))


def settlement_for(
    outcome: Outcome, side: Side, stake: Decimal, payout_mult: float
) -> Tuple[bool, Decimal, Decimal]:
    """Returns ``(win, pnl, credit)`` for one wager."""
    if outcome == Outcome.PUSH:
        return True, Decimal(0), stake
    if side.value == outcome.value:
        payout = payout_amount(stake, payout_mult)
        return True, payout - stake, payout
    return False, -stake, Decimal(0)


async def _settle_one(session: AsyncSession, row, outcome: Outcome) -> bool:
    win, pnl, credit = settlement_for(outcome, row.side, Decimal(str(row.stake)), row.payout_mult)

    marked = await session.execute(
        update(Wager)
        .where(Wager.id == row.id, Wager.settled.is_(False))
        .values(settled=True, win=win, pnl=pnl)
        .execution_options(synchronize_session=False)
    )
    if marked.rowcount == 0:
        # Another trigger got here first.
        return False

    credited = await session.execute(
        update(User)
        .where(User.id == row.user_id)
        .values(balance=User.balance + credit, total_pnl=User.total_pnl + pnl)
        .execution_options(synchronize_session=False)
    )
    if credited.rowcount != 1:
        raise UserNotFound(row.user_id)

    if outcome == Outcome.PUSH:
        result = "push"
    else:
        result = "win" if win else "loss"
    WAGERS_SETTLED.labels(result=result).inc()
    return True


async def _settle_rows(
    session_factory: async_sessionmaker, rows: Sequence, report: SettlementReport
) -> SettlementReport:
    for row in rows:
        try:
            applied = await run_transaction(
                session_factory, lambda s, row=row: _settle_one(s, row, row.outcome)
            )
        except (AppError, SQLAlchemyError) as exc:
            SETTLEMENT_FAILURES.inc()
            logger.error("Settlement of wager %s failed, will retry: %s", row.id, exc)
            report.failed.append(row.id)
            continue
        if applied:
            report.settled += 1
    return report


def _pending_rows_query():
    return (
        select(
            Wager.id,
            Wager.user_id,
            Wager.side,
            Wager.stake,
            Wager.payout_mult,
            Market.outcome,
        )
        .join(Market, Market.id == Wager.market_id)
        .where(Wager.settled.is_(False), Market.resolved.is_(True))
        .order_by(Wager.id)
    )


async def settle_market(session_factory: async_sessionmaker, market_id: int) -> SettlementReport:
    """
    Settle every open wager of a resolved market. Each wager commits on its
    own, so one bad row never blocks its siblings; calling this again on a
    settled market touches nothing.
    """
    async with session_factory() as session:
        market = await session.get(Market, market_id)
        if market is None:
            raise MarketUnavailable(market_id, "not found")
        if not market.resolved or market.outcome is None:
            raise MarketUnavailable(market_id, "is not resolved")
        rows = (
            await session.execute(_pending_rows_query().where(Wager.market_id == market_id))
        ).all()

    report = await _settle_rows(session_factory, rows, SettlementReport(market_id=market_id))
    if report.settled or report.failed:
        logger.info(
            "Market %s settled %s wagers (%s failed)",
            market_id, report.settled, len(report.failed),
        )
    return report


async def settle_pending(session_factory: async_sessionmaker) -> List[SettlementReport]:
    """Sweep resolved markets that still carry unsettled wagers."""
    async with session_factory() as session:
        market_ids = (
            await session.execute(
                select(Wager.market_id)
                .join(Market, Market.id == Wager.market_id)
                .where(Wager.settled.is_(False), Market.resolved.is_(True))
                .distinct()
            )
        ).scalars().all()

    reports = []
    for market_id in sorted(market_ids):
        reports.append(await settle_market(session_factory, market_id))
    return reports


async def settle_user_wagers(session_factory: async_sessionmaker, user_id: int) -> SettlementReport:
    async with session_factory() as session:
        rows = (
            await session.execute(_pending_rows_query().where(Wager.user_id == user_id))
        ).all()
    return await _settle_rows(session_factory, rows, SettlementReport())
