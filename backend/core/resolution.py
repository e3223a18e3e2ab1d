import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assets import coingecko_id_for
from core.settlement import SettlementReport, settle_market
from db import run_transaction
from errors import AppError, OracleUnavailable
from models import Market, Outcome
from oracle_client import OracleClient, is_valid_price, to_stored_price
from timeutils import utcnow


logger = logging.getLogger(__name__)


MARKETS_RESOLVED = Counter(
    "markets_resolved_total",
    "Markets transitioned to resolved",
    ["outcome"],
)
RESOLUTION_SKIPS = Counter(
    "resolution_skipped_total",
    "Expired markets left pending for the next pass",
    ["reason"],
)


@dataclass
class ResolutionReport:
    resolved: int = 0
    skipped: List[int] = field(default_factory=list)
    settlements: List[SettlementReport] = field(default_factory=list)

    @property
    def settled_count(self) -> int:
        return sum(r.settled for r in self.settlements)

    @property
    def failed_wagers(self) -> List[int]:
        return [wid for r in self.settlements for wid in r.failed]


def determine_outcome(start_price: Decimal, end_price: Decimal) -> Outcome:
    if end_price > start_price:
        return Outcome.YES
    if end_price < start_price:
        return Outcome.NO
    return Outcome.PUSH


async def mark_resolved(
    session_factory: async_sessionmaker, market_id: int, end_price: Decimal, outcome: Outcome
) -> bool:
    """
    Flip an open market to resolved. Returns False when some other trigger
    already resolved it; the stored end price and outcome are left alone.
    """
    async def _mark(session: AsyncSession) -> bool:
        res = await session.execute(
            update(Market)
            .where(Market.id == market_id, Market.resolved.is_(False))
            .values(end_price=end_price, outcome=outcome, resolved=True)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    return await run_transaction(session_factory, _mark)


async def resolve_expired_markets(
    session_factory: async_sessionmaker,
    oracle: OracleClient,
    now: Optional[datetime] = None,
) -> ResolutionReport:
    """
    Resolve every market whose window has elapsed, then settle its wagers.
    Markets whose price can't be fetched stay pending and are picked up
    again on the next call. Safe to run from several triggers at once.
    """
    current = now or utcnow()
    async with session_factory() as session:
        expired = (
            await session.execute(
                select(Market.id, Market.symbol, Market.start_price)
                .where(Market.resolved.is_(False), Market.end_time <= current)
                .order_by(Market.end_time)
            )
        ).all()

    report = ResolutionReport()
    for market_id, symbol, start_price in expired:
        try:
            price = await oracle.get_price(coingecko_id_for(symbol))
        except OracleUnavailable as exc:
            RESOLUTION_SKIPS.labels(reason="oracle").inc()
            logger.warning("Skipping resolution of market %s (%s): %s", market_id, symbol, exc.reason)
            report.skipped.append(market_id)
            continue
        if not is_valid_price(price):
            RESOLUTION_SKIPS.labels(reason="invalid_price").inc()
            logger.warning("Skipping resolution of market %s: invalid price %r", market_id, price)
            report.skipped.append(market_id)
            continue

        end_price = to_stored_price(price)
        outcome = determine_outcome(to_stored_price(start_price), end_price)
        try:
            won = await mark_resolved(session_factory, market_id, end_price, outcome)
        except (AppError, SQLAlchemyError) as exc:
            RESOLUTION_SKIPS.labels(reason="persistence").inc()
            logger.error("Failed to resolve market %s: %s", market_id, exc)
            report.skipped.append(market_id)
            continue
        if not won:
            logger.debug("Market %s already resolved by another trigger", market_id)
            continue

        report.resolved += 1
        MARKETS_RESOLVED.labels(outcome=outcome.value).inc()
        logger.info(
            "Resolved market %s (%s): %s -> %s = %s",
            market_id, symbol, start_price, end_price, outcome.value,
        )

        try:
            report.settlements.append(await settle_market(session_factory, market_id))
        except (AppError, SQLAlchemyError):
            # Resolution stands; settle_pending picks the wagers up later.
            logger.exception("Settlement after resolving market %s failed", market_id)

    return report
