import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assets import ASSETS, Asset, market_title
from db import run_transaction
from errors import AppError
from models import Market
from oracle_client import OracleClient, is_valid_price, to_stored_price
from settings import get_settings
from timeutils import utcnow


logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class SupplyReport:
    created: int = 0
    skipped_assets: List[str] = field(default_factory=list)
    open_count: int = 0
    distinct_assets: int = 0


def _new_market(asset: Asset, duration: int, price: float, image_url: Optional[str], now: datetime) -> Market:
    return Market(
        symbol=asset.symbol,
        title=market_title(asset, duration),
        duration_min=duration,
        start_time=now,
        end_time=now + timedelta(minutes=duration),
        start_price=to_stored_price(price),
        resolved=False,
        yes_count=0,
        no_count=0,
        logo_url=image_url,
        created_at=now,
    )


async def ensure_supply(
    session_factory: async_sessionmaker,
    oracle: OracleClient,
    target_count: Optional[int] = None,
    target_diversity: Optional[int] = None,
    durations: Optional[Sequence[int]] = None,
    now: Optional[datetime] = None,
) -> SupplyReport:
    """
    Top up open markets until there are at least ``target_count`` of them
    spread over ``target_diversity`` distinct assets. Assets with no open
    market go first. An asset whose quote fails is skipped for this pass.
    """
    target_count = settings.supply_target_count if target_count is None else target_count
    target_diversity = settings.supply_target_diversity if target_diversity is None else target_diversity
    durations = list(durations or settings.market_durations)
    current = now or utcnow()
    horizon = current + timedelta(seconds=settings.supply_min_remaining_seconds)

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(Market.symbol, Market.duration_min).where(
                    Market.resolved.is_(False), Market.end_time > horizon
                )
            )
        ).all()

    per_asset = Counter(symbol for symbol, _ in rows)
    per_slot = Counter((symbol, duration) for symbol, duration in rows)
    report = SupplyReport(open_count=len(rows), distinct_assets=len(per_asset))

    def satisfied() -> bool:
        return report.open_count >= target_count and report.distinct_assets >= target_diversity

    if satisfied():
        return report

    candidates = sorted(ASSETS, key=lambda a: (a.symbol in per_asset, per_asset[a.symbol]))
    for asset in candidates:
        if satisfied():
            break

        details = await oracle.get_details(asset.coingecko_id)
        if not is_valid_price(details["price"]):
            logger.warning("No usable price for %s, not creating markets", asset.ticker)
            report.skipped_assets.append(asset.symbol)
            continue

        planned: List[int] = []
        for duration in sorted(durations, key=lambda d: per_slot[(asset.symbol, d)]):
            count_met = report.open_count + len(planned) >= target_count
            new_asset = per_asset[asset.symbol] == 0 and not planned
            if count_met and not new_asset:
                break
            planned.append(duration)
        if not planned:
            continue

        markets = [
            _new_market(asset, d, details["price"], details["image_url"], current) for d in planned
        ]

        async def _create(session: AsyncSession, markets=markets) -> int:
            session.add_all(markets)
            return len(markets)

        try:
            created = await run_transaction(session_factory, _create)
        except (AppError, SQLAlchemyError) as exc:
            logger.error("Failed to create markets for %s: %s", asset.ticker, exc)
            continue

        if per_asset[asset.symbol] == 0:
            report.distinct_assets += 1
        for d in planned:
            per_slot[(asset.symbol, d)] += 1
        per_asset[asset.symbol] += created
        report.open_count += created
        report.created += created
        logger.info(
            "Created %s %s market(s) at $%s for durations %s",
            created, asset.ticker, details["price"], planned,
        )

    if not satisfied():
        logger.warning(
            "Market supply below target: %s open over %s assets (want %s over %s)",
            report.open_count, report.distinct_assets, target_count, target_diversity,
        )
    return report
