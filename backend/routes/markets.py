
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import func, select
from db import get_session, get_session_factory
from errors import AppError
from models import Market
from odds import compute_odds
from oracle_client import OracleClient, get_oracle_client
from schemas import MarketList, MarketOut, SupplyRunOut
from settings import get_settings
from timeutils import utcnow, with_timezone
from core.resolution import resolve_expired_markets
from core.supply import ensure_supply

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()


def _market_out(m: Market, now) -> MarketOut:
    end_time = with_timezone(m.end_time)
    time_left_ms = max(0, int((end_time - now).total_seconds() * 1000))
    return MarketOut(
        id=m.id,
        symbol=m.symbol,
        title=m.title,
        duration_min=m.duration_min,
        start_time=with_timezone(m.start_time),
        end_time=end_time,
        start_price=m.start_price,
        end_price=m.end_price,
        resolved=m.resolved,
        outcome=m.outcome,
        yes_count=m.yes_count,
        no_count=m.no_count,
        logo_url=m.logo_url,
        time_left_ms=time_left_ms,
        **compute_odds(m.yes_count, m.no_count),
    )


@router.get("/markets", response_model=MarketList)
async def list_markets(
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    oracle: OracleClient = Depends(get_oracle_client),
):
    if settings.markets_list_triggers_rotation:
        # Best effort; the listing must not fail because the oracle is down.
        try:
            await resolve_expired_markets(session_factory, oracle)
            await ensure_supply(session_factory, oracle)
        except (AppError, SQLAlchemyError):
            logger.exception("Rotation triggered by market listing failed")

    now = utcnow()
    async with session as s:
        res = await s.execute(
            select(Market)
            .where(Market.resolved.is_(False), Market.end_time > now)
            .order_by(Market.end_time.asc())
        )
        rows = res.scalars().all()
        return MarketList(markets=[_market_out(m, now) for m in rows])


@router.post("/markets/supply", response_model=SupplyRunOut)
async def replenish_markets(
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    oracle: OracleClient = Depends(get_oracle_client),
):
    report = await ensure_supply(session_factory, oracle)
    now = utcnow()
    async with session as s:
        total = (
            await s.execute(
                select(func.count(Market.id)).where(
                    Market.resolved.is_(False), Market.end_time > now
                )
            )
        ).scalar_one()
    return SupplyRunOut(
        created_count=report.created,
        skipped_assets=report.skipped_assets,
        total_active_markets=total,
    )
