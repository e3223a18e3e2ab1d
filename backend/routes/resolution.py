from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.resolution import resolve_expired_markets
from core.settlement import settle_pending
from db import get_session_factory
from oracle_client import OracleClient, get_oracle_client
from schemas import ResolutionRunOut

router = APIRouter()


@router.post("/resolution/run", response_model=ResolutionRunOut)
async def run_resolution(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    oracle: OracleClient = Depends(get_oracle_client),
):
    """Resolve and settle everything that is due. Safe to call repeatedly."""
    report = await resolve_expired_markets(session_factory, oracle)
    leftovers = await settle_pending(session_factory)
    return ResolutionRunOut(
        resolved_count=report.resolved,
        skipped=report.skipped,
        settled_count=report.settled_count + sum(r.settled for r in leftovers),
        failed_wagers=report.failed_wagers + [wid for r in leftovers for wid in r.failed],
    )
