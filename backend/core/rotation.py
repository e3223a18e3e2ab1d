import asyncio
import logging
import random
import time
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.resolution import resolve_expired_markets
from core.settlement import settle_pending
from core.supply import ensure_supply
from db import SessionLocal
from oracle_client import OracleClient, get_oracle_client
from settings import get_settings


logger = logging.getLogger(__name__)
settings = get_settings()


LOOP_DURATION = Histogram(
    "rotation_loop_duration_seconds",
    "Runtime of each market rotation pass",
)
LOOP_SUCCESS = Counter(
    "rotation_loop_success_total",
    "Number of successful market rotation passes",
)
LOOP_ERRORS = Counter(
    "rotation_loop_error_total",
    "Number of failed market rotation passes",
)
OPEN_MARKETS_GAUGE = Gauge(
    "open_markets",
    "Open markets observed by the last rotation pass",
)


async def run_rotation_pass(session_factory: async_sessionmaker, oracle: OracleClient) -> dict:
    """
    One scheduled pass: resolve what expired, finish any settlement left
    behind, top the market supply back up, and retry failed price lookups.
    """
    resolution = await resolve_expired_markets(session_factory, oracle)
    leftovers = await settle_pending(session_factory)
    supply = await ensure_supply(session_factory, oracle)
    recovered = await oracle.retry_failed()

    OPEN_MARKETS_GAUGE.set(supply.open_count)
    return {
        "resolved": resolution.resolved,
        "skipped": resolution.skipped,
        "settled": resolution.settled_count + sum(r.settled for r in leftovers),
        "created": supply.created,
        "open_markets": supply.open_count,
        "recovered_assets": recovered,
    }


class RotationManager:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        oracle: Optional[OracleClient] = None,
    ) -> None:
        self.session_factory = session_factory
        self.oracle = oracle
        self.task: Optional[asyncio.Task] = None

    async def _run_loop(self) -> None:
        session_factory = self.session_factory or SessionLocal
        oracle = self.oracle or get_oracle_client()
        backoff = settings.rotation_interval_seconds

        while True:
            loop_started = time.perf_counter()
            try:
                summary = await run_rotation_pass(session_factory, oracle)
                backoff = settings.rotation_interval_seconds
                LOOP_SUCCESS.inc()
                if summary["resolved"] or summary["created"]:
                    logger.info("Rotation pass: %s", summary)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOOP_ERRORS.inc()
                logger.exception("Rotation pass failed: %s", exc)
                backoff = min(
                    backoff * settings.rotation_retry_backoff_seconds,
                    settings.rotation_max_backoff_seconds,
                )
            finally:
                LOOP_DURATION.observe(time.perf_counter() - loop_started)

            jitter = random.uniform(0, max(0.05, backoff * 0.1))
            await asyncio.sleep(backoff + jitter)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        task = self.task
        if not task:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.task = None


rotation_manager = RotationManager()
