
import asyncio
import logging
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

from errors import PersistenceConflict
from settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()

T = TypeVar("T")

# serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"40001", "40P01"}


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    return SessionLocal


async def init_db():
    from models import Market, User, Wager, WalletAuth  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _is_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in _CONFLICT_SQLSTATES


async def run_transaction(
    session_factory: async_sessionmaker,
    fn: Callable[[AsyncSession], Awaitable[T]],
    retries: Optional[int] = None,
) -> T:
    """
    Run ``fn`` inside a single transaction, committing on success.
    Concurrent-write conflicts are retried with a short backoff; anything else
    (including domain errors raised by ``fn``) rolls back and propagates.
    """
    attempts = max(1, retries if retries is not None else settings.transaction_retries)
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except DBAPIError as exc:
            if not _is_conflict(exc):
                raise
            logger.warning("Transaction conflict (attempt %s/%s): %s", attempt, attempts, exc)
            if attempt == attempts:
                raise PersistenceConflict() from exc
            await asyncio.sleep(0.05 * attempt)
    raise PersistenceConflict()
