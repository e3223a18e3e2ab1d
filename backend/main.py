
import asyncio
import logging

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from db import get_session, init_db
from errors import AppError
from models import Market, User
from routes.auth import router as auth_router
from routes.markets import router as markets_router
from routes.prices import router as prices_router
from routes.resolution import router as resolution_router
from routes.users import router as users_router
from routes.wagers import router as wagers_router
from core.rotation import rotation_manager
from settings import get_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title="Fliq Backend", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(markets_router, prefix="")
app.include_router(wagers_router, prefix="")
app.include_router(resolution_router, prefix="")
app.include_router(users_router, prefix="")
app.include_router(prices_router, prefix="")
app.include_router(auth_router, prefix="")
app.mount("/metrics", make_asgi_app())


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "code": exc.code},
    )


@app.on_event("startup")
async def startup():
    for attempt in range(15):
        try:
            await init_db()
            break
        except Exception:
            logger.warning("Database not ready (attempt %s), retrying", attempt + 1)
            await asyncio.sleep(1)
    else:
        await init_db()
    if settings.rotation_enabled:
        await rotation_manager.start()


@app.on_event("shutdown")
async def shutdown():
    await rotation_manager.stop()


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    try:
        async with session as s:
            users = (await s.execute(select(func.count(User.id)))).scalar_one()
            markets = (await s.execute(select(func.count(Market.id)))).scalar_one()
    except SQLAlchemyError as exc:
        logger.error("Health check could not reach the database: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"ok": False, "error": "database unavailable", "rotation": rotation_manager.running},
        )
    return {"ok": True, "users": users, "markets": markets, "rotation": rotation_manager.running}
