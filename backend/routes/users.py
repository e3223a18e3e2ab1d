from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from core.settlement import settle_user_wagers
from db import get_session, get_session_factory
from models import User, Wager
from routes.auth import get_current_user
from schemas import HistoryItem, UserHistory, UserOut

router = APIRouter()

HISTORY_LIMIT = 50


@router.get("/users/{user_id}/history", response_model=UserHistory)
async def user_history(
    user_id: int,
    current: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if current.id != user_id:
        raise HTTPException(403, "cannot read another user's history")

    # Settle the caller's own wagers on markets that already resolved so the
    # balance below is up to date.
    await settle_user_wagers(session_factory, user_id)

    async with session as s:
        user = await s.get(User, user_id, populate_existing=True)
        if user is None:
            raise HTTPException(404, "user not found")
        res = await s.execute(
            select(Wager)
            .options(selectinload(Wager.market))
            .where(Wager.user_id == user_id)
            .order_by(Wager.created_at.desc(), Wager.id.desc())
            .limit(HISTORY_LIMIT)
        )
        wagers = res.scalars().all()
        return UserHistory(
            user=UserOut.model_validate(user),
            history=[HistoryItem.model_validate(w) for w in wagers],
        )
