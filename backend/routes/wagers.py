from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.ledger import place_wager
from db import get_session_factory
from models import User
from routes.auth import get_current_user
from schemas import WagerCreate, WagerOut, WagerPlaced

router = APIRouter()


@router.post("/wagers", response_model=WagerPlaced)
async def create_wager(
    body: WagerCreate,
    user: User = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    wager, new_balance = await place_wager(
        session_factory, user.id, body.market_id, body.side, body.stake
    )
    return WagerPlaced(wager=WagerOut.model_validate(wager), new_balance=new_balance)
