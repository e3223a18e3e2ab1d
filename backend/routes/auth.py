import logging
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import create_jwt, verify_jwt
from db import get_session
from models import User, WalletAuth
from schemas import UserOut
from settings import get_settings
from timeutils import utcnow, with_timezone

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()


class NonceRequest(BaseModel):
    address: str


class VerifyRequest(BaseModel):
    address: str
    signature: str


def login_message(nonce: str) -> str:
    return f"Sign this message to log in to Fliq: {nonce}"


def _wallet(address: str) -> str:
    if not isinstance(address, str) or not address.startswith("0x"):
        raise HTTPException(400, "invalid address")
    return address.lower()


def _issue_nonce(record: WalletAuth) -> str:
    record.nonce = secrets.token_hex(16)
    record.updated_at = utcnow()
    return record.nonce


def _nonce_stale(record: WalletAuth) -> bool:
    issued = with_timezone(record.updated_at)
    if issued is None:
        return False
    return utcnow() - issued > timedelta(seconds=settings.nonce_ttl_seconds)


def _signer(nonce: str, signature: str) -> Optional[str]:
    try:
        return Account.recover_message(
            encode_defunct(text=login_message(nonce)), signature=signature
        ).lower()
    except Exception as exc:
        logger.info("Rejected malformed signature: %s", exc)
        return None


async def _account_for(session: AsyncSession, wallet: str) -> User:
    user = (await session.execute(select(User).where(User.wallet == wallet))).scalar_one_or_none()
    if user is None:
        user = User(
            wallet=wallet,
            balance=Decimal(settings.starting_balance),
            total_pnl=Decimal(0),
            created_at=utcnow(),
        )
        session.add(user)
        await session.flush()
        logger.info("Opened account %s for %s", user.id, wallet)
    return user


@router.post("/auth/nonce")
async def get_nonce(body: NonceRequest, session: AsyncSession = Depends(get_session)):
    wallet = _wallet(body.address)
    async with session as s:
        record = (
            await s.execute(select(WalletAuth).where(WalletAuth.address == wallet))
        ).scalar_one_or_none()
        if record is None:
            record = WalletAuth(address=wallet)
            s.add(record)
        nonce = _issue_nonce(record)
        await s.commit()
    return {"address": wallet, "nonce": nonce, "message": login_message(nonce)}


@router.post("/auth/verify")
async def verify_signature(body: VerifyRequest, session: AsyncSession = Depends(get_session)):
    """
    Exchange a signed login message for a bearer token. The first successful
    login opens the paper account with the starting balance.
    """
    wallet = _wallet(body.address)
    async with session as s:
        record = (
            await s.execute(select(WalletAuth).where(WalletAuth.address == wallet))
        ).scalar_one_or_none()
        if record is None:
            raise HTTPException(400, "no nonce for address")
        if _nonce_stale(record):
            _issue_nonce(record)
            await s.commit()
            raise HTTPException(400, "nonce expired; request a new one")
        if _signer(record.nonce, body.signature) != wallet:
            raise HTTPException(400, "signature mismatch")

        # A nonce signs exactly one login.
        _issue_nonce(record)
        user = await _account_for(s, wallet)
        await s.commit()
        account = UserOut.model_validate(user)
    return {"token": create_jwt(wallet), "address": wallet, "user": account}


def get_current_address(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(401, "missing bearer token")
    wallet = verify_jwt(authorization.split(" ", 1)[1])
    if not wallet:
        raise HTTPException(401, "invalid token")
    return wallet


async def get_current_user(
    address: str = Depends(get_current_address),
    session: AsyncSession = Depends(get_session),
) -> User:
    async with session as s:
        user = (await s.execute(select(User).where(User.wallet == address))).scalar_one_or_none()
    if user is None:
        raise HTTPException(401, "unknown wallet")
    return user
