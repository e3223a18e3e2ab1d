
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import String, Integer, Boolean, Numeric, Float, ForeignKey, DateTime, Enum, func
from db import Base


class Side(str, enum.Enum):
    YES = "YES"
    NO = "NO"


class Outcome(str, enum.Enum):
    YES = "YES"
    NO = "NO"
    PUSH = "PUSH"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0)
    total_pnl: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    wagers: Mapped[list["Wager"]] = relationship(back_populates="user", lazy="raise")


class Market(Base):
    __tablename__ = "markets"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(200))
    duration_min: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    start_price: Mapped[Decimal] = mapped_column(Numeric(24, 10))
    end_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 10), nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    outcome: Mapped[Optional[Outcome]] = mapped_column(
        Enum(Outcome, native_enum=False, length=8), nullable=True
    )
    yes_count: Mapped[int] = mapped_column(Integer, default=0)
    no_count: Mapped[int] = mapped_column(Integer, default=0)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Wager(Base):
    __tablename__ = "wagers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    market_id: Mapped[int] = mapped_column(ForeignKey("markets.id"), index=True)
    side: Mapped[Side] = mapped_column(Enum(Side, native_enum=False, length=8))
    stake: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    # Frozen at placement; live odds keep moving afterwards.
    payout_mult: Mapped[float] = mapped_column(Float)
    settled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    win: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)

    user: Mapped[User] = relationship(back_populates="wagers", lazy="raise")
    market: Mapped[Market] = relationship(lazy="raise")


class WalletAuth(Base):
    __tablename__ = "wallet_auth"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    nonce: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
