
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel

from models import Outcome, Side


class WagerCreate(BaseModel):
    market_id: int
    side: str
    # Range and precision are enforced by the ledger.
    stake: Optional[Union[int, float, str]] = None


class WagerOut(BaseModel):
    id: int
    user_id: int
    market_id: int
    side: Side
    stake: Decimal
    payout_mult: float
    settled: bool
    win: Optional[bool]
    pnl: Optional[Decimal]
    created_at: datetime
    class Config:
        from_attributes = True


class WagerPlaced(BaseModel):
    wager: WagerOut
    new_balance: Decimal


class MarketOut(BaseModel):
    id: int
    symbol: str
    title: str
    duration_min: int
    start_time: datetime
    end_time: datetime
    start_price: Decimal
    end_price: Optional[Decimal]
    resolved: bool
    outcome: Optional[Outcome]
    yes_count: int
    no_count: int
    logo_url: Optional[str]
    yes_multiplier: float
    no_multiplier: float
    yes_share: float
    time_left_ms: int


class MarketList(BaseModel):
    markets: List[MarketOut]


class MarketSummary(BaseModel):
    title: str
    symbol: str
    resolved: bool
    outcome: Optional[Outcome]
    class Config:
        from_attributes = True


class HistoryItem(WagerOut):
    market: MarketSummary


class UserOut(BaseModel):
    id: int
    wallet: str
    balance: Decimal
    total_pnl: Decimal
    class Config:
        from_attributes = True


class UserHistory(BaseModel):
    user: UserOut
    history: List[HistoryItem]


class ResolutionRunOut(BaseModel):
    resolved_count: int
    skipped: List[int]
    settled_count: int
    failed_wagers: List[int]


class SupplyRunOut(BaseModel):
    created_count: int
    skipped_assets: List[str]
    total_active_markets: int


class PriceOut(BaseModel):
    symbol: str
    ticker: str
    price: float
    image_url: Optional[str]
    stale: bool = False
    age_seconds: float = 0.0
