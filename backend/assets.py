"""
Supported underlying assets.

One table so the oracle client, the supply controller and the HTTP layer all
agree on how a market's ``symbol`` maps to a ticker and a CoinGecko id.
"""
from typing import Dict, List, NamedTuple, Optional


class Asset(NamedTuple):
    symbol: str
    ticker: str
    name: str
    coingecko_id: str


ASSETS: List[Asset] = [
    Asset("bitcoin", "BTC", "Bitcoin", "bitcoin"),
    Asset("ethereum", "ETH", "Ethereum", "ethereum"),
    Asset("solana", "SOL", "Solana", "solana"),
    Asset("dogwifcoin", "WIF", "dogwifhat", "dogwifcoin"),
    Asset("bonk", "BONK", "Bonk", "bonk"),
    Asset("pepe", "PEPE", "Pepe", "pepe"),
    Asset("cardano", "ADA", "Cardano", "cardano"),
    Asset("binancecoin", "BNB", "BNB", "binancecoin"),
    Asset("chainlink", "LINK", "Chainlink", "chainlink"),
]

_BY_SYMBOL: Dict[str, Asset] = {a.symbol: a for a in ASSETS}
_BY_TICKER: Dict[str, Asset] = {a.ticker.lower(): a for a in ASSETS}


def get_asset(symbol_or_ticker: str) -> Optional[Asset]:
    key = (symbol_or_ticker or "").strip().lower()
    return _BY_SYMBOL.get(key) or _BY_TICKER.get(key)


def coingecko_id_for(symbol: str) -> str:
    asset = get_asset(symbol)
    return asset.coingecko_id if asset else symbol


def market_title(asset: Asset, duration_min: int) -> str:
    return f"Will {asset.ticker} go ↑ in {duration_min}m?"
