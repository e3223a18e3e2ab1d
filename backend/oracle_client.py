# backend/oracle_client.py
import asyncio
import logging
import math
import time
from decimal import Decimal
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Set, Tuple, TypedDict

import httpx
from prometheus_client import Counter, Gauge

from errors import OracleUnavailable
from settings import Settings, get_settings


logger = logging.getLogger(__name__)

# Returned by get_details when no real quote could be obtained. Never persist it.
SENTINEL_PRICE = -1.0

# Scale of the Numeric(24, 10) price columns. Quantize before storing or
# comparing so a quote always equals its stored copy.
PRICE_SCALE = Decimal("1e-10")

ORACLE_FAILURES = Counter(
    "oracle_request_failures_total",
    "Failed price lookups by reason",
    ["reason"],
)
ORACLE_CIRCUIT_OPEN = Gauge(
    "oracle_circuit_open",
    "1 while the oracle circuit breaker is failing fast",
)


class PriceDetails(TypedDict):
    price: float
    image_url: Optional[str]


def is_valid_price(price) -> bool:
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return False
    return math.isfinite(price) and price > 0 and to_stored_price(price) > 0


def to_stored_price(price) -> Decimal:
    return Decimal(str(price)).quantize(PRICE_SCALE)


class OracleClient:
    """
    USD spot prices from CoinGecko.

    Owns its own failure counters: after ``failure_threshold`` consecutive
    failures every call fails fast for ``cooldown_seconds``. A 429 is retried
    once after ``rate_limit_delay_seconds``. Good quotes are cached for
    ``cache_ttl_seconds`` and remembered as last-known-good for display.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        rate_limit_delay_seconds: float = 1.0,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        cache_ttl_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.rate_limit_delay_seconds = rate_limit_delay_seconds
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self._transport = transport
        self._clock = clock

        self._consecutive_failures = 0
        self._open_until = 0.0
        self._cache: Dict[str, Tuple[float, PriceDetails]] = {}
        self._last_good: Dict[str, Tuple[float, PriceDetails]] = {}
        self._failed: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "OracleClient":
        return cls(
            base_url=settings.coingecko_api_base,
            api_key=settings.coingecko_api_key,
            timeout_seconds=settings.oracle_timeout_seconds,
            rate_limit_delay_seconds=settings.oracle_rate_limit_delay_seconds,
            failure_threshold=settings.oracle_failure_threshold,
            cooldown_seconds=settings.oracle_cooldown_seconds,
            cache_ttl_seconds=settings.oracle_cache_ttl_seconds,
        )

    @property
    def circuit_open(self) -> bool:
        return self._open_until > 0 and self._clock() < self._open_until

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def failed_assets(self) -> Set[str]:
        return set(self._failed)

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"x-cg-demo-api-key": self.api_key}
        return {}

    def _check_circuit(self, asset_id: str) -> None:
        if not self._open_until:
            return
        if self._clock() < self._open_until:
            self._failed.add(asset_id)
            raise OracleUnavailable(asset_id, "circuit open")
        logger.info("Oracle circuit cool-down elapsed, resuming requests")
        self._open_until = 0.0
        self._consecutive_failures = 0
        ORACLE_CIRCUIT_OPEN.set(0)

    def _record_failure(self, asset_id: str, reason: str) -> None:
        self._consecutive_failures += 1
        self._failed.add(asset_id)
        ORACLE_FAILURES.labels(reason=reason).inc()
        logger.warning(
            "Oracle lookup failed for %s (%s), %s consecutive failures",
            asset_id, reason, self._consecutive_failures,
        )
        if self._consecutive_failures >= self.failure_threshold and not self._open_until:
            self._open_until = self._clock() + self.cooldown_seconds
            ORACLE_CIRCUIT_OPEN.set(1)
            logger.warning("Oracle circuit opened for %.0fs", self.cooldown_seconds)

    def _record_success(self, asset_id: str, details: PriceDetails) -> None:
        now = self._clock()
        self._consecutive_failures = 0
        self._cache[asset_id] = (now, details)
        self._last_good[asset_id] = (now, details)
        self._failed.discard(asset_id)

    async def _get(self, client: httpx.AsyncClient, path: str, params: dict) -> httpx.Response:
        url = f"{self.base_url}{path}"
        resp = await client.get(url, params=params, headers=self._headers())
        if resp.status_code == 429:
            logger.info("Oracle rate limited, retrying once in %ss", self.rate_limit_delay_seconds)
            await asyncio.sleep(self.rate_limit_delay_seconds)
            resp = await client.get(url, params=params, headers=self._headers())
        resp.raise_for_status()
        return resp

    @staticmethod
    def _parse(asset_id: str, payload) -> PriceDetails:
        rows = payload if isinstance(payload, list) else []
        for row in rows:
            if isinstance(row, dict) and row.get("id") == asset_id:
                return {"price": row.get("current_price"), "image_url": row.get("image")}
        return {"price": None, "image_url": None}

    async def _fetch(self, asset_id: str) -> PriceDetails:
        cached = self._cache.get(asset_id)
        if cached and self._clock() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        self._check_circuit(asset_id)

        timeout = httpx.Timeout(self.timeout_seconds, connect=min(3.0, self.timeout_seconds))
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await self._get(
                    client, "/coins/markets", {"vs_currency": "usd", "ids": asset_id}
                )
                payload = resp.json()
        except httpx.TimeoutException as exc:
            self._record_failure(asset_id, "timeout")
            raise OracleUnavailable(asset_id, "timeout") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            reason = "rate_limited" if status == 429 else "http_error"
            self._record_failure(asset_id, reason)
            raise OracleUnavailable(asset_id, f"HTTP {status}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            self._record_failure(asset_id, "transport")
            raise OracleUnavailable(asset_id, repr(exc)) from exc

        details = self._parse(asset_id, payload)
        if not is_valid_price(details["price"]):
            self._record_failure(asset_id, "bad_payload")
            raise OracleUnavailable(asset_id, f"invalid price {details['price']!r}")

        details = {"price": float(details["price"]), "image_url": details["image_url"]}
        self._record_success(asset_id, details)
        return details

    async def get_price(self, asset_id: str) -> float:
        """Current USD price. Raises OracleUnavailable; never returns a placeholder."""
        return (await self._fetch(asset_id))["price"]

    async def get_details(self, asset_id: str) -> PriceDetails:
        """
        Price and image for ``asset_id``. On failure returns
        ``SENTINEL_PRICE`` so callers can skip instead of persisting garbage.
        """
        try:
            return await self._fetch(asset_id)
        except OracleUnavailable as exc:
            logger.warning("get_details falling back to sentinel for %s: %s", asset_id, exc.reason)
            return {"price": SENTINEL_PRICE, "image_url": None}

    def last_known_good(self, asset_id: str) -> Optional[Tuple[PriceDetails, float]]:
        """Last successful quote and its age in seconds. Display only."""
        entry = self._last_good.get(asset_id)
        if not entry:
            return None
        ts, details = entry
        return details, self._clock() - ts

    async def retry_failed(self) -> List[str]:
        """Re-attempt lookups that failed earlier; returns the ids that recovered."""
        recovered: List[str] = []
        for asset_id in sorted(self._failed):
            if self.circuit_open:
                break
            try:
                await self._fetch(asset_id)
            except OracleUnavailable:
                continue
            logger.info("Oracle lookup recovered for %s", asset_id)
            recovered.append(asset_id)
        return recovered


@lru_cache()
def get_oracle_client() -> OracleClient:
    return OracleClient.from_settings(get_settings())
