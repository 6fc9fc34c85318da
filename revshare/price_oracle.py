"""
Price Oracle Adapter

Spot prices from CoinGecko ``simple/price`` with:
- a short in-process cache (fresh hits do no I/O)
- bounded retry on upstream failure
- fallback to the last known price, flagged ``stale``

Two call sites with different failure semantics:
- ``get_display_price``: any cached price is acceptable
- ``get_payout_price``: refuses prices older than ``max_age_seconds``
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Tuple

import aiohttp

from . import metrics
from .errors import PriceUnavailableError, ProviderError, RetryExhaustedError, StalePriceError
from .models import PriceQuote, utcnow
from .retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


DEFAULT_API_URL = "https://api.coingecko.com/api/v3"

TICKER_TO_COINGECKO_ID = {
    "btc": "bitcoin",
    "eth": "ethereum",
    "sol": "solana",
    "usdt": "tether",
    "usdc": "usd-coin",
    "bnb": "binancecoin",
    "xrp": "ripple",
    "ada": "cardano",
    "doge": "dogecoin",
    "matic": "matic-network",
    "dot": "polkadot",
    "ltc": "litecoin",
    "avax": "avalanche-2",
    "link": "chainlink",
}


def parse_pair(pair: str) -> Tuple[str, str]:
    """``"SOL/USD"`` -> (``"solana"``, ``"usd"``)."""
    if "/" not in pair:
        raise ValueError(f"Price pair must look like BASE/QUOTE, got {pair!r}")
    base, quote = (p.strip().lower() for p in pair.split("/", 1))
    if not base or not quote:
        raise ValueError(f"Price pair must look like BASE/QUOTE, got {pair!r}")
    return TICKER_TO_COINGECKO_ID.get(base, base), quote


class PriceOracle:
    """Cached spot-price client with stale fallback."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        cache_ttl_seconds: int = 30,
        timeout_seconds: int = 10,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.api_url = api_url.rstrip("/")
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self._cache: Dict[str, PriceQuote] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, price_config, retry_settings=None) -> "PriceOracle":
        return cls(
            api_url=price_config.api_url,
            cache_ttl_seconds=price_config.cache_ttl_seconds,
            timeout_seconds=price_config.timeout_seconds,
            retry_policy=RetryPolicy.from_settings(retry_settings) if retry_settings else None,
        )

    # =========================================================================
    # Session Management
    # =========================================================================

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "PriceOracle":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Upstream
    # =========================================================================

    async def _fetch(self, pair: str) -> Decimal:
        """One upstream request. Raises ProviderError on any failure."""
        coin_id, quote = parse_pair(pair)
        await self.connect()
        url = f"{self.api_url}/simple/price"
        params = {"ids": coin_id, "vs_currencies": quote}

        try:
            async with self._session.get(url, params=params) as resp:
                if resp.status == 429:
                    raise ProviderError("Price oracle rate limited", provider="coingecko")
                if resp.status != 200:
                    raise ProviderError(f"Price oracle returned HTTP {resp.status}", provider="coingecko")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Price oracle unreachable: {e!r}", provider="coingecko") from e

        try:
            price = Decimal(str(data[coin_id][quote]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ProviderError(f"Price oracle has no {pair} quote", provider="coingecko") from e

        if price <= 0:
            raise ProviderError(f"Price oracle returned non-positive price for {pair}", provider="coingecko")
        return price

    # =========================================================================
    # Public API
    # =========================================================================

    def cached(self, pair: str) -> Optional[PriceQuote]:
        """Last successful quote for ``pair``, if any."""
        return self._cache.get(pair.upper())

    async def get_price(self, pair: str) -> PriceQuote:
        """
        Current price for ``pair``.

        Fresh cache hits return immediately. On upstream failure the cached
        quote is returned with ``stale=True``.

        Raises:
            PriceUnavailableError: upstream failed and nothing is cached.
        """
        key = pair.upper()
        async with self._lock:
            cached = self._cache.get(key)
            now = self._clock()
            if cached and cached.age_seconds(now) < self.cache_ttl_seconds:
                return cached

            try:
                price = await retry_async(
                    lambda: self._fetch(pair), self.retry_policy, name=f"price:{key}"
                )
            except (ProviderError, RetryExhaustedError) as e:
                if cached is None:
                    raise PriceUnavailableError(key, str(e)) from e
                metrics.stale_price_served_total().inc()
                logger.warning(
                    f"StalePrice: serving cached {key} = {cached.price} "
                    f"({cached.age_seconds(now):.0f}s old) after oracle failure: {e}"
                )
                return PriceQuote(
                    pair=key,
                    price=cached.price,
                    fetched_at=cached.fetched_at,
                    stale=True,
                    source=cached.source,
                )

            quote = PriceQuote(pair=key, price=price, fetched_at=self._clock(), source="coingecko")
            self._cache[key] = quote
            logger.debug(f"Price {key} = {price}")
            return quote

    async def get_display_price(self, pair: str) -> PriceQuote:
        """Price for display and revenue valuation. Stale prices are acceptable."""
        return await self.get_price(pair)

    async def get_payout_price(self, pair: str, max_age_seconds: float) -> PriceQuote:
        """
        Price for an actual payout.

        Raises:
            StalePriceError: best available quote is older than ``max_age_seconds``.
            PriceUnavailableError: no quote at all.
        """
        quote = await self.get_price(pair)
        age = quote.age_seconds(self._clock())
        if age > max_age_seconds:
            raise StalePriceError(quote.pair, age, max_age_seconds)
        return quote

    async def convert(self, amount: Decimal, pair: str) -> Decimal:
        """Convert ``amount`` of the pair's base currency into its quote currency (display price)."""
        quote = await self.get_display_price(pair)
        return Decimal(amount) * quote.price
