"""
MarketDataProvider - Prices, open interest and klines for perpetual futures.

Purpose: Supply the current price and open-interest notional the risk gate
needs, plus candlesticks for the read API. Read-heavy queries go through a
short-lived TTL cache so the upstream is not hammered.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import httpx

from ..cache import TTLCache
from ..errors import MarketDataError
from ..schemas import Kline, MarketQuote

logger = logging.getLogger("arena_trader.agents.market_data")

BINANCE_FUTURES_URL = "https://fapi.binance.com"


class MarketDataProvider(ABC):
    """Upstream market data consumed by the decision cycle and the API."""

    @abstractmethod
    async def get_quote(self, symbol: str) -> MarketQuote:
        ...

    @abstractmethod
    async def get_klines(self, symbol: str, interval: str = "3m", limit: int = 100) -> List[Kline]:
        ...

    async def get_quotes(self, symbols: Iterable[str]) -> Dict[str, MarketQuote]:
        """Quotes for every symbol that resolved; failures are logged and left out."""
        symbols = list(symbols)
        results = await asyncio.gather(
            *(self.get_quote(s) for s in symbols),
            return_exceptions=True,
        )
        quotes = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, MarketDataError):
                logger.warning(f"No quote for {symbol}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            quotes[symbol] = result
        return quotes

    async def aclose(self):
        pass


class BinanceFuturesMarketData(MarketDataProvider):
    """Public USD-M futures REST endpoints, no credentials needed."""

    def __init__(
        self,
        base_url: str = BINANCE_FUTURES_URL,
        timeout: float = 15.0,
        cache_ttl_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache: TTLCache = TTLCache(ttl_seconds=cache_ttl_seconds)
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _get(self, path: str, params: dict):
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException:
            raise MarketDataError(f"{path} timed out after {self.timeout}s", timed_out=True)
        except httpx.HTTPError as e:
            raise MarketDataError(f"{path} request failed: {e}")

        if response.status_code != 200:
            raise MarketDataError(f"{path} returned HTTP {response.status_code}: {response.text[:200]}")
        return response.json()

    async def get_quote(self, symbol: str) -> MarketQuote:
        symbol = symbol.upper()
        cache_key = f"quote:{symbol}"
        cached, hit = self.cache.get(cache_key)
        if hit:
            return cached

        ticker = await self._get("/fapi/v1/ticker/price", {"symbol": symbol})
        try:
            price = float(ticker["price"])
        except (KeyError, TypeError, ValueError):
            raise MarketDataError(f"Malformed ticker for {symbol}: {ticker}")

        open_interest_usd = None
        try:
            oi = await self._get("/fapi/v1/openInterest", {"symbol": symbol})
            open_interest_usd = float(oi["openInterest"]) * price
        except MarketDataError as e:
            logger.warning(f"Open interest unavailable for {symbol}: {e}")
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Malformed open interest payload for {symbol}")

        quote = MarketQuote(symbol=symbol, price=price, open_interest_usd=open_interest_usd)
        self.cache.set(cache_key, quote)
        return quote

    async def get_klines(self, symbol: str, interval: str = "3m", limit: int = 100) -> List[Kline]:
        symbol = symbol.upper()
        cache_key = f"klines:{symbol}:{interval}:{limit}"
        cached, hit = self.cache.get(cache_key)
        if hit:
            return cached

        rows = await self._get(
            "/fapi/v1/klines",
            {"symbol": symbol, "interval": interval, "limit": limit},
        )
        try:
            klines = [
                Kline(
                    open_time=int(row[0]),
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                    close_time=int(row[6]),
                )
                for row in rows
            ]
        except (IndexError, TypeError, ValueError):
            raise MarketDataError(f"Malformed klines payload for {symbol}")

        self.cache.set(cache_key, klines)
        return klines

    async def aclose(self):
        await self._client.aclose()
