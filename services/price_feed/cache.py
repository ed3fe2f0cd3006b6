from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.logging import get_market_data_logger_safe
from core.portfolio.models import PriceQuote


class PriceCache(ABC):
    """TTL cache of live quotes, passed explicitly to the aggregator."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, symbol: str) -> Optional[PriceQuote]:
        """Return an unexpired quote or None."""

    @abstractmethod
    async def set(self, quote: PriceQuote) -> None:
        ...

    @abstractmethod
    async def invalidate(self, symbol: Optional[str] = None) -> None:
        """Drop one symbol, or everything when symbol is None."""

    async def close(self) -> None:
        pass


class InMemoryPriceCache(PriceCache):
    """Per-instance dict cache; nothing is shared between instances."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, PriceQuote]] = {}

    async def get(self, symbol: str) -> Optional[PriceQuote]:
        entry = self._entries.get(symbol.upper())
        if entry is None:
            return None
        expires_at, quote = entry
        if self._clock() >= expires_at:
            del self._entries[symbol.upper()]
            return None
        return quote

    async def set(self, quote: PriceQuote) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[quote.symbol.upper()] = (self._clock() + self.ttl_seconds, quote)

    async def invalidate(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._entries.clear()
        else:
            self._entries.pop(symbol.upper(), None)


class RedisPriceCache(PriceCache):
    """
    Redis-backed quote cache shared between processes.

    Redis problems never fail a price lookup: reads degrade to a miss and
    writes and invalidations are skipped, all with a warning.
    """

    def __init__(self, ttl_seconds: float, redis_client=None, redis_url: Optional[str] = None,
                 namespace: str = "pool_ledger"):
        super().__init__(ttl_seconds)
        self.redis_client = redis_client
        self.redis_url = redis_url
        self.namespace = namespace
        self.logger = get_market_data_logger_safe("price_cache")

    def _client(self):
        if self.redis_client is None:
            self.redis_client = redis.from_url(self.redis_url or "redis://localhost:6379/0")
        return self.redis_client

    def _get_key(self, symbol: str) -> str:
        return f"{self.namespace}:price:{symbol.upper()}"

    async def get(self, symbol: str) -> Optional[PriceQuote]:
        try:
            data = await self._client().get(self._get_key(symbol))
        except RedisError as e:
            self.logger.warning("Price cache read failed", symbol=symbol, error=str(e))
            return None
        if not data:
            return None
        return PriceQuote.model_validate_json(data)

    async def set(self, quote: PriceQuote) -> None:
        ttl_ms = int(self.ttl_seconds * 1000)
        if ttl_ms <= 0:
            return
        try:
            await self._client().set(self._get_key(quote.symbol), quote.model_dump_json(), px=ttl_ms)
        except RedisError as e:
            self.logger.warning("Price cache write failed", symbol=quote.symbol, error=str(e))

    async def invalidate(self, symbol: Optional[str] = None) -> None:
        client = self._client()
        try:
            if symbol is not None:
                await client.delete(self._get_key(symbol))
                return
            keys = [key async for key in client.scan_iter(match=f"{self.namespace}:price:*")]
            if keys:
                await client.delete(*keys)
        except RedisError as e:
            self.logger.warning("Price cache invalidate failed", symbol=symbol, error=str(e))

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
