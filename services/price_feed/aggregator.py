import asyncio
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from core.config.settings import PriceFeedSettings
from core.logging import get_market_data_logger_safe, get_error_logger_safe
from core.monitoring.prometheus_metrics import LedgerMetricsCollector
from core.portfolio.models import PriceQuote, QuoteSource
from core.utils.circuit_breaker import CircuitBreaker, CircuitState
from core.utils.exceptions import UpstreamUnavailableError, create_error_context

from .cache import PriceCache
from .fallback import FallbackPriceTable
from .oracle_client import PythOracleClient
from .subscription import PriceSubscription

QuoteCallback = Callable[[Dict[str, PriceQuote]], Union[None, Awaitable[None]]]


class PriceFeedAggregator:
    """
    Price lookups for valuation.

    Order of resolution: cache, live oracle (behind a per-symbol circuit
    breaker and a timeout), then the static fallback table. Oracle outages
    never reach the caller; they show up as quotes with source=fallback.
    A dead feed only opens the breaker of its own symbol.
    """

    def __init__(
        self,
        oracle: PythOracleClient,
        cache: PriceCache,
        settings: PriceFeedSettings,
        fallback: Optional[FallbackPriceTable] = None,
        breaker_factory: Optional[Callable[[str], CircuitBreaker]] = None,
        metrics: Optional[LedgerMetricsCollector] = None,
    ):
        self.oracle = oracle
        self.cache = cache
        self.settings = settings
        self.fallback = fallback or FallbackPriceTable(
            settings.fallback_prices, settings.default_fallback_price
        )
        self.breaker_factory = breaker_factory or self._default_breaker
        self.breakers: Dict[str, CircuitBreaker] = {}
        self.metrics = metrics
        self.logger = get_market_data_logger_safe("price_feed")
        self.error_logger = get_error_logger_safe("price_feed_errors")

    async def fetch_price(self, symbol: str) -> PriceQuote:
        symbol = symbol.upper()

        cached = await self.cache.get(symbol)
        if cached is not None:
            self._record(QuoteSource.CACHE)
            return cached.model_copy(update={"source": QuoteSource.CACHE})

        if not self.oracle.supports(symbol):
            self.logger.debug("No oracle feed, using fallback price", symbol=symbol)
            return self._fallback(symbol)

        start = time.perf_counter()
        try:
            quote = await self.breaker_for(symbol).call(self._fetch_live, symbol)
        except UpstreamUnavailableError as e:
            if self.metrics:
                self.metrics.record_oracle_latency("error", time.perf_counter() - start)
            self.logger.warning(
                "Oracle unavailable, using fallback price",
                **create_error_context(e, "fetch_price", {"symbol": symbol}),
            )
            return self._fallback(symbol)

        if self.metrics:
            self.metrics.record_oracle_latency("success", time.perf_counter() - start)
        self._record(QuoteSource.LIVE)
        await self.cache.set(quote)
        return quote

    def _default_breaker(self, symbol: str) -> CircuitBreaker:
        return CircuitBreaker(
            name=f"price_oracle:{symbol}",
            failure_threshold=self.settings.breaker_failure_threshold,
            recovery_timeout=self.settings.breaker_recovery_seconds,
            expected_exception=(UpstreamUnavailableError,),
        )

    def breaker_for(self, symbol: str) -> CircuitBreaker:
        symbol = symbol.upper()
        breaker = self.breakers.get(symbol)
        if breaker is None:
            breaker = self.breakers[symbol] = self.breaker_factory(symbol)
        return breaker

    def open_circuits(self) -> List[str]:
        """Symbols whose breaker is not closed, sorted."""
        return sorted(
            symbol for symbol, breaker in self.breakers.items()
            if breaker.state != CircuitState.CLOSED
        )

    async def _fetch_live(self, symbol: str) -> PriceQuote:
        try:
            return await asyncio.wait_for(
                self.oracle.fetch_quote(symbol),
                timeout=self.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(
                f"Oracle did not answer for {symbol} within {self.settings.request_timeout_seconds}s",
                symbol=symbol,
            ) from e

    def _fallback(self, symbol: str) -> PriceQuote:
        self._record(QuoteSource.FALLBACK)
        return self.fallback.quote(symbol)

    def _record(self, source: QuoteSource) -> None:
        if self.metrics:
            self.metrics.record_price_fetch(source.value)

    async def fetch_many(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        """Fetch all symbols concurrently; every requested symbol gets a quote."""
        unique = list(dict.fromkeys(s.upper() for s in symbols))
        results = await asyncio.gather(
            *(self.fetch_price(symbol) for symbol in unique),
            return_exceptions=True,
        )

        quotes: Dict[str, PriceQuote] = {}
        for symbol, result in zip(unique, results):
            if isinstance(result, PriceQuote):
                quotes[symbol] = result
            elif isinstance(result, Exception):
                self.error_logger.error(
                    "Price fetch failed unexpectedly, using fallback",
                    **create_error_context(result, "fetch_many", {"symbol": symbol}),
                )
                quotes[symbol] = self._fallback(symbol)
            else:
                raise result
        return quotes

    def subscribe(
        self,
        symbols: Iterable[str],
        interval_ms: Optional[int],
        on_update: QuoteCallback,
    ) -> PriceSubscription:
        """Start polling `symbols` every `interval_ms` (None for the configured default).

        Must be called from a running event loop.
        """
        subscription = PriceSubscription(
            self,
            symbols,
            interval_ms if interval_ms is not None else self.settings.subscription_interval_ms,
            on_update,
            metrics=self.metrics,
        )
        subscription.start()
        return subscription

    async def invalidate(self, symbol: Optional[str] = None) -> None:
        await self.cache.invalidate(symbol)

    async def close(self) -> None:
        await self.oracle.close()
        await self.cache.close()
