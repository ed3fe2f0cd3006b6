from decimal import Decimal

import pytest

from core.portfolio.models import QuoteSource
from core.utils.circuit_breaker import CircuitBreaker, CircuitState
from core.utils.exceptions import UpstreamUnavailableError
from services.price_feed import FallbackPriceTable, InMemoryPriceCache, PriceFeedAggregator


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cached_feed(fake_oracle, test_settings, metrics, clock):
    return PriceFeedAggregator(
        oracle=fake_oracle,
        cache=InMemoryPriceCache(ttl_seconds=15, clock=clock),
        settings=test_settings.price_feed,
        metrics=metrics,
    )


class TestFetchPrice:

    @pytest.mark.asyncio
    async def test_live_quote(self, price_feed, metrics):
        quote = await price_feed.fetch_price("btc")
        assert quote.symbol == "BTC"
        assert quote.price == Decimal("50000")
        assert quote.source == QuoteSource.LIVE
        assert metrics.registry.get_sample_value("price_fetches_total", {"source": "live"}) == 1.0

    @pytest.mark.asyncio
    async def test_cache_hit_within_ttl(self, cached_feed, fake_oracle, clock):
        first = await cached_feed.fetch_price("BTC")
        fake_oracle.prices["BTC"] = Decimal("99999")
        clock.now += 10

        second = await cached_feed.fetch_price("BTC")

        assert second.price == first.price
        assert second.source == QuoteSource.CACHE
        assert fake_oracle.calls == ["BTC"]

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, cached_feed, fake_oracle, clock):
        await cached_feed.fetch_price("BTC")
        fake_oracle.prices["BTC"] = Decimal("51000")
        clock.now += 15

        quote = await cached_feed.fetch_price("BTC")
        assert quote.price == Decimal("51000")
        assert quote.source == QuoteSource.LIVE

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, cached_feed, fake_oracle):
        await cached_feed.fetch_price("BTC")
        await cached_feed.invalidate("BTC")
        await cached_feed.fetch_price("BTC")
        assert fake_oracle.calls == ["BTC", "BTC"]

    @pytest.mark.asyncio
    async def test_outage_falls_back_and_is_not_cached(self, cached_feed, fake_oracle):
        fake_oracle.failing = {"ETH"}

        quote = await cached_feed.fetch_price("ETH")
        assert quote.source == QuoteSource.FALLBACK
        assert quote.degraded
        assert quote.price == FallbackPriceTable().price_for("ETH")

        fake_oracle.failing = set()
        assert (await cached_feed.fetch_price("ETH")).source == QuoteSource.LIVE

    @pytest.mark.asyncio
    async def test_slow_oracle_times_out_to_fallback(self, price_feed, fake_oracle, test_settings):
        fake_oracle.delay = test_settings.price_feed.request_timeout_seconds * 4
        quote = await price_feed.fetch_price("BTC")
        assert quote.source == QuoteSource.FALLBACK

    @pytest.mark.asyncio
    async def test_symbol_without_feed_uses_fallback_without_calling_oracle(self, price_feed, fake_oracle):
        quote = await price_feed.fetch_price("SAND")
        assert quote.source == QuoteSource.FALLBACK
        assert quote.price == Decimal("0.48")
        assert fake_oracle.calls == []

    @pytest.mark.asyncio
    async def test_unknown_symbol_gets_default_fallback(self, price_feed):
        quote = await price_feed.fetch_price("ZZZ")
        assert quote.price == Decimal("1.0")

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self, fake_oracle, test_settings):
        def tight_breaker(symbol):
            return CircuitBreaker(f"oracle:{symbol}", failure_threshold=2, recovery_timeout=60,
                                  expected_exception=(UpstreamUnavailableError,))

        feed = PriceFeedAggregator(
            oracle=fake_oracle,
            cache=InMemoryPriceCache(ttl_seconds=0),
            settings=test_settings.price_feed,
            breaker_factory=tight_breaker,
        )
        fake_oracle.failing = {"BTC"}

        await feed.fetch_price("BTC")
        await feed.fetch_price("BTC")
        assert feed.breaker_for("BTC").state == CircuitState.OPEN
        assert feed.open_circuits() == ["BTC"]

        fake_oracle.failing = set()
        quote = await feed.fetch_price("BTC")
        assert quote.source == QuoteSource.FALLBACK
        assert fake_oracle.calls == ["BTC", "BTC"]

    @pytest.mark.asyncio
    async def test_dead_feed_does_not_degrade_healthy_symbol(self, price_feed, fake_oracle):
        fake_oracle.prices["SOL"] = Decimal("150")
        fake_oracle.failing = {"SOL"}

        for _ in range(3):
            await price_feed.fetch_many(["SOL"])
        assert price_feed.breaker_for("SOL").state == CircuitState.OPEN

        quotes = await price_feed.fetch_many(["SOL", "BTC"])
        assert quotes["SOL"].source == QuoteSource.FALLBACK
        assert quotes["BTC"].source == QuoteSource.LIVE
        assert quotes["BTC"].price == Decimal("50000")
        assert price_feed.open_circuits() == ["SOL"]


class TestFetchMany:

    @pytest.mark.asyncio
    async def test_every_symbol_gets_a_quote(self, price_feed, fake_oracle):
        fake_oracle.failing = {"ETH"}

        quotes = await price_feed.fetch_many(["BTC", "eth", "btc", "DOGE"])

        assert list(quotes) == ["BTC", "ETH", "DOGE"]
        assert quotes["BTC"].source == QuoteSource.LIVE
        assert quotes["ETH"].source == QuoteSource.FALLBACK
        assert quotes["DOGE"].source == QuoteSource.FALLBACK

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, price_feed, fake_oracle, monkeypatch):
        async def broken(symbol):
            raise RuntimeError("bug in oracle client")

        monkeypatch.setattr(fake_oracle, "fetch_quote", broken)

        quotes = await price_feed.fetch_many(["BTC"])
        assert quotes["BTC"].source == QuoteSource.FALLBACK

    @pytest.mark.asyncio
    async def test_close_closes_oracle(self, price_feed, fake_oracle):
        await price_feed.close()
        assert fake_oracle.closed
