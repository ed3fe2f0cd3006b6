"""
Pytest configuration and shared fixtures for Pool Ledger tests.
"""
import asyncio
from decimal import Decimal
from typing import Dict, List

import pytest

from core.config.settings import (
    LedgerSettings,
    LoggingSettings,
    PriceFeedSettings,
    RebalanceSettings,
    Settings,
)
from core.monitoring.prometheus_metrics import get_metrics_for_testing
from core.portfolio.models import Allocation, Portfolio, PriceQuote, QuoteSource
from core.utils.exceptions import UpstreamUnavailableError
from services.portfolio_ledger.locks import KeyedLockRegistry
from services.portfolio_ledger.service import PortfolioLedgerService
from services.portfolio_ledger.store.memory_store import InMemoryLedgerStore
from services.price_feed import InMemoryPriceCache, PriceFeedAggregator
from services.rebalancer.scheduler import RebalanceScheduler

WEEK_SECONDS = 7 * 24 * 3600


class FakeOracle:
    """Stands in for PythOracleClient; prices are mutable per test."""

    def __init__(self, prices: Dict[str, Decimal]):
        self.prices = {symbol: Decimal(price) for symbol, price in prices.items()}
        self.failing: set = set()
        self.delay = 0.0
        self.calls: List[str] = []
        self.closed = False

    def supports(self, symbol: str) -> bool:
        return symbol.upper() in self.prices

    async def fetch_quote(self, symbol: str) -> PriceQuote:
        self.calls.append(symbol)
        if self.delay:
            await asyncio.sleep(self.delay)
        if symbol in self.failing:
            raise UpstreamUnavailableError(f"oracle down for {symbol}", symbol=symbol)
        return PriceQuote(symbol=symbol, price=self.prices[symbol], source=QuoteSource.LIVE)

    async def close(self) -> None:
        self.closed = True


def make_portfolio(portfolio_id: str = "blue-chip", **overrides) -> Portfolio:
    fields = dict(
        portfolio_id=portfolio_id,
        name="Blue Chip Crypto",
        category="index",
        risk_level=2,
        allocations=[
            Allocation(symbol="BTC", weight=Decimal("60")),
            Allocation(symbol="ETH", weight=Decimal("40")),
        ],
        rebalance_frequency_seconds=WEEK_SECONDS,
    )
    fields.update(overrides)
    return Portfolio(**fields)


@pytest.fixture
def test_settings():
    """Test settings: in-memory backends, console logging only."""
    return Settings(
        environment="testing",
        logging=LoggingSettings(level="DEBUG", file_enabled=False),
        price_feed=PriceFeedSettings(
            request_timeout_seconds=0.5,
            cache_ttl_seconds=0,
            breaker_failure_threshold=3,
            breaker_recovery_seconds=30,
        ),
        ledger=LedgerSettings(minimum_investment=Decimal("10"), share_issuance="par"),
        rebalance=RebalanceSettings(drift_threshold=Decimal("0.05"), max_concurrency=2),
    )


@pytest.fixture
def fake_oracle():
    return FakeOracle({"BTC": Decimal("50000"), "ETH": Decimal("2500")})


@pytest.fixture
def metrics():
    return get_metrics_for_testing()


@pytest.fixture
def price_feed(fake_oracle, test_settings, metrics):
    # TTL 0 disables caching so price changes inside a test are seen immediately
    return PriceFeedAggregator(
        oracle=fake_oracle,
        cache=InMemoryPriceCache(ttl_seconds=0),
        settings=test_settings.price_feed,
        metrics=metrics,
    )


@pytest.fixture
def portfolio_factory():
    return make_portfolio


@pytest.fixture
def portfolio():
    return make_portfolio()


@pytest.fixture
def oracle_factory():
    return FakeOracle


@pytest.fixture
def store(portfolio):
    return InMemoryLedgerStore([portfolio])


@pytest.fixture
def lock_registry():
    return KeyedLockRegistry()


@pytest.fixture
def ledger(store, price_feed, test_settings, lock_registry, metrics):
    return PortfolioLedgerService(
        store=store,
        price_feed=price_feed,
        settings=test_settings,
        lock_registry=lock_registry,
        metrics=metrics,
    )


@pytest.fixture
def scheduler(store, price_feed, test_settings, lock_registry, metrics):
    return RebalanceScheduler(
        store=store,
        price_feed=price_feed,
        settings=test_settings,
        lock_registry=lock_registry,
        metrics=metrics,
    )
