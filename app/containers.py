from dependency_injector import containers, providers
import redis.asyncio as redis
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.prometheus_metrics import LedgerMetricsCollector
from services.portfolio_ledger.locks import KeyedLockRegistry
from services.portfolio_ledger.service import PortfolioLedgerService
from services.portfolio_ledger.store.database_store import DatabaseLedgerStore
from services.portfolio_ledger.store.memory_store import InMemoryLedgerStore
from services.price_feed import (
    InMemoryPriceCache,
    PriceFeedAggregator,
    PythOracleClient,
    RedisPriceCache,
)
from services.rebalancer.scheduler import RebalanceScheduler


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # --- Observability: Prometheus ---
    # Shared registry used by the API /metrics endpoint and the collector
    prometheus_registry = providers.Singleton(CollectorRegistry)
    metrics = providers.Singleton(
        LedgerMetricsCollector,
        registry=prometheus_registry,
    )

    # Infrastructure; only instantiated when a backend selects them
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.postgres_url,
        echo=settings.provided.database.echo,
        pool_size=settings.provided.database.pool_size,
        max_overflow=settings.provided.database.max_overflow,
    )
    redis_client = providers.Singleton(
        redis.from_url,
        settings.provided.redis.url,
        decode_responses=False,
    )

    # --- Price feed ---
    price_cache = providers.Selector(
        settings.provided.price_feed.cache_backend,
        memory=providers.Singleton(
            InMemoryPriceCache,
            ttl_seconds=settings.provided.price_feed.cache_ttl_seconds,
        ),
        redis=providers.Singleton(
            RedisPriceCache,
            ttl_seconds=settings.provided.price_feed.cache_ttl_seconds,
            redis_client=redis_client,
        ),
    )
    oracle_client = providers.Singleton(
        PythOracleClient,
        settings=settings.provided.price_feed,
    )
    price_feed = providers.Singleton(
        PriceFeedAggregator,
        oracle=oracle_client,
        cache=price_cache,
        settings=settings.provided.price_feed,
        metrics=metrics,
    )

    # --- Ledger ---
    ledger_store = providers.Selector(
        settings.provided.ledger.store_backend,
        memory=providers.Singleton(InMemoryLedgerStore),
        database=providers.Singleton(DatabaseLedgerStore, db_manager=db_manager),
    )
    # Ledger and rebalancer share one registry so they serialize on the same portfolio locks
    lock_registry = providers.Singleton(KeyedLockRegistry)

    ledger_service = providers.Singleton(
        PortfolioLedgerService,
        store=ledger_store,
        price_feed=price_feed,
        settings=settings,
        lock_registry=lock_registry,
        metrics=metrics,
    )
    rebalance_scheduler = providers.Singleton(
        RebalanceScheduler,
        store=ledger_store,
        price_feed=price_feed,
        settings=settings,
        lock_registry=lock_registry,
        metrics=metrics,
    )
