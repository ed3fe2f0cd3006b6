"""
Price Feed Service

Live oracle quotes with an explicit TTL cache, circuit breaker and static
fallback prices, plus cooperative polling subscriptions.
"""

from .aggregator import PriceFeedAggregator
from .cache import PriceCache, InMemoryPriceCache, RedisPriceCache
from .fallback import FallbackPriceTable, FALLBACK_PRICES
from .oracle_client import PythOracleClient, parse_price_payload
from .subscription import PriceSubscription

__all__ = [
    "PriceFeedAggregator",
    "PriceCache",
    "InMemoryPriceCache",
    "RedisPriceCache",
    "FallbackPriceTable",
    "FALLBACK_PRICES",
    "PythOracleClient",
    "parse_price_payload",
    "PriceSubscription",
]
