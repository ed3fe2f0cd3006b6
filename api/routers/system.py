from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from api.dependencies import (
    get_price_feed,
    get_prometheus_registry,
    get_settings,
)
from api.schemas.responses import HealthResponse, HealthStatus
from core.config.settings import Settings
from services.price_feed import PriceFeedAggregator

router = APIRouter(tags=["System"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_settings),
    price_feed: PriceFeedAggregator = Depends(get_price_feed)
):
    """Liveness plus oracle circuit state; symbols with an open circuit are priced from the fallback table."""
    open_circuits = price_feed.open_circuits()
    return HealthResponse(
        status=HealthStatus.DEGRADED if open_circuits else HealthStatus.HEALTHY,
        service=settings.app_name,
        version=settings.version,
        environment=settings.environment.value,
        store_backend=settings.ledger.store_backend,
        cache_backend=settings.price_feed.cache_backend,
        open_circuits=open_circuits,
    )


@router.get("/metrics")
def metrics(registry: CollectorRegistry = Depends(get_prometheus_registry)):
    """Prometheus scrape endpoint for the shared registry."""
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
