from fastapi import Depends
from dependency_injector.wiring import inject, Provide
from prometheus_client import CollectorRegistry

from app.containers import AppContainer
from core.config.settings import Settings
from services.portfolio_ledger.service import PortfolioLedgerService
from services.price_feed import PriceFeedAggregator
from services.rebalancer.scheduler import RebalanceScheduler


@inject
def get_settings(
    settings: Settings = Depends(Provide[AppContainer.settings])
) -> Settings:
    return settings


@inject
def get_ledger_service(
    ledger_service: PortfolioLedgerService = Depends(Provide[AppContainer.ledger_service])
) -> PortfolioLedgerService:
    return ledger_service


@inject
def get_rebalance_scheduler(
    scheduler: RebalanceScheduler = Depends(Provide[AppContainer.rebalance_scheduler])
) -> RebalanceScheduler:
    return scheduler


@inject
def get_price_feed(
    price_feed: PriceFeedAggregator = Depends(Provide[AppContainer.price_feed])
) -> PriceFeedAggregator:
    return price_feed


@inject
def get_prometheus_registry(
    registry: CollectorRegistry = Depends(Provide[AppContainer.prometheus_registry])
) -> CollectorRegistry:
    return registry
