import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional

from core.config.settings import Settings
from core.logging import LogChannel
from core.logging.service_logger import get_service_logger
from core.monitoring.prometheus_metrics import LedgerMetricsCollector
from core.portfolio.models import (
    HUNDRED,
    ZERO,
    Portfolio,
    PriceQuote,
    RebalanceEvent,
    RebalanceReason,
    Trade,
    TradeAction,
    utc_now,
)
from core.portfolio.valuation import performance_snapshot, value_portfolio
from core.utils.exceptions import NotFoundError, create_error_context
from services.portfolio_ledger.locks import KeyedLockRegistry, portfolio_key
from services.portfolio_ledger.store.base import LedgerStore
from services.price_feed.aggregator import PriceFeedAggregator

from .models import RebalanceFailure, RebalanceRunSummary, TriggerDecision
from .optimizer import compute_trades


class RebalanceScheduler:
    """
    Decides when a portfolio needs rebalancing and executes it.

    A rebalance holds the portfolio lock from valuation through persistence;
    the trades, the RebalanceEvent and last_rebalanced_at commit in one unit
    of work.
    """

    def __init__(
        self,
        store: LedgerStore,
        price_feed: PriceFeedAggregator,
        settings: Settings,
        lock_registry: Optional[KeyedLockRegistry] = None,
        metrics: Optional[LedgerMetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.price_feed = price_feed
        self.settings = settings
        self.locks = lock_registry or KeyedLockRegistry()
        self.metrics = metrics
        self._clock = clock
        self.log = get_service_logger("rebalancer", LogChannel.REBALANCE, "scheduler")

    async def evaluate(
        self,
        portfolio: Portfolio,
        now: Optional[datetime] = None,
        quotes: Optional[Mapping[str, PriceQuote]] = None,
    ) -> TriggerDecision:
        """Scheduled check first, then drift against live prices."""
        now = now or self._clock()
        last = portfolio.last_rebalanced_at
        if last is None or now - last >= timedelta(seconds=portfolio.rebalance_frequency_seconds):
            return TriggerDecision(
                portfolio_id=portfolio.portfolio_id,
                should_rebalance=True,
                reason=RebalanceReason.SCHEDULED,
            )

        if quotes is None:
            quotes = await self.price_feed.fetch_many(portfolio.symbols)
        valuation = value_portfolio(portfolio, quotes)
        if valuation.total_value == ZERO:
            return TriggerDecision(portfolio_id=portfolio.portfolio_id, should_rebalance=False,
                                   degraded_pricing=valuation.degraded)

        current = valuation.weights()
        targets = portfolio.target_weights()
        max_drift = max(abs(current[symbol] - target) for symbol, target in targets.items())
        triggered = max_drift > self.settings.rebalance.drift_threshold
        return TriggerDecision(
            portfolio_id=portfolio.portfolio_id,
            should_rebalance=triggered,
            reason=RebalanceReason.DRIFT if triggered else None,
            max_drift=max_drift,
            degraded_pricing=valuation.degraded,
        )

    async def execute_rebalance(self, portfolio_id: str, reason: RebalanceReason) -> RebalanceEvent:
        reason = RebalanceReason(reason)
        log = self.log.bind_portfolio_context(portfolio_id)
        try:
            async with self.locks.hold(portfolio_key(portfolio_id)):
                async with self.store.unit_of_work() as uow:
                    portfolio = await uow.load_portfolio(portfolio_id)
                    if portfolio is None:
                        raise NotFoundError(
                            f"Portfolio {portfolio_id} not found",
                            resource="portfolio",
                            resource_id=portfolio_id,
                        )

                    quotes = await self.price_feed.fetch_many(portfolio.symbols)
                    valuation = value_portfolio(portfolio, quotes)
                    prices = {symbol: quote.price for symbol, quote in quotes.items()}
                    total_value = valuation.total_value

                    trades = compute_trades(
                        portfolio.holdings,
                        portfolio.allocations,
                        prices,
                        total_value,
                        self.settings.rebalance.dust_threshold,
                    )
                    before = self._percent(valuation.weights())
                    self._book_trades(portfolio, trades)
                    after = self._percent(value_portfolio(portfolio, quotes).weights())

                    now = self._clock()
                    portfolio.last_rebalanced_at = now
                    portfolio.current_nav = total_value
                    portfolio.touch()

                    event = RebalanceEvent(
                        portfolio_id=portfolio_id,
                        allocations_before=before,
                        allocations_after=after,
                        total_value=total_value,
                        reason=reason,
                        trades=trades,
                        degraded_pricing=valuation.degraded,
                        executed_at=now,
                    )
                    await uow.save_portfolio(portfolio)
                    await uow.append_rebalance_event(event)
                    await uow.append_performance_snapshot(performance_snapshot(portfolio, quotes, now))
        except Exception as e:
            if self.metrics:
                self.metrics.record_rebalance(reason.value, "failed")
            log.log_error("Rebalance failed", **create_error_context(e, "execute_rebalance", {"reason": reason.value}))
            raise

        if self.metrics:
            self.metrics.record_rebalance(reason.value, "success")
            for trade in trades:
                self.metrics.record_trade(trade.action.value)
        log.log_audit("rebalance_executed", {
            "event_id": event.event_id,
            "reason": reason.value,
            "total_value": str(total_value),
            "trades": len(trades),
            "degraded_pricing": event.degraded_pricing,
        })
        return event

    async def run_all(self) -> RebalanceRunSummary:
        """Evaluate every active portfolio and rebalance those that need it."""
        try:
            portfolios = await self.store.list_active_portfolios()
        except Exception as e:
            self.log.log_error("Could not list portfolios for rebalancing", error=e)
            return RebalanceRunSummary(
                success=False,
                errors=[RebalanceFailure(error_type=type(e).__name__, message=str(e))],
            )

        semaphore = asyncio.Semaphore(max(1, self.settings.rebalance.max_concurrency))

        async def process(portfolio: Portfolio) -> Optional[RebalanceEvent]:
            async with semaphore:
                decision = await self.evaluate(portfolio)
                if not decision.should_rebalance:
                    return None
                return await self.execute_rebalance(portfolio.portfolio_id, decision.reason)

        results = await asyncio.gather(*(process(p) for p in portfolios), return_exceptions=True)

        events: List[RebalanceEvent] = []
        errors: List[RebalanceFailure] = []
        for portfolio, result in zip(portfolios, results):
            if isinstance(result, RebalanceEvent):
                events.append(result)
            elif isinstance(result, Exception):
                errors.append(RebalanceFailure(
                    portfolio_id=portfolio.portfolio_id,
                    error_type=type(result).__name__,
                    message=str(result),
                ))
            elif isinstance(result, BaseException):
                raise result

        if self.metrics:
            self.metrics.mark_rebalance_run()
        self.log.info(
            "Rebalance run complete",
            evaluated=len(portfolios),
            rebalanced=len(events),
            failed=len(errors),
        )
        return RebalanceRunSummary(
            success=not errors,
            evaluated=len(portfolios),
            rebalanced_count=len(events),
            events=events,
            errors=errors,
        )

    @staticmethod
    def _percent(weights: Dict[str, Decimal]) -> Dict[str, Decimal]:
        return {symbol: weight * HUNDRED for symbol, weight in weights.items()}

    @staticmethod
    def _book_trades(portfolio: Portfolio, trades: List[Trade]) -> None:
        """Apply trades to the pool's holdings and cash at the quoted prices."""
        holdings = dict(portfolio.holdings)
        cash = portfolio.cash_balance
        for trade in trades:
            held = holdings.get(trade.symbol, ZERO)
            if trade.action == TradeAction.BUY:
                holdings[trade.symbol] = held + trade.amount
                cash -= trade.value_usd
            else:
                holdings[trade.symbol] = held - trade.amount
                cash += trade.value_usd
        portfolio.holdings = {symbol: amount for symbol, amount in holdings.items() if amount != ZERO}
        portfolio.cash_balance = cash
