from contextlib import asynccontextmanager, nullcontext
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Dict, List, Optional

from core.config.settings import Settings
from core.logging import LogChannel
from core.logging.service_logger import get_service_logger
from core.monitoring.prometheus_metrics import LedgerMetricsCollector
from core.portfolio.models import (
    LedgerTransaction,
    Portfolio,
    PerformanceReport,
    PortfolioView,
    Position,
    PositionView,
    PriceQuote,
    RebalanceEvent,
    TransactionType,
    WithdrawalResult,
    ZERO,
    profit_and_loss,
    utc_now,
)
from core.portfolio.valuation import PortfolioValuation, performance_snapshot, value_portfolio
from core.utils.exceptions import (
    InsufficientSharesError,
    NotFoundError,
    PermanentError,
    ValidationError,
    create_error_context,
)
from services.price_feed.aggregator import PriceFeedAggregator

from .locks import KeyedLockRegistry, portfolio_key, position_key
from .store.base import LedgerStore


def _to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number", field=field, value=value) from e
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", field=field, value=value)
    return result


class PortfolioLedgerService:
    """
    Invest / withdraw bookkeeping for pooled portfolios.

    Every mutation holds the position lock, then the portfolio lock, and
    runs in a single store unit of work, so the ledger rows and the
    transaction log commit together or not at all. Inside the unit of work
    the portfolio row is always loaded before the position row; on the
    database store those loads take row locks, and the fixed order keeps
    concurrent workers from deadlocking on each other.
    """

    def __init__(
        self,
        store: LedgerStore,
        price_feed: PriceFeedAggregator,
        settings: Settings,
        lock_registry: Optional[KeyedLockRegistry] = None,
        metrics: Optional[LedgerMetricsCollector] = None,
    ):
        self.store = store
        self.price_feed = price_feed
        self.settings = settings
        self.locks = lock_registry or KeyedLockRegistry()
        self.metrics = metrics
        self.log = get_service_logger("portfolio_ledger", LogChannel.LEDGER)

    # ---- mutations ------------------------------------------------------

    async def invest(self, user_id: str, portfolio_id: str, amount: Any) -> Position:
        amount = _to_decimal(amount, "amount")
        minimum = self.settings.ledger.minimum_investment
        if amount <= ZERO or amount < minimum:
            raise ValidationError(
                f"Minimum investment is {minimum}",
                field="amount",
                value=amount,
                expected=f">= {minimum}",
            )

        async with self._mutation("invest", user_id, portfolio_id):
            async with self.store.unit_of_work() as uow:
                portfolio = await uow.load_portfolio(portfolio_id)
                if portfolio is None or not portfolio.is_active:
                    raise NotFoundError(
                        f"Portfolio {portfolio_id} not found or inactive",
                        resource="portfolio",
                        resource_id=portfolio_id,
                    )

                valuation = await self._value(portfolio)
                nav_before = valuation.total_value
                shares = self._shares_for(amount, portfolio, valuation)
                now = utc_now()

                position = await uow.load_position(user_id, portfolio_id)
                if position is None:
                    position = Position(
                        user_id=user_id,
                        portfolio_id=portfolio_id,
                        pyusd_amount=amount,
                        shares=shares,
                        current_value=amount,
                        profit_loss=ZERO,
                        profit_loss_percent=ZERO,
                        invested_at=now,
                        updated_at=now,
                    )
                else:
                    position.pyusd_amount += amount
                    position.shares += shares
                    position.mark_to_value(position.current_value + amount)
                    position.updated_at = now

                portfolio.total_invested += amount
                portfolio.current_nav = nav_before + amount
                portfolio.cash_balance += amount
                portfolio.total_shares += shares
                portfolio.touch()

                await uow.save_portfolio(portfolio)
                await uow.save_position(position)
                await uow.append_transaction(LedgerTransaction(
                    user_id=user_id,
                    portfolio_id=portfolio_id,
                    transaction_type=TransactionType.INVEST,
                    pyusd_amount=amount,
                    shares_amount=shares,
                    nav_at_transaction=nav_before,
                    created_at=now,
                ))

        self.log.log_audit("investment_recorded", {
            "user_id": user_id,
            "portfolio_id": portfolio_id,
            "amount": str(amount),
            "shares": str(shares),
            "nav_at_transaction": str(nav_before),
            "degraded_pricing": valuation.degraded,
        })
        return position

    async def withdraw(self, user_id: str, portfolio_id: str,
                       shares_to_redeem: Any = None) -> WithdrawalResult:
        requested: Optional[Decimal] = None
        if shares_to_redeem is not None:
            requested = _to_decimal(shares_to_redeem, "shares")
            if requested <= ZERO:
                raise ValidationError("Shares to redeem must be positive", field="shares", value=requested)

        async with self._mutation("withdraw", user_id, portfolio_id):
            async with self.store.unit_of_work() as uow:
                portfolio = await uow.load_portfolio(portfolio_id)
                if portfolio is None:
                    raise NotFoundError(
                        f"Portfolio {portfolio_id} not found",
                        resource="portfolio",
                        resource_id=portfolio_id,
                    )
                position = await uow.load_position(user_id, portfolio_id)
                if position is None:
                    raise NotFoundError(
                        f"No position for user {user_id} in portfolio {portfolio_id}",
                        resource="position",
                        resource_id=f"{user_id}:{portfolio_id}",
                    )

                held = position.shares
                redeem = held if requested is None else requested
                if redeem > held:
                    raise InsufficientSharesError(
                        f"Cannot redeem {redeem} shares, only {held} held",
                        requested=redeem,
                        available=held,
                        portfolio_id=portfolio_id,
                    )

                valuation = await self._value(portfolio)
                current_value = valuation.share_value(held, portfolio.total_shares)
                withdrawal_percent = redeem / held
                payout = current_value * withdrawal_percent
                principal_portion = position.pyusd_amount * withdrawal_percent
                profit_loss, profit_loss_percent = profit_and_loss(payout, principal_portion)
                now = utc_now()

                self._redeem_from_pool(portfolio, redeem)
                portfolio.total_invested = max(ZERO, portfolio.total_invested - principal_portion)
                portfolio.current_nav = max(ZERO, valuation.total_value - payout)
                portfolio.touch()
                await uow.save_portfolio(portfolio)

                remaining = held - redeem
                if remaining == ZERO:
                    await uow.delete_position(user_id, portfolio_id)
                else:
                    position.shares = remaining
                    position.pyusd_amount -= principal_portion
                    position.mark_to_value(current_value - payout)
                    position.last_withdrawal_at = now
                    position.updated_at = now
                    await uow.save_position(position)

                await uow.append_transaction(LedgerTransaction(
                    user_id=user_id,
                    portfolio_id=portfolio_id,
                    transaction_type=TransactionType.WITHDRAW,
                    pyusd_amount=payout,
                    shares_amount=redeem,
                    nav_at_transaction=valuation.total_value,
                    profit_loss=profit_loss,
                    profit_loss_percent=profit_loss_percent,
                    created_at=now,
                ))

        self.log.log_audit("withdrawal_recorded", {
            "user_id": user_id,
            "portfolio_id": portfolio_id,
            "shares": str(redeem),
            "payout": str(payout),
            "profit_loss": str(profit_loss),
            "degraded_pricing": valuation.degraded,
        })
        return WithdrawalResult(
            payout=payout,
            profit_loss=profit_loss,
            profit_loss_percent=profit_loss_percent,
            shares_redeemed=redeem,
            remaining_shares=remaining,
        )

    # ---- queries ---------------------------------------------------------

    async def list_positions(self, user_id: str) -> List[PositionView]:
        positions = await self.store.list_positions(user_id)
        portfolios: Dict[str, Portfolio] = {}
        for position in positions:
            if position.portfolio_id not in portfolios:
                portfolio = await self.store.get_portfolio(position.portfolio_id)
                if portfolio is not None:
                    portfolios[position.portfolio_id] = portfolio

        symbols = {symbol for p in portfolios.values() for symbol in p.symbols}
        quotes = await self.price_feed.fetch_many(symbols) if symbols else {}
        valuations = {pid: value_portfolio(p, quotes) for pid, p in portfolios.items()}

        views: List[PositionView] = []
        for position in positions:
            view = PositionView(**position.model_dump())
            valuation = valuations.get(position.portfolio_id)
            if valuation is not None:
                view.mark_to_value(valuation.share_value(position.shares, portfolios[position.portfolio_id].total_shares))
                view.degraded_pricing = valuation.degraded
            views.append(view)
        return views

    async def list_portfolios(self) -> List[PortfolioView]:
        """Active portfolios valued with one batched price fetch."""
        portfolios = await self.store.list_active_portfolios()
        symbols = {symbol for p in portfolios for symbol in p.symbols}
        quotes = await self.price_feed.fetch_many(symbols) if symbols else {}
        return [
            self._view(portfolio, {symbol: quotes[symbol] for symbol in portfolio.symbols})
            for portfolio in portfolios
        ]

    async def get_portfolio(self, portfolio_id: str) -> PortfolioView:
        portfolio = await self._require_portfolio(portfolio_id)
        quotes = await self.price_feed.fetch_many(portfolio.symbols)
        return self._view(portfolio, quotes)

    async def get_portfolio_performance(self, portfolio_id: str,
                                        limit: Optional[int] = None) -> PerformanceReport:
        portfolio = await self._require_portfolio(portfolio_id)
        quotes = await self.price_feed.fetch_many(portfolio.symbols)
        history = await self.store.list_performance(
            portfolio_id, limit or self.settings.rebalance.performance_history_limit
        )
        return PerformanceReport(current=performance_snapshot(portfolio, quotes), history=history)

    async def get_transactions(self, user_id: str, portfolio_id: Optional[str] = None,
                               limit: Optional[int] = None) -> List[LedgerTransaction]:
        return await self.store.list_transactions(user_id, portfolio_id, limit)

    async def get_rebalance_history(self, portfolio_id: str, limit: Optional[int] = None) -> List[RebalanceEvent]:
        await self._require_portfolio(portfolio_id)
        return await self.store.list_rebalance_events(
            portfolio_id, limit or self.settings.rebalance.history_limit
        )

    # ---- helpers ---------------------------------------------------------

    async def _require_portfolio(self, portfolio_id: str) -> Portfolio:
        portfolio = await self.store.get_portfolio(portfolio_id)
        if portfolio is None:
            raise NotFoundError(
                f"Portfolio {portfolio_id} not found",
                resource="portfolio",
                resource_id=portfolio_id,
            )
        return portfolio

    async def _value(self, portfolio: Portfolio) -> PortfolioValuation:
        quotes = await self.price_feed.fetch_many(portfolio.symbols)
        return value_portfolio(portfolio, quotes)

    @staticmethod
    def _view(portfolio: Portfolio, quotes: Dict[str, PriceQuote]) -> PortfolioView:
        valuation = value_portfolio(portfolio, quotes)
        return PortfolioView(
            portfolio=portfolio,
            prices=quotes,
            total_value=valuation.total_value,
            nav_per_share=valuation.nav_per_share(portfolio.total_shares),
            current_weights=valuation.weights(),
            degraded_pricing=valuation.degraded,
            next_rebalance_at=portfolio.next_rebalance_at(),
        )

    def _shares_for(self, amount: Decimal, portfolio: Portfolio, valuation: PortfolioValuation) -> Decimal:
        if self.settings.ledger.share_issuance == "par":
            return amount
        nav_per_share = valuation.nav_per_share(portfolio.total_shares)
        if not nav_per_share:
            return amount
        return amount / nav_per_share

    @staticmethod
    def _redeem_from_pool(portfolio: Portfolio, redeem: Decimal) -> None:
        """Take the redeemed shares' fraction of cash and of every holding out of the pool."""
        if portfolio.total_shares == ZERO:
            return
        if redeem >= portfolio.total_shares:
            portfolio.cash_balance = ZERO
            portfolio.holdings = {}
            portfolio.total_shares = ZERO
            return
        keep = 1 - redeem / portfolio.total_shares
        portfolio.cash_balance = portfolio.cash_balance * keep
        portfolio.holdings = {symbol: amount * keep for symbol, amount in portfolio.holdings.items()}
        portfolio.total_shares -= redeem

    @asynccontextmanager
    async def _mutation(self, operation: str, user_id: str, portfolio_id: str) -> AsyncIterator[None]:
        """Position lock, then portfolio lock, plus outcome metrics and error logging."""
        timer = self.metrics.time_ledger_operation(operation) if self.metrics else nullcontext()
        try:
            with timer:
                async with self.locks.hold(position_key(user_id, portfolio_id)):
                    async with self.locks.hold(portfolio_key(portfolio_id)):
                        yield
        except Exception as e:
            outcome = "rejected" if isinstance(e, PermanentError) else "failed"
            if self.metrics:
                self.metrics.record_ledger_operation(operation, outcome)
            context = create_error_context(e, operation, {"user_id": user_id, "portfolio_id": portfolio_id})
            if outcome == "rejected":
                self.log.warning("Ledger operation rejected", **context)
            else:
                self.log.log_error("Ledger operation failed", **context)
            raise
        if self.metrics:
            self.metrics.record_ledger_operation(operation, "success")
