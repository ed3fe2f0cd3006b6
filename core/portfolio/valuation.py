"""Holdings-based valuation of a portfolio against a set of price quotes."""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime
from typing import Dict, Mapping, Optional

from core.portfolio.models import Portfolio, PortfolioPerformance, PriceQuote, ZERO, profit_and_loss, utc_now
from core.utils.exceptions import ValidationError


@dataclass(frozen=True)
class PortfolioValuation:
    cash_balance: Decimal
    token_values: Dict[str, Decimal] = field(default_factory=dict)
    degraded: bool = False

    @property
    def holdings_value(self) -> Decimal:
        return sum(self.token_values.values(), ZERO)

    @property
    def total_value(self) -> Decimal:
        return self.cash_balance + self.holdings_value

    def weights(self) -> Dict[str, Decimal]:
        """Current weight of each allocation symbol as a fraction of total value."""
        total = self.total_value
        if total == ZERO:
            return {symbol: ZERO for symbol in self.token_values}
        return {symbol: value / total for symbol, value in self.token_values.items()}

    def share_value(self, shares: Decimal, total_shares: Decimal) -> Decimal:
        """Value of `shares` out of `total_shares` outstanding."""
        if total_shares == ZERO:
            return ZERO
        return self.total_value * shares / total_shares

    def nav_per_share(self, total_shares: Decimal) -> Optional[Decimal]:
        if total_shares == ZERO:
            return None
        return self.total_value / total_shares


def value_portfolio(portfolio: Portfolio, quotes: Mapping[str, PriceQuote]) -> PortfolioValuation:
    """
    Value the pool's cash and token holdings.

    Only allocation symbols are valued; a holding outside the allocations
    contributes nothing. Every allocation symbol needs a quote.
    """
    token_values: Dict[str, Decimal] = {}
    degraded = False
    for symbol in portfolio.symbols:
        quote = quotes.get(symbol)
        if quote is None:
            raise ValidationError(f"No price for {symbol}", field="prices", value=symbol)
        degraded = degraded or quote.degraded
        token_values[symbol] = portfolio.holdings.get(symbol, ZERO) * quote.price

    return PortfolioValuation(
        cash_balance=portfolio.cash_balance,
        token_values=token_values,
        degraded=degraded,
    )


def performance_snapshot(
    portfolio: Portfolio,
    quotes: Mapping[str, PriceQuote],
    timestamp: Optional[datetime] = None,
) -> PortfolioPerformance:
    """NAV, ROI against principal still invested, and the prices behind them."""
    valuation = value_portfolio(portfolio, quotes)
    _, roi_percent = profit_and_loss(valuation.total_value, portfolio.total_invested)
    return PortfolioPerformance(
        portfolio_id=portfolio.portfolio_id,
        nav=valuation.total_value,
        total_invested=portfolio.total_invested,
        roi_percent=roi_percent,
        nav_per_share=valuation.nav_per_share(portfolio.total_shares),
        token_prices={symbol: quotes[symbol].price for symbol in portfolio.symbols},
        degraded_pricing=valuation.degraded,
        timestamp=timestamp or utc_now(),
    )
