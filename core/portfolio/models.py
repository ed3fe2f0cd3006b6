from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Dict, Optional, List, Tuple
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

from core.utils.ids import generate_event_id, generate_snapshot_id, generate_transaction_id

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def profit_and_loss(current_value: Decimal, principal: Decimal) -> Tuple[Decimal, Decimal]:
    """Absolute and percent P/L; percent is zero when there is no principal."""
    profit_loss = current_value - principal
    if principal == ZERO:
        return profit_loss, ZERO
    return profit_loss, profit_loss / principal * HUNDRED


class Allocation(BaseModel):
    """Target weight of one token, in percent of portfolio value."""
    symbol: str
    weight: Decimal = Field(gt=0, le=100)

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("symbol must not be empty")
        return v


class Portfolio(BaseModel):
    """
    A model portfolio that users buy shares of.

    Besides the headline totals, the pool tracks what it actually owns:
    `cash_balance` for deposits not yet deployed by a rebalance and
    `holdings` for token amounts. Valuation is always computed from these.
    """
    portfolio_id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    risk_level: Optional[int] = Field(default=None, ge=1, le=3)
    allocations: List[Allocation]
    rebalance_frequency_seconds: int = Field(gt=0)
    last_rebalanced_at: Optional[datetime] = None
    total_invested: Decimal = Field(default=ZERO, ge=0)
    current_nav: Decimal = Field(default=ZERO, ge=0)
    # Can sit marginally below zero when a rebalance skips dust-sized trades
    cash_balance: Decimal = ZERO
    holdings: Dict[str, Decimal] = Field(default_factory=dict)
    total_shares: Decimal = Field(default=ZERO, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_allocations(self) -> "Portfolio":
        if not self.allocations:
            raise ValueError("portfolio needs at least one allocation")
        symbols = [a.symbol for a in self.allocations]
        if len(set(symbols)) != len(symbols):
            raise ValueError("allocation symbols must be unique")
        total = sum((a.weight for a in self.allocations), ZERO)
        if total != HUNDRED:
            raise ValueError(f"allocation weights must sum to 100, got {total}")
        return self

    @property
    def symbols(self) -> List[str]:
        return [a.symbol for a in self.allocations]

    def target_weights(self) -> Dict[str, Decimal]:
        """Target weights as fractions of 1."""
        return {a.symbol: a.weight / HUNDRED for a in self.allocations}

    def next_rebalance_at(self) -> Optional[datetime]:
        if self.last_rebalanced_at is None:
            return None
        return self.last_rebalanced_at + timedelta(seconds=self.rebalance_frequency_seconds)

    def time_until_rebalance(self, now: Optional[datetime] = None) -> timedelta:
        """Zero when a rebalance is due (or the portfolio was never rebalanced)."""
        next_at = self.next_rebalance_at()
        if next_at is None:
            return timedelta(0)
        remaining = next_at - (now or utc_now())
        return max(remaining, timedelta(0))

    def touch(self) -> None:
        self.updated_at = utc_now()


class Position(BaseModel):
    """One user's stake in one portfolio."""
    user_id: str
    portfolio_id: str
    pyusd_amount: Decimal = ZERO  # principal basis
    shares: Decimal = Field(default=ZERO, ge=0)
    current_value: Decimal = ZERO
    profit_loss: Optional[Decimal] = None
    profit_loss_percent: Optional[Decimal] = None
    invested_at: datetime = Field(default_factory=utc_now)
    last_withdrawal_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    def mark_to_value(self, current_value: Decimal) -> None:
        self.current_value = current_value
        self.profit_loss, self.profit_loss_percent = profit_and_loss(current_value, self.pyusd_amount)


class QuoteSource(str, Enum):
    LIVE = "live"
    CACHE = "cache"
    FALLBACK = "fallback"


class PriceQuote(BaseModel):
    symbol: str
    price: Decimal = Field(gt=0)
    confidence: Optional[Decimal] = None
    timestamp: datetime = Field(default_factory=utc_now)
    source: QuoteSource = QuoteSource.LIVE

    @property
    def degraded(self) -> bool:
        return self.source == QuoteSource.FALLBACK


class TransactionType(str, Enum):
    INVEST = "invest"
    WITHDRAW = "withdraw"


class LedgerTransaction(BaseModel):
    """Append-only record of an invest or withdraw."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(default_factory=generate_transaction_id)
    user_id: str
    portfolio_id: str
    transaction_type: TransactionType
    pyusd_amount: Decimal
    shares_amount: Decimal
    nav_at_transaction: Decimal
    profit_loss: Optional[Decimal] = None
    profit_loss_percent: Optional[Decimal] = None
    created_at: datetime = Field(default_factory=utc_now)


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class Trade(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    action: TradeAction
    amount: Decimal
    price: Decimal
    value_usd: Decimal


class RebalanceReason(str, Enum):
    SCHEDULED = "scheduled"
    DRIFT = "drift"


class RebalanceEvent(BaseModel):
    """Audit record of one executed rebalance. Weights are in percent."""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=generate_event_id)
    portfolio_id: str
    allocations_before: Dict[str, Decimal]
    allocations_after: Dict[str, Decimal]
    total_value: Decimal
    reason: RebalanceReason
    trades: List[Trade] = Field(default_factory=list)
    degraded_pricing: bool = False
    executed_at: datetime = Field(default_factory=utc_now)


class PortfolioPerformance(BaseModel):
    """NAV snapshot of a pool: value, principal, ROI and the prices used."""
    model_config = ConfigDict(frozen=True)

    snapshot_id: str = Field(default_factory=generate_snapshot_id)
    portfolio_id: str
    nav: Decimal
    total_invested: Decimal
    roi_percent: Decimal
    nav_per_share: Optional[Decimal] = None
    token_prices: Dict[str, Decimal] = Field(default_factory=dict)
    degraded_pricing: bool = False
    timestamp: datetime = Field(default_factory=utc_now)


class WithdrawalResult(BaseModel):
    payout: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal
    shares_redeemed: Decimal
    remaining_shares: Decimal


class PositionView(Position):
    """Position revalued against live prices."""
    degraded_pricing: bool = False


class PortfolioView(BaseModel):
    portfolio: Portfolio
    prices: Dict[str, PriceQuote]
    total_value: Decimal
    nav_per_share: Optional[Decimal] = None
    current_weights: Dict[str, Decimal]
    degraded_pricing: bool = False
    next_rebalance_at: Optional[datetime] = None


class PerformanceReport(BaseModel):
    """Live snapshot plus the stored history, oldest first."""
    current: PortfolioPerformance
    history: List[PortfolioPerformance] = Field(default_factory=list)
