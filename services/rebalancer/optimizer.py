from decimal import Decimal
from typing import Iterable, List, Mapping

from core.portfolio.models import Allocation, Trade, TradeAction, ZERO, HUNDRED
from core.utils.exceptions import ValidationError

DEFAULT_DUST_THRESHOLD = Decimal("0.0001")


def target_amount(total_value: Decimal, weight: Decimal, price: Decimal) -> Decimal:
    """Token units that give `weight` percent of `total_value` at `price`."""
    return total_value * weight / HUNDRED / price


def compute_trades(
    current_holdings: Mapping[str, Decimal],
    target_allocations: Iterable[Allocation],
    prices: Mapping[str, Decimal],
    total_value: Decimal,
    dust_threshold: Decimal = DEFAULT_DUST_THRESHOLD,
) -> List[Trade]:
    """
    Trades that move current holdings to the target allocation.

    Differences at or below `dust_threshold` token units are skipped. The
    result is ordered by trade value, largest first.
    """
    trades: List[Trade] = []
    for allocation in target_allocations:
        price = prices.get(allocation.symbol)
        if price is None or price <= ZERO:
            raise ValidationError(
                f"Invalid price for {allocation.symbol}: {price}",
                field="prices",
                value=price,
                expected="positive decimal",
            )

        diff = target_amount(total_value, allocation.weight, price) - current_holdings.get(allocation.symbol, ZERO)
        if abs(diff) <= dust_threshold:
            continue

        amount = abs(diff)
        trades.append(Trade(
            symbol=allocation.symbol,
            action=TradeAction.BUY if diff > ZERO else TradeAction.SELL,
            amount=amount,
            price=price,
            value_usd=amount * price,
        ))

    trades.sort(key=lambda t: t.value_usd, reverse=True)
    return trades
