from decimal import Decimal
from typing import Dict, Mapping, Optional

from core.portfolio.models import PriceQuote, QuoteSource

# Static USD prices used when the oracle cannot answer
FALLBACK_PRICES: Dict[str, Decimal] = {
    "BTC": Decimal("67500"),
    "ETH": Decimal("2650"),
    "SOL": Decimal("175"),
    "AVAX": Decimal("28"),
    "ARB": Decimal("0.75"),
    "OP": Decimal("1.85"),
    "AAVE": Decimal("165"),
    "UNI": Decimal("8.5"),
    "PEPE": Decimal("0.00001234"),
    "DOGE": Decimal("0.15"),
    "SHIB": Decimal("0.000018"),
    "ADA": Decimal("0.38"),
    "MKR": Decimal("1450"),
    "CRV": Decimal("0.45"),
    "STRK": Decimal("0.52"),
    "FET": Decimal("1.35"),
    "LINK": Decimal("21.5"),
    "GRT": Decimal("0.28"),
    "USDC": Decimal("1"),
    "PYUSD": Decimal("1"),
    "AXS": Decimal("8.5"),
    "SAND": Decimal("0.48"),
    "MANA": Decimal("0.62"),
    "SEI": Decimal("0.35"),
    "TIA": Decimal("6.2"),
    "SUI": Decimal("4.1"),
    "ALGO": Decimal("0.32"),
    "STX": Decimal("1.95"),
}


class FallbackPriceTable:
    """Degraded-mode prices; unknown symbols get `default_price`."""

    def __init__(self, overrides: Optional[Mapping[str, Decimal]] = None,
                 default_price: Decimal = Decimal("1.0")):
        self.prices = dict(FALLBACK_PRICES)
        if overrides:
            self.prices.update({symbol.upper(): Decimal(price) for symbol, price in overrides.items()})
        self.default_price = default_price

    def price_for(self, symbol: str) -> Decimal:
        return self.prices.get(symbol.upper(), self.default_price)

    def quote(self, symbol: str) -> PriceQuote:
        symbol = symbol.upper()
        return PriceQuote(symbol=symbol, price=self.price_for(symbol), source=QuoteSource.FALLBACK)
