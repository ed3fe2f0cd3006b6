from decimal import Decimal

import pytest

from core.portfolio.models import Allocation, TradeAction
from core.utils.exceptions import ValidationError
from services.rebalancer.optimizer import compute_trades, target_amount

ALLOCATIONS = [
    Allocation(symbol="BTC", weight=Decimal("60")),
    Allocation(symbol="ETH", weight=Decimal("40")),
]
PRICES = {"BTC": Decimal("50000"), "ETH": Decimal("2500")}


class TestComputeTrades:

    def test_initial_deployment_of_cash(self):
        trades = compute_trades({}, ALLOCATIONS, PRICES, Decimal("100"))

        assert [(t.symbol, t.action, t.amount) for t in trades] == [
            ("BTC", TradeAction.BUY, Decimal("0.0012")),
            ("ETH", TradeAction.BUY, Decimal("0.016")),
        ]
        assert trades[0].value_usd == Decimal("60")
        assert trades[1].value_usd == Decimal("40")

    def test_balanced_holdings_produce_no_trades(self):
        holdings = {"BTC": Decimal("0.0012"), "ETH": Decimal("0.016")}
        assert compute_trades(holdings, ALLOCATIONS, PRICES, Decimal("100")) == []

    def test_drifted_holdings_sell_winner_and_buy_loser(self):
        # BTC rallied to 60000: 0.0012 BTC = 72, 0.016 ETH = 40, total 112
        prices = {"BTC": Decimal("60000"), "ETH": Decimal("2500")}
        holdings = {"BTC": Decimal("0.0012"), "ETH": Decimal("0.016")}

        trades = compute_trades(holdings, ALLOCATIONS, prices, Decimal("112"), dust_threshold=Decimal("0"))
        by_symbol = {t.symbol: t for t in trades}

        assert by_symbol["BTC"].action == TradeAction.SELL
        assert by_symbol["ETH"].action == TradeAction.BUY
        # 112 * 40% / 2500 = 0.01792 ETH target
        assert by_symbol["ETH"].amount == Decimal("0.00192")
        # 112 * 60% / 60000 = 0.00112 BTC target
        assert by_symbol["BTC"].amount == Decimal("0.00008")

    def test_dust_differences_are_skipped(self):
        holdings = {"BTC": Decimal("0.0012"), "ETH": Decimal("0.01595")}
        trades = compute_trades(holdings, ALLOCATIONS, PRICES, Decimal("100"), dust_threshold=Decimal("0.0001"))
        assert trades == []

    def test_difference_exactly_at_threshold_is_skipped(self):
        holdings = {"BTC": Decimal("0.0012"), "ETH": Decimal("0.0159")}
        trades = compute_trades(holdings, ALLOCATIONS, PRICES, Decimal("100"), dust_threshold=Decimal("0.0001"))
        assert trades == []

    def test_trades_sorted_by_value_descending(self):
        allocations = [
            Allocation(symbol="ETH", weight=Decimal("10")),
            Allocation(symbol="BTC", weight=Decimal("90")),
        ]
        trades = compute_trades({}, allocations, PRICES, Decimal("1000"), dust_threshold=Decimal("0"))
        assert [t.symbol for t in trades] == ["BTC", "ETH"]
        assert trades[0].value_usd >= trades[1].value_usd

    def test_holdings_outside_allocations_are_left_alone(self):
        holdings = {"BTC": Decimal("0.0012"), "ETH": Decimal("0.016"), "DOGE": Decimal("50")}
        assert compute_trades(holdings, ALLOCATIONS, PRICES, Decimal("100")) == []

    @pytest.mark.parametrize("bad_price", [None, Decimal("0"), Decimal("-1")])
    def test_missing_or_non_positive_price_rejected(self, bad_price):
        prices = {"BTC": Decimal("50000")}
        if bad_price is not None:
            prices["ETH"] = bad_price
        with pytest.raises(ValidationError):
            compute_trades({}, ALLOCATIONS, prices, Decimal("100"))


def test_target_amount():
    assert target_amount(Decimal("100"), Decimal("60"), Decimal("50000")) == Decimal("0.0012")
