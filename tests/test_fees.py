"""Fee / transaction-tax computation (Decimal, whole-order floor)."""

from __future__ import annotations

from decimal import Decimal

import pytest

from packages.twstock.papertrade.ledger.fees import (
    DEFAULT_FEE_RATE,
    DEFAULT_TAX_RATE,
    compute_trade_costs,
)
from packages.twstock.papertrade.ledger.types import Side

_D = Decimal  # shorthand


class TestComputeTradeCosts:
    def test_buy_whole_lot(self):
        costs = compute_trade_costs(_D("100"), 1000, Side.BUY)
        assert costs.gross == _D("100000")
        assert costs.fee == _D("142")  # floor(142.5)
        assert costs.tax == _D("0")
        assert costs.total == _D("100142")

    def test_sell_whole_lot_pays_tax(self):
        costs = compute_trade_costs(_D("110"), 1000, Side.SELL)
        assert costs.gross == _D("110000")
        assert costs.fee == _D("156")  # floor(156.75)
        assert costs.tax == _D("330")
        assert costs.total == _D("109514")

    def test_floor_applies_to_whole_order_not_per_share(self):
        # per-share fee would floor to 0; whole order is floor(5.7) = 5
        costs = compute_trade_costs(_D("10"), 400, Side.BUY)
        assert costs.fee == _D("5")

    def test_small_odd_lot_fee_can_be_zero(self):
        costs = compute_trade_costs(_D("50"), 1, Side.SELL)
        assert costs.fee == _D("0")
        assert costs.tax == _D("0")
        assert costs.total == _D("50")

    def test_fractional_price_stays_decimal(self):
        costs = compute_trade_costs(_D("12.35"), 3, Side.BUY)
        assert costs.gross == _D("37.05")
        assert isinstance(costs.fee, Decimal)

    def test_custom_rates(self):
        costs = compute_trade_costs(
            _D("100"), 1000, Side.SELL, fee_rate=_D("0.0006"), tax_rate=_D("0.0015")
        )
        assert costs.fee == _D("60")
        assert costs.tax == _D("150")

    def test_none_rates_use_defaults(self):
        explicit = compute_trade_costs(_D("88"), 2000, Side.SELL, DEFAULT_FEE_RATE, DEFAULT_TAX_RATE)
        implicit = compute_trade_costs(_D("88"), 2000, Side.SELL)
        assert explicit == implicit

    @pytest.mark.parametrize("side", [Side.BUY, Side.SELL])
    def test_fee_and_tax_never_negative(self, side):
        costs = compute_trade_costs(_D("0.01"), 1, side)
        assert costs.fee >= 0
        assert costs.tax >= 0
