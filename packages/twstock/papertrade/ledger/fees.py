"""Decimal-safe brokerage fee and transaction tax computation.

Fee schedule
------------
  gross = price × shares
  fee   = floor(gross × fee_rate)                  (both sides)
  tax   = floor(gross × tax_rate) if SELL else 0   (securities transaction tax)

Defaults follow the TWSE retail schedule: 0.1425 % brokerage fee and 0.3 %
transaction tax on sells.  Fees and taxes are whole currency units; the
floor happens once, on the whole order, never per share.

Callers validate positive price and share count before calling; there are
no error cases here.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from .types import Side


_ZERO = Decimal("0")
_UNIT = Decimal("1")

DEFAULT_FEE_RATE: Decimal = Decimal("0.001425")
DEFAULT_TAX_RATE: Decimal = Decimal("0.003")


@dataclass(frozen=True)
class TradeCosts:
    """Fee, tax and gross amount for one order."""

    fee: Decimal
    tax: Decimal
    gross: Decimal
    side: str

    @property
    def total(self) -> Decimal:
        """Cash paid for a BUY (gross + fee) or received for a SELL (gross - fee - tax)."""
        if self.side == Side.BUY:
            return self.gross + self.fee
        return self.gross - self.fee - self.tax


def _floor(amount: Decimal) -> Decimal:
    return amount.to_integral_value(rounding=ROUND_FLOOR)


def compute_trade_costs(
    price: Decimal,
    shares: int,
    side: str,
    fee_rate: Optional[Decimal] = None,
    tax_rate: Optional[Decimal] = None,
) -> TradeCosts:
    """Return fee, tax and gross for *shares* at *price* (all-Decimal arithmetic).

    Args:
        price:    Unit price (> 0).
        shares:   Raw share count (> 0).
        side:     ``Side.BUY`` or ``Side.SELL``.
        fee_rate: Brokerage fee rate.  ``None`` applies :data:`DEFAULT_FEE_RATE`.
        tax_rate: Transaction tax rate for sells.  ``None`` applies
                  :data:`DEFAULT_TAX_RATE`.
    """
    if fee_rate is None:
        fee_rate = DEFAULT_FEE_RATE
    if tax_rate is None:
        tax_rate = DEFAULT_TAX_RATE

    gross = price * shares
    fee = _floor(gross * fee_rate)
    tax = _floor(gross * tax_rate) if side == Side.SELL else _ZERO
    return TradeCosts(fee=fee, tax=tax, gross=gross, side=side)
