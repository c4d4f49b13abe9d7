"""Ledger data types: transactions, positions, and per-mode account state.

All monetary values use Decimal.  Timestamps are epoch milliseconds (int),
matching the persisted record format.  Conversion to and from JSON-safe
values happens in :mod:`..records`; everything in the ledger package stays
Decimal / int.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping, Optional

_ZERO = Decimal("0")


class Side:
    """Order sides."""

    BUY = "BUY"
    SELL = "SELL"

    ALL = frozenset({BUY, SELL})


class LotMode:
    """How an order quantity is expressed."""

    WHOLE = "WHOLE"  # round lots; quantity x lot size shares
    ODD = "ODD"      # odd lots; quantity is the raw share count

    ALL = frozenset({WHOLE, ODD})


class SettlementStatus:
    """Transaction settlement states (string constants).

    Transitions: PENDING -> SETTLED, PENDING -> DEFAULTED.  Nothing else.
    """

    PENDING = "PENDING"
    SETTLED = "SETTLED"
    DEFAULTED = "DEFAULTED"

    _TERMINAL = frozenset({SETTLED, DEFAULTED})

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return status in cls._TERMINAL


class TradingMode:
    """Independent account books kept per user."""

    REAL = "REAL"              # live-quote trading
    SIMULATION = "SIMULATION"  # practice market

    ALL = (REAL, SIMULATION)

    @classmethod
    def normalize(cls, value: str) -> str:
        mode = str(value).strip().upper()
        if mode not in cls.ALL:
            raise ValueError(f"unknown trading mode {value!r}; expected one of {cls.ALL}")
        return mode


@dataclass(frozen=True)
class Transaction:
    """One executed trade.  Immutable once created.

    ``gross``, ``fee`` and ``tax`` are fixed at creation and never
    recomputed; only ``status`` may advance, via :meth:`with_status`.
    """

    tx_id: str
    symbol: str
    name: str
    side: str
    lot_mode: str
    shares: int
    price: Decimal
    fee: Decimal
    tax: Decimal
    gross: Decimal
    timestamp: int
    settlement_timestamp: int
    status: str = SettlementStatus.PENDING

    @property
    def sort_key(self) -> tuple[int, str]:
        """Canonical processing order: (timestamp, id) ascending."""
        return (self.timestamp, self.tx_id)

    @property
    def cash_effect(self) -> Decimal:
        """Signed cash movement: BUY pays gross + fee, SELL receives gross - fee - tax."""
        if self.side == Side.BUY:
            return -(self.gross + self.fee)
        return self.gross - self.fee - self.tax

    @property
    def is_pending(self) -> bool:
        return self.status == SettlementStatus.PENDING

    def is_due(self, now_ms: int) -> bool:
        return self.is_pending and now_ms >= self.settlement_timestamp

    def with_status(self, status: str) -> "Transaction":
        """Return a copy advanced to *status*.

        Raises:
            ValueError: The transition is not PENDING -> SETTLED/DEFAULTED.
        """
        if status == self.status:
            return self
        if self.status != SettlementStatus.PENDING or not SettlementStatus.is_terminal(status):
            raise ValueError(
                f"illegal settlement transition for {self.tx_id!r}: "
                f"{self.status} -> {status}"
            )
        return replace(self, status=status)


@dataclass(frozen=True)
class Position:
    """Derived holding for one symbol.  Never persisted as a source of truth."""

    symbol: str
    name: str
    shares: int
    cost_basis: Decimal

    @property
    def average_price(self) -> Decimal:
        if self.shares <= 0:
            return _ZERO
        return self.cost_basis / self.shares


@dataclass(frozen=True)
class AccountState:
    """One mode's account.  Balance and positions are projection outputs.

    ``ledger`` is kept in presentation order (newest first) and ``positions``
    is a read-only mapping.  Instances are replaced wholesale on every
    mutation; never patch fields in place.
    """

    starting_balance: Decimal
    balance: Decimal
    ledger: tuple[Transaction, ...] = ()
    positions: Mapping[str, Position] = field(default_factory=dict)
    frozen: bool = False
    last_update: int = 0
    epoch: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "positions", MappingProxyType(dict(self.positions)))

    def position(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def held_shares(self, symbol: str) -> int:
        pos = self.positions.get(symbol)
        return pos.shares if pos is not None else 0

    def to_snapshot(self) -> dict[str, Any]:
        """Return a JSON-safe read-only view (Decimals serialised as strings)."""
        return {
            "balance": str(self.balance),
            "starting_balance": str(self.starting_balance),
            "frozen": self.frozen,
            "last_update": self.last_update,
            "epoch": self.epoch,
            "positions": {
                sym: {
                    "symbol": pos.symbol,
                    "name": pos.name,
                    "shares": pos.shares,
                    "average_price": str(pos.average_price),
                    "cost_basis": str(pos.cost_basis),
                }
                for sym, pos in sorted(self.positions.items())
            },
            "ledger": [
                {
                    "id": tx.tx_id,
                    "symbol": tx.symbol,
                    "name": tx.name,
                    "side": tx.side,
                    "lot_mode": tx.lot_mode,
                    "shares": tx.shares,
                    "price": str(tx.price),
                    "fee": str(tx.fee),
                    "tax": str(tx.tax),
                    "gross": str(tx.gross),
                    "timestamp": tx.timestamp,
                    "settlement_timestamp": tx.settlement_timestamp,
                    "status": tx.status,
                }
                for tx in self.ledger
            ],
        }


def empty_account(starting_balance: Decimal, now_ms: int = 0, epoch: int = 0) -> AccountState:
    """A fresh account holding only its starting cash."""
    return AccountState(
        starting_balance=starting_balance,
        balance=starting_balance,
        last_update=now_ms,
        epoch=epoch,
    )
