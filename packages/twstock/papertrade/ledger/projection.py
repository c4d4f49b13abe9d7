"""Ledger projection: the only place balance and positions come from.

Design invariants
-----------------
1. **Full recompute**: balance and positions are derived from the whole
   ledger on every mutation.  Nothing patches a balance or a position
   incrementally.
2. **Canonical order**: transactions are folded in (timestamp, id)
   ascending order, so the input order of the ledger never matters.
3. **Status-blind cash**: a BUY's cost is subtracted whether it is
   PENDING, SETTLED or DEFAULTED.  A default is represented by the account's
   frozen flag, never by a balance adjustment.
4. **Non-negative balance**: a negative fold result is clamped to zero.
5. **Proportional cost reduction**: a SELL scales the cost basis by
   remaining / previous shares (no FIFO/LIFO lot tracking).  A position
   whose shares reach zero or below is removed.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from .types import Position, Side, Transaction

_ZERO = Decimal("0")


@dataclass(frozen=True)
class Projection:
    """Balance + positions derived from one ledger."""

    balance: Decimal
    positions: dict[str, Position]


def canonical_order(ledger: Iterable[Transaction]) -> list[Transaction]:
    """Sort by (timestamp, id) ascending."""
    return sorted(ledger, key=lambda tx: tx.sort_key)


def presentation_order(ledger: Iterable[Transaction]) -> tuple[Transaction, ...]:
    """Newest first; ties broken by id descending."""
    return tuple(sorted(ledger, key=lambda tx: tx.sort_key, reverse=True))


def project_balance(ledger: Iterable[Transaction], starting_balance: Decimal) -> Decimal:
    """Fold the ledger's cash effects onto *starting_balance*, floored at zero."""
    balance = starting_balance
    for tx in canonical_order(ledger):
        balance += tx.cash_effect
    return balance if balance > _ZERO else _ZERO


def project_positions(ledger: Iterable[Transaction]) -> dict[str, Position]:
    """Fold the ledger into per-symbol positions."""
    # symbol -> [name, shares, cost]
    book: dict[str, list] = {}

    for tx in canonical_order(ledger):
        entry = book.get(tx.symbol)
        if tx.side == Side.BUY:
            if entry is None:
                book[tx.symbol] = [tx.name, tx.shares, tx.gross]
            else:
                entry[1] += tx.shares
                entry[2] += tx.gross
            continue

        if entry is None:
            # Nothing held; a SELL without a position has no holding effect.
            continue
        old_shares = entry[1]
        remaining = old_shares - tx.shares
        if remaining <= 0:
            del book[tx.symbol]
            continue
        entry[2] = entry[2] * Decimal(remaining) / Decimal(old_shares)
        entry[1] = remaining

    return {
        symbol: Position(symbol=symbol, name=name, shares=shares, cost_basis=cost)
        for symbol, (name, shares, cost) in sorted(book.items())
        if shares > 0
    }


def project(ledger: Iterable[Transaction], starting_balance: Decimal) -> Projection:
    """Run both projections over one materialised copy of *ledger*."""
    txs = list(ledger)
    return Projection(
        balance=project_balance(txs, starting_balance),
        positions=project_positions(txs),
    )
