"""Settlement processor: advance due PENDING transactions to SETTLED / DEFAULTED.

State machine per transaction::

    PENDING ──(now >= settlement_timestamp)──► SETTLED    (SELL, or BUY covered)
                                          └──► DEFAULTED  (BUY not covered)

One pass over a ledger, given ``now``:

  1. Walk the ledger in canonical (timestamp, id) order keeping a running,
     *unclamped* balance of every transaction's cash effect.
  2. A due BUY whose running balance (after applying it) is negative is
     marked DEFAULTED and freezes the account; otherwise SETTLED.
  3. A due SELL is always SETTLED.
  4. The full projection is re-run on the updated ledger.  The running
     balance from step 1 only decides settle-vs-default; it is never the
     reported balance.

The pass is idempotent: with no newly due transactions nothing changes.
Scheduling belongs to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from .projection import canonical_order, presentation_order, project
from .types import AccountState, Position, SettlementStatus, Side, Transaction

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of one settlement pass."""

    ledger: tuple[Transaction, ...]
    balance: Decimal
    positions: dict[str, Position]
    frozen: bool
    changed: bool
    newly_defaulted: bool
    settled_ids: tuple[str, ...] = ()
    defaulted_ids: tuple[str, ...] = ()
    events: list[dict] = field(default_factory=list)


def process_settlements(
    ledger: Iterable[Transaction],
    starting_balance: Decimal,
    now_ms: int,
    frozen: bool = False,
) -> SettlementResult:
    """Run one settlement pass over *ledger* at *now_ms*.

    Args:
        ledger:           Transactions in any order.
        starting_balance: The account's opening cash.
        now_ms:           Current time, epoch milliseconds.
        frozen:           The account's current frozen flag (sticky).

    Returns:
        A :class:`SettlementResult`.  ``ledger`` is in presentation order;
        ``events`` holds one JSON-safe dict per status transition.
    """
    running = starting_balance
    updated: list[Transaction] = []
    settled_ids: list[str] = []
    defaulted_ids: list[str] = []
    events: list[dict] = []

    for tx in canonical_order(ledger):
        running += tx.cash_effect
        if not tx.is_due(now_ms):
            updated.append(tx)
            continue

        if tx.side == Side.BUY and running < _ZERO:
            new_status = SettlementStatus.DEFAULTED
            defaulted_ids.append(tx.tx_id)
            logger.warning(
                "Settlement default: id=%s symbol=%s shortfall=%s",
                tx.tx_id, tx.symbol, -running,
            )
        else:
            new_status = SettlementStatus.SETTLED
            settled_ids.append(tx.tx_id)
            logger.debug("Settled: id=%s side=%s symbol=%s", tx.tx_id, tx.side, tx.symbol)

        updated.append(tx.with_status(new_status))
        events.append(
            {
                "event": new_status.lower(),
                "id": tx.tx_id,
                "symbol": tx.symbol,
                "side": tx.side,
                "settlement_timestamp": tx.settlement_timestamp,
                "running_balance": str(running),
            }
        )

    projection = project(updated, starting_balance)
    newly_defaulted = bool(defaulted_ids)

    return SettlementResult(
        ledger=presentation_order(updated),
        balance=projection.balance,
        positions=projection.positions,
        frozen=frozen or newly_defaulted,
        changed=bool(settled_ids or defaulted_ids),
        newly_defaulted=newly_defaulted,
        settled_ids=tuple(settled_ids),
        defaulted_ids=tuple(defaulted_ids),
        events=events,
    )


def settle_account(account: AccountState, now_ms: int) -> tuple[AccountState, SettlementResult]:
    """Apply :func:`process_settlements` to an :class:`AccountState`.

    Returns the (possibly unchanged) account and the pass result.  When
    nothing changed the input account object is returned as is.
    """
    result = process_settlements(
        account.ledger,
        account.starting_balance,
        now_ms,
        frozen=account.frozen,
    )
    if not result.changed:
        return account, result

    updated = AccountState(
        starting_balance=account.starting_balance,
        balance=result.balance,
        ledger=result.ledger,
        positions=result.positions,
        frozen=result.frozen,
        last_update=now_ms,
        epoch=account.epoch,
    )
    return updated, result
