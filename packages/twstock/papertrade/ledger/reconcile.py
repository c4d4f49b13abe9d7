"""Account reconciler: merge a local and a remote copy of one account.

Merge rules
-----------
* Transactions are unioned by id.  Id equality is authoritative; content is
  never compared for de-duplication.
* On an id collision the local copy is kept, except that a terminal
  settlement status on the remote copy replaces a local PENDING status.
  Status only moves forward, so this never reverses a transition.
* The merged ledger is stored newest first; balance and positions come from
  a fresh projection in canonical order.
* ``frozen`` is the OR of both sides (and of any DEFAULTED transaction).
  Freezing is sticky and is never merged away.
* Reset epochs: when the two copies carry different epochs, the copy with
  the higher epoch stands alone.  The other copy's ledger predates a reset
  and is discarded.

Change detection mirrors what a caller needs to decide whether to persist:
ledger length, positional (id, timestamp) differences, status differences,
position shares / average price beyond ``epsilon``, and balance beyond
``epsilon``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from .projection import presentation_order, project
from .types import AccountState, Position, SettlementStatus, Transaction

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = Decimal("0.01")


@dataclass(frozen=True)
class ReconcileResult:
    """Merged account plus what changed relative to the local copy."""

    account: AccountState
    history_changed: bool
    positions_changed: bool
    balance_changed: bool
    frozen_changed: bool
    added_ids: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return (
            self.history_changed
            or self.positions_changed
            or self.balance_changed
            or self.frozen_changed
        )


def merge_ledgers(
    local: tuple[Transaction, ...],
    remote: tuple[Transaction, ...],
) -> tuple[tuple[Transaction, ...], tuple[str, ...]]:
    """Union two ledgers by id.

    Returns:
        ``(merged_ledger_newest_first, ids_added_from_remote)``.
    """
    merged: dict[str, Transaction] = {}
    for tx in local:
        merged.setdefault(tx.tx_id, tx)

    added: list[str] = []
    for tx in remote:
        existing = merged.get(tx.tx_id)
        if existing is None:
            merged[tx.tx_id] = tx
            added.append(tx.tx_id)
        elif existing.is_pending and SettlementStatus.is_terminal(tx.status):
            merged[tx.tx_id] = existing.with_status(tx.status)

    return presentation_order(merged.values()), tuple(added)


def _history_changed(before: tuple[Transaction, ...], after: tuple[Transaction, ...]) -> bool:
    if len(before) != len(after):
        return True
    for old, new in zip(before, after):
        if old.tx_id != new.tx_id or old.timestamp != new.timestamp or old.status != new.status:
            return True
    return False


def _positions_changed(
    before: dict[str, Position],
    after: dict[str, Position],
    epsilon: Decimal,
) -> bool:
    if len(before) != len(after):
        return True
    for symbol, pos in after.items():
        old = before.get(symbol)
        if old is None or old.shares != pos.shares:
            return True
        if abs(old.average_price - pos.average_price) > epsilon:
            return True
    return False


def reconcile(
    local: AccountState,
    remote: AccountState,
    now_ms: int,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> ReconcileResult:
    """Merge *remote* into *local* and re-project.

    Args:
        local:   The in-memory account (the copy being updated).
        remote:  A possibly stale replica of the same account and mode.
        now_ms:  Timestamp written to ``last_update`` when anything changed.
        epsilon: Tolerance for balance / average-price comparisons.
    """
    if remote.epoch > local.epoch:
        logger.info(
            "Remote replica is at reset epoch %d (local %d); adopting remote ledger",
            remote.epoch, local.epoch,
        )
        base_ledger: tuple[Transaction, ...] = presentation_order(remote.ledger)
        added = tuple(tx.tx_id for tx in base_ledger)
        remote_ids = set(added)
        dropped = [tx.tx_id for tx in local.ledger if tx.tx_id not in remote_ids]
        if dropped:
            logger.warning(
                "Discarding %d local transactions made before the remote reset (epoch %d): ids=%s",
                len(dropped), remote.epoch, dropped,
            )
        frozen = remote.frozen
        starting_balance = remote.starting_balance
        epoch = remote.epoch
    elif remote.epoch < local.epoch:
        logger.debug(
            "Remote replica predates local reset (epoch %d < %d); ignoring its ledger",
            remote.epoch, local.epoch,
        )
        base_ledger = presentation_order(local.ledger)
        added = ()
        frozen = local.frozen
        starting_balance = local.starting_balance
        epoch = local.epoch
    else:
        base_ledger, added = merge_ledgers(local.ledger, remote.ledger)
        frozen = local.frozen or remote.frozen
        starting_balance = local.starting_balance
        epoch = local.epoch

    frozen = frozen or any(tx.status == SettlementStatus.DEFAULTED for tx in base_ledger)
    projection = project(base_ledger, starting_balance)

    history_changed = _history_changed(local.ledger, base_ledger)
    positions_changed = _positions_changed(local.positions, projection.positions, epsilon)
    balance_changed = abs(projection.balance - local.balance) > epsilon
    frozen_changed = frozen != local.frozen
    changed = history_changed or positions_changed or balance_changed or frozen_changed

    merged = AccountState(
        starting_balance=starting_balance,
        balance=projection.balance,
        ledger=base_ledger,
        positions=projection.positions,
        frozen=frozen,
        last_update=now_ms if changed else local.last_update,
        epoch=epoch,
    )

    if changed:
        logger.info(
            "Reconcile changed account: history=%s positions=%s balance=%s frozen=%s "
            "local_count=%d remote_count=%d merged_count=%d",
            history_changed, positions_changed, balance_changed, frozen_changed,
            len(local.ledger), len(remote.ledger), len(base_ledger),
        )

    return ReconcileResult(
        account=merged,
        history_changed=history_changed,
        positions_changed=positions_changed,
        balance_changed=balance_changed,
        frozen_changed=frozen_changed,
        added_ids=added,
    )
