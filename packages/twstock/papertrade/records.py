"""Persisted account records: legacy single-mode and dual-mode shapes.

Two shapes exist on disk and in the remote store:

* **Dual mode** (current)::

    {"username": "amy", "lastUpdate": 1767225600000,
     "realMode":       {"balance": "...", "holdings": [...], "history": [...],
                        "isBankrupt": false, "startingBalance": "...", "epoch": 0},
     "simulationMode": {...}}

* **Legacy single mode**: the account fields sit at the top level
  (``balance``, ``holdings``, ``history``, ``isBankrupt``) with no mode keys.

:func:`parse_record` resolves a payload into exactly one of
:class:`LegacySingleModeRecord` / :class:`DualModeRecord`.
:func:`to_user_accounts` turns either into the canonical in-memory
:class:`UserAccounts` (always dual mode).  A legacy record's account becomes
the REAL account and SIMULATION starts fresh.  :func:`encode_user_accounts`
always writes dual mode, so the legacy shape is upgraded at first write.

Stored ``balance`` and ``holdings`` are never trusted: every mode is
re-projected from its history on the way in.  Money fields are written as
Decimal strings; legacy numeric values are accepted when reading.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from .ledger.projection import presentation_order, project
from .ledger.types import (
    AccountState,
    LotMode,
    SettlementStatus,
    Side,
    TradingMode,
    Transaction,
    empty_account,
)

logger = logging.getLogger(__name__)

_MODE_KEYS: dict[str, str] = {
    TradingMode.REAL: "realMode",
    TradingMode.SIMULATION: "simulationMode",
}
_LEGACY_KEYS = ("balance", "history", "holdings", "isBankrupt", "pendingSettlementCash")
_REPAIR_TOLERANCE = Decimal("1")


class RecordFormatError(ValueError):
    """Raised when a stored account record cannot be decoded."""


@dataclass(frozen=True)
class LegacySingleModeRecord:
    username: str
    account: dict[str, Any]
    last_update: int


@dataclass(frozen=True)
class DualModeRecord:
    username: str
    modes: dict[str, dict[str, Any]]
    last_update: int


AccountRecord = Union[LegacySingleModeRecord, DualModeRecord]


@dataclass
class UserAccounts:
    """Canonical in-memory record: one :class:`AccountState` per trading mode."""

    username: str
    modes: dict[str, AccountState] = field(default_factory=dict)
    last_update: int = 0

    def account(self, mode: str) -> AccountState:
        return self.modes[mode]


# ---------------------------------------------------------------------------
# Scalar decoding helpers
# ---------------------------------------------------------------------------


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise RecordFormatError(f"{name} must be a number, got {value!r}")
    try:
        out = Decimal(str(value))
    except InvalidOperation as exc:
        raise RecordFormatError(f"{name} is not a decimal: {value!r}") from exc
    if not out.is_finite():
        raise RecordFormatError(f"{name} must be finite, got {value!r}")
    return out


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool) or value is None:
        raise RecordFormatError(f"{name} must be an integer, got {value!r}")
    return int(_decimal(value, name))


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def transaction_to_dict(tx: Transaction) -> dict[str, Any]:
    """Return the wire dict for *tx* (Decimals as strings)."""
    return {
        "id": tx.tx_id,
        "symbol": tx.symbol,
        "name": tx.name,
        "type": tx.side,
        "mode": tx.lot_mode,
        "shares": tx.shares,
        "price": str(tx.price),
        "fee": str(tx.fee),
        "tax": str(tx.tax),
        "totalAmount": str(tx.gross),
        "timestamp": tx.timestamp,
        "settlementDate": tx.settlement_timestamp,
        "status": tx.status,
        "isSettled": tx.status == SettlementStatus.SETTLED,
    }


def transaction_from_dict(row: dict[str, Any]) -> Transaction:
    """Decode one wire transaction.

    ``status`` wins over the legacy ``isSettled`` flag when both are present.

    Raises:
        RecordFormatError: Missing or malformed fields.
    """
    if not isinstance(row, dict):
        raise RecordFormatError(f"transaction must be an object, got {type(row).__name__}")
    try:
        tx_id = str(row["id"])
        symbol = str(row["symbol"])
        side = str(row["type"]).upper()
        shares = _int(row["shares"], "shares")
        price = _decimal(row["price"], "price")
        timestamp = _int(row["timestamp"], "timestamp")
    except KeyError as exc:
        raise RecordFormatError(f"transaction missing field {exc.args[0]!r}") from exc

    if side not in Side.ALL:
        raise RecordFormatError(f"transaction {tx_id!r} has unknown type {side!r}")
    if shares <= 0:
        raise RecordFormatError(f"transaction {tx_id!r} has non-positive shares {shares}")
    if price <= 0:
        raise RecordFormatError(f"transaction {tx_id!r} has non-positive price {price}")

    lot_mode = str(row.get("mode") or LotMode.ODD).upper()
    if lot_mode not in LotMode.ALL:
        raise RecordFormatError(f"transaction {tx_id!r} has unknown lot mode {lot_mode!r}")

    status = row.get("status")
    if status is None:
        status = SettlementStatus.SETTLED if row.get("isSettled") else SettlementStatus.PENDING
    status = str(status).upper()
    if status not in (SettlementStatus.PENDING, SettlementStatus.SETTLED, SettlementStatus.DEFAULTED):
        raise RecordFormatError(f"transaction {tx_id!r} has unknown status {status!r}")

    gross_raw = row.get("totalAmount")
    gross = _decimal(gross_raw, "totalAmount") if gross_raw is not None else price * shares

    return Transaction(
        tx_id=tx_id,
        symbol=symbol,
        name=str(row.get("name") or symbol),
        side=side,
        lot_mode=lot_mode,
        shares=shares,
        price=price,
        fee=_decimal(row.get("fee", 0), "fee"),
        tax=_decimal(row.get("tax", 0), "tax"),
        gross=gross,
        timestamp=timestamp,
        settlement_timestamp=_int(row.get("settlementDate", timestamp), "settlementDate"),
        status=status,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def account_to_dict(account: AccountState) -> dict[str, Any]:
    """Wire dict for one mode.  Balance/holdings are written for readers only."""
    return {
        "balance": str(account.balance),
        "startingBalance": str(account.starting_balance),
        "pendingSettlementCash": str(
            sum((tx.cash_effect for tx in account.ledger if tx.is_pending), Decimal("0"))
        ),
        "holdings": [
            {
                "symbol": pos.symbol,
                "name": pos.name,
                "shares": pos.shares,
                "averagePrice": str(pos.average_price),
            }
            for pos in account.positions.values()
        ],
        "history": [transaction_to_dict(tx) for tx in account.ledger],
        "isBankrupt": account.frozen,
        "epoch": account.epoch,
        "lastUpdate": account.last_update,
    }


def account_from_dict(
    data: Optional[dict[str, Any]],
    default_starting_balance: Decimal,
    label: str = "",
) -> AccountState:
    """Decode one mode and re-project it from its history.

    Stored ``balance`` / ``holdings`` are ignored except for a log line when
    they disagree with the ledger (an older writer drifted).
    """
    if not data:
        return empty_account(default_starting_balance)
    if not isinstance(data, dict):
        raise RecordFormatError(f"account {label!r} must be an object, got {type(data).__name__}")

    history = data.get("history") or []
    if not isinstance(history, list):
        raise RecordFormatError(f"account {label!r} history must be a list")

    starting_raw = data.get("startingBalance")
    starting_balance = (
        _decimal(starting_raw, "startingBalance")
        if starting_raw is not None
        else default_starting_balance
    )

    ledger = presentation_order(transaction_from_dict(row) for row in history)
    projection = project(ledger, starting_balance)
    frozen = bool(data.get("isBankrupt", False)) or any(
        tx.status == SettlementStatus.DEFAULTED for tx in ledger
    )

    stored_balance = data.get("balance")
    if stored_balance is not None:
        try:
            drift = abs(_decimal(stored_balance, "balance") - projection.balance)
        except RecordFormatError:
            drift = None
        if drift is None or drift > _REPAIR_TOLERANCE:
            logger.info(
                "Repaired %s balance from ledger: stored=%s projected=%s",
                label or "account", stored_balance, projection.balance,
            )

    return AccountState(
        starting_balance=starting_balance,
        balance=projection.balance,
        ledger=ledger,
        positions=projection.positions,
        frozen=frozen,
        last_update=_int(data.get("lastUpdate", 0) or 0, "lastUpdate"),
        epoch=_int(data.get("epoch", 0) or 0, "epoch"),
    )


# ---------------------------------------------------------------------------
# Whole records
# ---------------------------------------------------------------------------


def parse_record(payload: dict[str, Any]) -> AccountRecord:
    """Resolve *payload* into the legacy or the dual-mode variant.

    A payload with any mode key is dual mode; otherwise a payload with any
    top-level account field is legacy.  An empty payload is an empty dual
    mode record.

    Raises:
        RecordFormatError: Not an object.
    """
    if not isinstance(payload, dict):
        raise RecordFormatError(f"account record must be an object, got {type(payload).__name__}")

    username = str(payload.get("username") or "")
    last_update = _int(payload.get("lastUpdate", 0) or 0, "lastUpdate")

    if any(key in payload for key in _MODE_KEYS.values()):
        modes = {
            mode: payload.get(key) or {}
            for mode, key in _MODE_KEYS.items()
        }
        return DualModeRecord(username=username, modes=modes, last_update=last_update)

    if any(key in payload for key in _LEGACY_KEYS):
        account = {key: payload[key] for key in _LEGACY_KEYS if key in payload}
        return LegacySingleModeRecord(username=username, account=account, last_update=last_update)

    return DualModeRecord(username=username, modes={}, last_update=last_update)


def to_user_accounts(record: AccountRecord, default_starting_balance: Decimal) -> UserAccounts:
    """Canonical dual-mode accounts for either record variant."""
    if isinstance(record, LegacySingleModeRecord):
        logger.info("Upgrading legacy single-mode record for %r to dual mode", record.username)
        modes = {
            TradingMode.REAL: account_from_dict(
                record.account, default_starting_balance, label=f"{record.username}/{TradingMode.REAL}"
            ),
            TradingMode.SIMULATION: empty_account(default_starting_balance),
        }
    else:
        modes = {
            mode: account_from_dict(
                record.modes.get(mode), default_starting_balance, label=f"{record.username}/{mode}"
            )
            for mode in TradingMode.ALL
        }
    return UserAccounts(username=record.username, modes=modes, last_update=record.last_update)


def decode_user_accounts(payload: dict[str, Any], default_starting_balance: Decimal) -> UserAccounts:
    """``parse_record`` + ``to_user_accounts`` in one step."""
    return to_user_accounts(parse_record(payload), default_starting_balance)


def encode_user_accounts(accounts: UserAccounts) -> dict[str, Any]:
    """Dual-mode wire payload for *accounts*."""
    payload: dict[str, Any] = {
        "username": accounts.username,
        "lastUpdate": accounts.last_update,
    }
    for mode, key in _MODE_KEYS.items():
        account = accounts.modes.get(mode)
        if account is not None:
            payload[key] = account_to_dict(account)
    return payload
