"""AccountService: the single owner of one user's in-memory accounts.

Operations
----------
  place_order    validate + price an order; returns OrderQuote or Rejection (no mutation)
  confirm_order  re-validate against current state, append a Transaction, re-project, persist
  tick           settlement pass on every mode; persist only when something changed
  sync           fetch the remote replica, reconcile every mode, persist only when changed
  merge_record   reconcile against a replica payload already in hand
  reset_mode     fresh account for one mode (reset epoch + 1); the other mode is untouched
  current_state  read-only AccountState for a mode

Concurrency
-----------
Each (user, mode) account has its own ``threading.RLock``; ``confirm_order``,
``tick``, ``sync`` and ``reset_mode`` hold it for their whole read-modify-write.
AccountState objects are immutable and swapped wholesale, so readers never
need the lock.  Saves go through a separate persist lock and always
serialise the latest state of both modes.

Collaborator calls (storage, remote) run on a small worker pool and are
bounded by ``config.io_timeout_seconds``.  A failure or timeout is logged,
kept in :attr:`AccountService.last_error`, and otherwise ignored: the
in-memory state stays authoritative and the next tick/sync retries.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Union

from .config import TradingConfig
from .ledger.fees import compute_trade_costs
from .ledger.projection import presentation_order, project
from .ledger.reconcile import ReconcileResult, reconcile
from .ledger.settlement import SettlementResult, settle_account
from .ledger.settlement_date import settlement_timestamp_ms
from .ledger.types import (
    AccountState,
    LotMode,
    Side,
    TradingMode,
    Transaction,
    empty_account,
)
from .records import RecordFormatError, UserAccounts, decode_user_accounts, encode_user_accounts
from .storage import AccountStorage, StorageError

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_tx_id() -> str:
    return uuid.uuid4().hex[:12]


class RejectReason:
    """Typed rejection reasons (string constants)."""

    FROZEN = "frozen"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_SHARES = "insufficient_shares"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    INVALID_SIDE = "invalid_side"
    INVALID_LOT_MODE = "invalid_lot_mode"
    UNKNOWN_MODE = "unknown_mode"

    _INPUT = frozenset({INVALID_QUANTITY, INVALID_PRICE, INVALID_SIDE, INVALID_LOT_MODE, UNKNOWN_MODE})

    @classmethod
    def is_input_error(cls, reason: str) -> bool:
        return reason in cls._INPUT


@dataclass(frozen=True)
class Rejection:
    reason: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"rejected": True, "reason": self.reason, "detail": self.detail}


@dataclass(frozen=True)
class OrderQuote:
    """A priced, validated order awaiting confirmation."""

    mode: str
    symbol: str
    name: str
    side: str
    lot_mode: str
    quantity: int
    shares: int
    price: Decimal
    fee: Decimal
    tax: Decimal
    gross: Decimal
    total: Decimal
    balance_before: Decimal
    balance_after: Decimal
    quoted_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "symbol": self.symbol,
            "name": self.name,
            "side": self.side,
            "lot_mode": self.lot_mode,
            "quantity": self.quantity,
            "shares": self.shares,
            "price": str(self.price),
            "fee": str(self.fee),
            "tax": str(self.tax),
            "gross": str(self.gross),
            "total": str(self.total),
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "quoted_at": self.quoted_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderQuote":
        """Rebuild a quote sent back by a client.

        Raises:
            ValueError: Missing or malformed fields.
        """
        for key in ("quantity", "shares"):
            if isinstance(data.get(key), bool):
                raise ValueError(f"quote field {key!r} must be an integer, got {data[key]!r}")
        try:
            return cls(
                mode=str(data["mode"]),
                symbol=str(data["symbol"]),
                name=str(data.get("name") or data["symbol"]),
                side=str(data["side"]),
                lot_mode=str(data["lot_mode"]),
                quantity=int(data["quantity"]),
                shares=int(data["shares"]),
                price=Decimal(str(data["price"])),
                fee=Decimal(str(data.get("fee", "0"))),
                tax=Decimal(str(data.get("tax", "0"))),
                gross=Decimal(str(data.get("gross", "0"))),
                total=Decimal(str(data.get("total", "0"))),
                balance_before=Decimal(str(data.get("balance_before", "0"))),
                balance_after=Decimal(str(data.get("balance_after", "0"))),
                quoted_at=int(data.get("quoted_at", 0)),
            )
        except KeyError as exc:
            raise ValueError(f"quote missing field {exc.args[0]!r}") from exc
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"malformed quote: {exc}") from exc


@dataclass(frozen=True)
class TickOutcome:
    changed: bool
    newly_defaulted: bool
    results: dict[str, SettlementResult] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncOutcome:
    ok: bool
    changed: bool
    results: dict[str, ReconcileResult] = field(default_factory=dict)
    error: Optional[str] = None


class AccountService:
    """Orchestrates one user's REAL and SIMULATION accounts.

    Thread-safety: all public methods are safe to call from multiple threads.
    """

    def __init__(
        self,
        account_key: str,
        storage: AccountStorage,
        *,
        remote: Optional[Any] = None,
        config: Optional[TradingConfig] = None,
        clock: Callable[[], int] = _now_ms,
        id_factory: Callable[[], str] = _new_tx_id,
        mode: str = TradingMode.REAL,
    ) -> None:
        """
        Args:
            account_key: User identity; the storage / remote record key.
            storage:     Durable store (``load`` / ``save``).
            remote:      Optional replica with ``fetch_remote_ledger`` (and
                         ``save``, used to push after local saves).
            config:      Fee schedule, lot size, timers.  Defaults to
                         :class:`TradingConfig`.
            clock:       Returns "now" in epoch milliseconds.
            id_factory:  Returns a fresh unique transaction id.
            mode:        Initially active trading mode.
        """
        self.account_key = account_key
        self._storage = storage
        self._remote = remote
        self._config = config or TradingConfig()
        self._clock = clock
        self._id_factory = id_factory
        self._mode = TradingMode.normalize(mode)

        self._locks: dict[str, threading.RLock] = {m: threading.RLock() for m in TradingMode.ALL}
        self._persist_lock = threading.Lock()
        self._accounts: dict[str, AccountState] = {
            m: empty_account(self._config.starting_balance, self._clock()) for m in TradingMode.ALL
        }
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="twtrade-io")
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> TradingConfig:
        return self._config

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        self._mode = TradingMode.normalize(mode)

    def _resolve_mode(self, mode: Optional[str]) -> str:
        return self._mode if mode is None else TradingMode.normalize(mode)

    def current_state(self, mode: Optional[str] = None) -> AccountState:
        """The current (immutable) account for *mode* (active mode by default)."""
        return self._accounts[self._resolve_mode(mode)]

    def snapshot(self, mode: Optional[str] = None) -> dict[str, Any]:
        resolved = self._resolve_mode(mode)
        out = self._accounts[resolved].to_snapshot()
        out["mode"] = resolved
        out["username"] = self.account_key
        return out

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------

    def _call_io(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a collaborator call on the worker pool, bounded by the I/O timeout.

        Raises:
            StorageError: The call failed or timed out.
        """
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._config.io_timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise StorageError(
                f"{getattr(fn, '__qualname__', fn)} timed out after "
                f"{self._config.io_timeout_seconds}s"
            ) from exc

    def _soft_error(self, message: str) -> None:
        self.last_error = message
        logger.warning("%s", message)

    def load(self) -> bool:
        """Load and repair the durable record.

        Every mode is re-projected from its ledger, so stored balances and
        holdings that disagree with history are silently replaced.  A new
        user gets fresh accounts, written immediately.

        Returns:
            ``True`` if a stored record was loaded, ``False`` when the
            service fell back to fresh accounts.
        """
        try:
            payload = self._call_io(self._storage.load, self.account_key)
        except StorageError as exc:
            self._soft_error(f"load failed for {self.account_key!r}; using fresh accounts: {exc}")
            return False

        if payload is None:
            logger.info("No stored record for %r; creating fresh accounts", self.account_key)
            self._persist("create")
            return False

        try:
            accounts = decode_user_accounts(payload, self._config.starting_balance)
        except RecordFormatError as exc:
            self._soft_error(f"stored record for {self.account_key!r} is unreadable: {exc}")
            return False

        for mode in TradingMode.ALL:
            with self._locks[mode]:
                self._accounts[mode] = accounts.modes[mode]
        logger.debug("Loaded account record for %r", self.account_key)
        return True

    def _build_payload(self) -> dict[str, Any]:
        accounts = UserAccounts(
            username=self.account_key,
            modes=dict(self._accounts),
            last_update=self._clock(),
        )
        return encode_user_accounts(accounts)

    def _persist(self, reason: str) -> bool:
        """Save the latest state of both modes; push to the remote replica if separate."""
        with self._persist_lock:
            payload = self._build_payload()
            ok = True
            try:
                self._call_io(self._storage.save, self.account_key, payload)
            except StorageError as exc:
                self._soft_error(f"save ({reason}) failed for {self.account_key!r}: {exc}")
                ok = False

            if self._remote is not None and self._remote is not self._storage:
                push = getattr(self._remote, "save", None)
                if push is not None:
                    try:
                        self._call_io(push, self.account_key, payload)
                    except StorageError as exc:
                        self._soft_error(f"remote push ({reason}) failed for {self.account_key!r}: {exc}")
                        ok = False
            return ok

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _validate(
        self,
        account: AccountState,
        side: str,
        symbol: str,
        shares: int,
        total: Decimal,
    ) -> Optional[Rejection]:
        if account.frozen:
            return Rejection(
                RejectReason.FROZEN,
                "account is frozen after a settlement default; trading is disabled",
            )
        if side == Side.BUY and account.balance < total:
            return Rejection(
                RejectReason.INSUFFICIENT_FUNDS,
                f"need {total} (gross + fee), balance is {account.balance}",
            )
        if side == Side.SELL:
            held = account.held_shares(symbol)
            if held < shares:
                return Rejection(
                    RejectReason.INSUFFICIENT_SHARES,
                    f"need {shares} shares of {symbol}, holding {held}",
                )
        return None

    def place_order(
        self,
        symbol: str,
        side: str,
        lot_mode: str,
        quantity: int,
        quoted_price: Union[Decimal, str, int],
        *,
        name: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> Union[OrderQuote, Rejection]:
        """Validate and price an order without touching the ledger."""
        try:
            resolved = self._resolve_mode(mode)
        except ValueError as exc:
            return Rejection(RejectReason.UNKNOWN_MODE, str(exc))

        side = str(side).upper()
        if side not in Side.ALL:
            return Rejection(RejectReason.INVALID_SIDE, f"side must be BUY or SELL; got {side!r}")
        lot_mode = str(lot_mode).upper()
        if lot_mode not in LotMode.ALL:
            return Rejection(RejectReason.INVALID_LOT_MODE, f"lot mode must be WHOLE or ODD; got {lot_mode!r}")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            return Rejection(RejectReason.INVALID_QUANTITY, f"quantity must be a positive integer; got {quantity!r}")
        try:
            price = Decimal(str(quoted_price))
        except InvalidOperation:
            return Rejection(RejectReason.INVALID_PRICE, f"invalid price {quoted_price!r}")
        if not price.is_finite() or price <= _ZERO:
            return Rejection(RejectReason.INVALID_PRICE, f"price must be > 0; got {quoted_price!r}")

        shares = quantity * self._config.lot_size if lot_mode == LotMode.WHOLE else quantity
        costs = compute_trade_costs(price, shares, side, self._config.fee_rate, self._config.tax_rate)

        account = self._accounts[resolved]
        rejection = self._validate(account, side, symbol, shares, costs.total)
        if rejection is not None:
            logger.info("Order rejected (%s): %s %s x%d", rejection.reason, side, symbol, shares)
            return rejection

        delta = -costs.total if side == Side.BUY else costs.total
        return OrderQuote(
            mode=resolved,
            symbol=symbol,
            name=name or symbol,
            side=side,
            lot_mode=lot_mode,
            quantity=quantity,
            shares=shares,
            price=price,
            fee=costs.fee,
            tax=costs.tax,
            gross=costs.gross,
            total=costs.total,
            balance_before=account.balance,
            balance_after=account.balance + delta,
            quoted_at=self._clock(),
        )

    def confirm_order(self, quote: OrderQuote) -> Union[Transaction, Rejection]:
        """Re-validate *quote* against current state and append it to the ledger.

        Fee, tax and gross are recomputed from the quote's price and share
        count with the service's fee schedule; the client's numbers are not
        trusted.
        """
        try:
            mode = TradingMode.normalize(quote.mode)
        except ValueError as exc:
            return Rejection(RejectReason.UNKNOWN_MODE, str(exc))
        if quote.side not in Side.ALL:
            return Rejection(RejectReason.INVALID_SIDE, f"side must be BUY or SELL; got {quote.side!r}")
        if quote.lot_mode not in LotMode.ALL:
            return Rejection(RejectReason.INVALID_LOT_MODE, f"lot mode must be WHOLE or ODD; got {quote.lot_mode!r}")
        if isinstance(quote.shares, bool) or not isinstance(quote.shares, int) or quote.shares <= 0:
            return Rejection(RejectReason.INVALID_QUANTITY, f"shares must be a positive integer; got {quote.shares!r}")
        if not isinstance(quote.price, Decimal) or not quote.price.is_finite() or quote.price <= _ZERO:
            return Rejection(RejectReason.INVALID_PRICE, f"price must be a finite number > 0; got {quote.price!r}")

        costs = compute_trade_costs(
            quote.price, quote.shares, quote.side, self._config.fee_rate, self._config.tax_rate
        )

        with self._locks[mode]:
            account = self._accounts[mode]
            rejection = self._validate(account, quote.side, quote.symbol, quote.shares, costs.total)
            if rejection is not None:
                logger.info(
                    "Confirm rejected (%s): %s %s x%d",
                    rejection.reason, quote.side, quote.symbol, quote.shares,
                )
                return rejection

            now = self._clock()
            tx = Transaction(
                tx_id=self._id_factory(),
                symbol=quote.symbol,
                name=quote.name,
                side=quote.side,
                lot_mode=quote.lot_mode,
                shares=quote.shares,
                price=quote.price,
                fee=costs.fee,
                tax=costs.tax,
                gross=costs.gross,
                timestamp=now,
                settlement_timestamp=settlement_timestamp_ms(
                    now,
                    tz_name=self._config.timezone,
                    business_days=self._config.settlement_days,
                    hour=self._config.settlement_hour,
                ),
            )
            ledger = presentation_order((tx,) + account.ledger)
            projection = project(ledger, account.starting_balance)
            self._accounts[mode] = AccountState(
                starting_balance=account.starting_balance,
                balance=projection.balance,
                ledger=ledger,
                positions=projection.positions,
                frozen=account.frozen,
                last_update=now,
                epoch=account.epoch,
            )
            logger.info(
                "Order confirmed: id=%s mode=%s %s %s x%d @ %s fee=%s tax=%s",
                tx.tx_id, mode, tx.side, tx.symbol, tx.shares, tx.price, tx.fee, tx.tax,
            )
            self._persist("confirm")
        return tx

    # ------------------------------------------------------------------
    # Settlement / sync / reset
    # ------------------------------------------------------------------

    def tick(self, now_ms: Optional[int] = None) -> TickOutcome:
        """Run one settlement pass on every mode."""
        now = self._clock() if now_ms is None else now_ms
        results: dict[str, SettlementResult] = {}
        changed = False
        defaulted = False

        for mode in TradingMode.ALL:
            with self._locks[mode]:
                updated, result = settle_account(self._accounts[mode], now)
                results[mode] = result
                if result.changed:
                    self._accounts[mode] = updated
                    changed = True
                if result.newly_defaulted:
                    defaulted = True
                    logger.warning(
                        "Account %r (%s) defaulted on settlement: ids=%s; account frozen",
                        self.account_key, mode, list(result.defaulted_ids),
                    )

        if changed:
            self._persist("tick")
        return TickOutcome(changed=changed, newly_defaulted=defaulted, results=results)

    def sync(self) -> SyncOutcome:
        """Reconcile every mode against a freshly fetched remote replica."""
        if self._remote is None:
            return SyncOutcome(ok=False, changed=False, error="no remote replica configured")

        try:
            payload = self._call_io(self._remote.fetch_remote_ledger, self.account_key)
        except StorageError as exc:
            message = f"sync fetch failed for {self.account_key!r}: {exc}"
            self._soft_error(message)
            return SyncOutcome(ok=False, changed=False, error=message)

        if payload is None:
            logger.debug("No remote record for %r yet", self.account_key)
            return SyncOutcome(ok=True, changed=False)
        return self.merge_record(payload, source="remote")

    def merge_record(self, payload: dict[str, Any], source: str = "incoming") -> SyncOutcome:
        """Reconcile every mode against another replica's record payload.

        Used by :meth:`sync` after a fetch, and by record-store servers that
        receive pushed replicas.  Persists only when something changed.
        """
        try:
            other = decode_user_accounts(payload, self._config.starting_balance)
        except RecordFormatError as exc:
            message = f"{source} record for {self.account_key!r} is unreadable: {exc}"
            self._soft_error(message)
            return SyncOutcome(ok=False, changed=False, error=message)

        now = self._clock()
        results: dict[str, ReconcileResult] = {}
        changed = False
        for mode in TradingMode.ALL:
            with self._locks[mode]:
                result = reconcile(
                    self._accounts[mode],
                    other.modes[mode],
                    now,
                    epsilon=self._config.change_epsilon,
                )
                results[mode] = result
                if result.changed:
                    self._accounts[mode] = result.account
                    changed = True
                    logger.info(
                        "Merged %s record into %r (%s): %d new transactions",
                        source, self.account_key, mode, len(result.added_ids),
                    )

        if changed:
            self._persist("sync")
        return SyncOutcome(ok=True, changed=changed, results=results)

    def reset_mode(self, mode: Optional[str] = None) -> AccountState:
        """Replace one mode's account with a fresh one at the configured starting balance."""
        resolved = self._resolve_mode(mode)
        with self._locks[resolved]:
            previous = self._accounts[resolved]
            fresh = empty_account(
                self._config.starting_balance,
                now_ms=self._clock(),
                epoch=previous.epoch + 1,
            )
            self._accounts[resolved] = fresh
            logger.info(
                "Reset %r mode %s (epoch %d -> %d, %d transactions dropped)",
                self.account_key, resolved, previous.epoch, fresh.epoch, len(previous.ledger),
            )
            self._persist("reset")
        return fresh

    # ------------------------------------------------------------------
    # Background timers
    # ------------------------------------------------------------------

    def _run_periodic(self, label: str, interval: float, fn: Callable[[], Any]) -> None:
        while not self._stop.wait(interval):
            try:
                fn()
            except Exception:  # noqa: BLE001
                # Keep the timer alive; the next interval retries.
                logger.exception("%s pass failed for %r", label, self.account_key)

    def start(self) -> None:
        """Start the settlement timer, and the sync timer when a remote is configured."""
        if self._workers:
            return
        self._stop.clear()
        plan = [("tick", self._config.tick_interval_seconds, self.tick)]
        if self._remote is not None:
            plan.append(("sync", self._config.sync_interval_seconds, self.sync))
        for label, interval, fn in plan:
            worker = threading.Thread(
                target=self._run_periodic,
                args=(label, interval, fn),
                name=f"twtrade-{label}-{self.account_key}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop background timers and the I/O worker pool."""
        self._stop.set()
        for worker in self._workers:
            worker.join(timeout=timeout)
        self._workers = []
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "AccountService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
