#!/usr/bin/env python3
"""Paper-account CLI: inspect, trade, settle, sync and rank accounts.

Commands
--------
  python -m twtrade account show        --user amy [--mode SIMULATION]
  python -m twtrade account buy         --user amy --symbol 2330 --quantity 1 --price 580 [--yes]
  python -m twtrade account sell        --user amy --symbol 2330 --quantity 200 --odd --price 600 --yes
  python -m twtrade account tick        --user amy [--now-ms 1767232800000]
  python -m twtrade account sync        --user amy --remote-url http://localhost:8000
  python -m twtrade account reset       --user amy --mode SIMULATION --yes
  python -m twtrade account summary     --user amy [--mark 2330=600]
  python -m twtrade account leaderboard [--sort-by profit] [--mark 2330=600]

Without ``--yes``, buy/sell only print the quote.  A rejected order exits 2.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from packages.twstock.papertrade.account_service import AccountService, Rejection
from packages.twstock.papertrade.config import (
    ConfigLoadError,
    TradingConfig,
    load_trading_config,
    resolve_data_dir,
)
from packages.twstock.papertrade.ledger.stats import (
    SORT_BY_ASSETS,
    SORT_BY_PROFIT,
    build_leaderboard,
    summarize_account,
)
from packages.twstock.papertrade.ledger.types import LotMode, Side, TradingMode
from packages.twstock.papertrade.records import RecordFormatError, decode_user_accounts
from packages.twstock.papertrade.remote import HttpAccountStore
from packages.twstock.papertrade.storage import JsonFileStorage, StorageError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _parse_marks(raw_marks: Optional[list[str]]) -> dict[str, Decimal]:
    """Parse ``SYMBOL=PRICE`` pairs.

    Raises:
        ValueError: A pair is malformed.
    """
    marks: dict[str, Decimal] = {}
    for raw in raw_marks or []:
        symbol, sep, price = raw.partition("=")
        if not sep or not symbol.strip():
            raise ValueError(f"--mark must look like SYMBOL=PRICE; got {raw!r}")
        try:
            marks[symbol.strip()] = Decimal(price.strip())
        except InvalidOperation as exc:
            raise ValueError(f"--mark price is not a number: {raw!r}") from exc
    return marks


def _load_config(args: argparse.Namespace) -> Optional[TradingConfig]:
    try:
        return load_trading_config(config_path=args.config, config_json=args.config_json)
    except ConfigLoadError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return None


def _open_service(args: argparse.Namespace, config: TradingConfig, *, settle: bool = True) -> AccountService:
    storage = JsonFileStorage(resolve_data_dir(args.store_dir))
    remote = None
    if args.remote_url:
        remote = HttpAccountStore.within_budget(args.remote_url, config.io_timeout_seconds)
    service = AccountService(args.user, storage, remote=remote, config=config, mode=args.mode)
    service.load()
    if settle:
        service.tick()
    return service


def _report_rejection(rejection: Rejection) -> int:
    print(f"Rejected ({rejection.reason}): {rejection.detail}", file=sys.stderr)
    return EXIT_REJECTED


def _report_soft_error(service: AccountService) -> None:
    if service.last_error:
        print(f"Warning: {service.last_error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------


def _show(args: argparse.Namespace, config: TradingConfig) -> int:
    with _open_service(args, config) as service:
        snapshot = service.snapshot()
        if args.limit is not None:
            snapshot["ledger"] = snapshot["ledger"][: args.limit]
        _print_json(snapshot)
        _report_soft_error(service)
    return EXIT_OK


def _trade(args: argparse.Namespace, config: TradingConfig, side: str) -> int:
    lot_mode = LotMode.ODD if args.odd else LotMode.WHOLE
    with _open_service(args, config) as service:
        quote = service.place_order(
            args.symbol,
            side,
            lot_mode,
            args.quantity,
            args.price,
            name=args.name,
        )
        if isinstance(quote, Rejection):
            return _report_rejection(quote)

        if not args.yes:
            _print_json({"quote": quote.to_dict(), "confirmed": False})
            print("Dry run: re-run with --yes to confirm this order.", file=sys.stderr)
            return EXIT_OK

        result = service.confirm_order(quote)
        if isinstance(result, Rejection):
            return _report_rejection(result)

        _print_json(
            {
                "confirmed": True,
                "transaction_id": result.tx_id,
                "quote": quote.to_dict(),
                "balance": str(service.current_state().balance),
                "settlement_timestamp": result.settlement_timestamp,
            }
        )
        _report_soft_error(service)
    return EXIT_OK


def _buy(args: argparse.Namespace, config: TradingConfig) -> int:
    return _trade(args, config, Side.BUY)


def _sell(args: argparse.Namespace, config: TradingConfig) -> int:
    return _trade(args, config, Side.SELL)


def _tick(args: argparse.Namespace, config: TradingConfig) -> int:
    with _open_service(args, config, settle=False) as service:
        outcome = service.tick(now_ms=args.now_ms)
        _print_json(
            {
                "changed": outcome.changed,
                "newly_defaulted": outcome.newly_defaulted,
                "modes": {
                    mode: {
                        "settled_ids": list(result.settled_ids),
                        "defaulted_ids": list(result.defaulted_ids),
                        "balance": str(result.balance),
                        "frozen": result.frozen,
                    }
                    for mode, result in outcome.results.items()
                },
            }
        )
        _report_soft_error(service)
    return EXIT_OK


def _sync(args: argparse.Namespace, config: TradingConfig) -> int:
    if not args.remote_url:
        print("Error: sync requires --remote-url.", file=sys.stderr)
        return EXIT_ERROR
    with _open_service(args, config) as service:
        outcome = service.sync()
        if not outcome.ok:
            print(f"Error: {outcome.error}", file=sys.stderr)
            return EXIT_ERROR
        _print_json(
            {
                "changed": outcome.changed,
                "modes": {
                    mode: {
                        "added_ids": list(result.added_ids),
                        "history_changed": result.history_changed,
                        "balance_changed": result.balance_changed,
                        "frozen": result.account.frozen,
                    }
                    for mode, result in outcome.results.items()
                },
            }
        )
        _report_soft_error(service)
    return EXIT_OK


def _reset(args: argparse.Namespace, config: TradingConfig) -> int:
    if not args.yes:
        print(
            f"Refusing to reset {args.user!r} ({args.mode}) without --yes; "
            "this drops the mode's whole history.",
            file=sys.stderr,
        )
        return EXIT_ERROR
    with _open_service(args, config, settle=False) as service:
        fresh = service.reset_mode()
        _print_json({"mode": service.mode, "balance": str(fresh.balance), "epoch": fresh.epoch})
        _report_soft_error(service)
    return EXIT_OK


def _summary(args: argparse.Namespace, config: TradingConfig) -> int:
    try:
        marks = _parse_marks(args.marks)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    with _open_service(args, config) as service:
        summary = summarize_account(service.current_state(), marks)
        payload = summary.to_dict()
        payload["username"] = args.user
        payload["mode"] = service.mode
        _print_json(payload)
    return EXIT_OK


def _leaderboard(args: argparse.Namespace, config: TradingConfig) -> int:
    try:
        marks = _parse_marks(args.marks)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    storage = JsonFileStorage(resolve_data_dir(args.store_dir))
    accounts = []
    for key in storage.keys():
        try:
            payload = storage.load(key)
            if payload is None:
                continue
            decoded = decode_user_accounts(payload, config.starting_balance)
        except (StorageError, RecordFormatError) as exc:
            logger.warning("Skipping unreadable record %r: %s", key, exc)
            continue
        accounts.append((decoded.username or key, decoded.account(args.mode)))

    entries = build_leaderboard(accounts, marks, sort_by=args.sort_by)
    _print_json({"mode": args.mode, "sort_by": args.sort_by, "entries": [e.to_dict() for e in entries]})
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--mode",
        default=TradingMode.REAL,
        type=str.upper,
        choices=list(TradingMode.ALL),
        help="Trading mode (default: REAL).",
    )
    common.add_argument(
        "--store-dir",
        default=None,
        metavar="PATH",
        help="Account store directory (default: $TWTRADE_DATA_DIR or artifacts/accounts).",
    )
    common.add_argument(
        "--remote-url",
        default=None,
        metavar="URL",
        help="Base URL of a remote record store used for sync.",
    )
    config_group = common.add_mutually_exclusive_group()
    config_group.add_argument("--config", default=None, metavar="PATH", help="JSON config file.")
    config_group.add_argument("--config-json", default=None, metavar="JSON", help="Inline JSON config.")
    common.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING).",
    )

    user_args = argparse.ArgumentParser(add_help=False)
    user_args.add_argument("--user", required=True, help="Account key (username).")

    marks_args = argparse.ArgumentParser(add_help=False)
    marks_args.add_argument(
        "--mark",
        dest="marks",
        metavar="SYMBOL=PRICE",
        action="append",
        help="Mark price for valuing a holding.  Repeatable; unmarked holdings use average cost.",
    )

    parser = argparse.ArgumentParser(
        prog="twtrade account",
        description="Ledger-derived paper-trading accounts for Taiwan stocks.",
    )
    sub = parser.add_subparsers(dest="subcommand", required=True)

    # ------------------------------------------------------------------
    # show
    # ------------------------------------------------------------------
    show = sub.add_parser("show", parents=[common, user_args], help="Print the account state.")
    show.add_argument("--limit", type=int, default=None, help="Show at most N ledger rows (newest first).")

    # ------------------------------------------------------------------
    # buy / sell
    # ------------------------------------------------------------------
    for name, help_text in (("buy", "Quote (and with --yes, place) a BUY."), ("sell", "Quote (and with --yes, place) a SELL.")):
        trade = sub.add_parser(name, parents=[common, user_args], help=help_text)
        trade.add_argument("--symbol", required=True, help="Stock symbol, e.g. 2330.")
        trade.add_argument("--name", default=None, help="Display name (default: the symbol).")
        trade.add_argument(
            "--quantity",
            type=int,
            required=True,
            help="Lots (x lot size shares), or shares with --odd.",
        )
        trade.add_argument("--odd", action="store_true", help="Odd-lot order: quantity is a share count.")
        trade.add_argument("--price", required=True, help="Quoted price per share.")
        trade.add_argument("--yes", action="store_true", help="Confirm the order.")

    # ------------------------------------------------------------------
    # tick / sync / reset
    # ------------------------------------------------------------------
    tick = sub.add_parser("tick", parents=[common, user_args], help="Run one settlement pass on every mode.")
    tick.add_argument(
        "--now-ms",
        type=int,
        default=None,
        help="Settle as of this epoch-millisecond instant (default: now).",
    )

    sub.add_parser("sync", parents=[common, user_args], help="Reconcile with the remote record store.")

    reset = sub.add_parser("reset", parents=[common, user_args], help="Reset one mode to a fresh account.")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset.")

    # ------------------------------------------------------------------
    # summary / leaderboard
    # ------------------------------------------------------------------
    sub.add_parser("summary", parents=[common, user_args, marks_args], help="Account valuation and trade statistics.")

    board = sub.add_parser("leaderboard", parents=[common, marks_args], help="Rank every stored account.")
    board.add_argument(
        "--sort-by",
        default=SORT_BY_ASSETS,
        choices=[SORT_BY_ASSETS, SORT_BY_PROFIT],
        help="Ranking key (default: assets).",
    )

    return parser


_HANDLERS = {
    "show": _show,
    "buy": _buy,
    "sell": _sell,
    "tick": _tick,
    "sync": _sync,
    "reset": _reset,
    "summary": _summary,
    "leaderboard": _leaderboard,
}


def main(argv: list[str]) -> int:
    """CLI entry point.  Returns exit code (0 = success, 2 = order rejected)."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = _load_config(args)
    if config is None:
        return EXIT_ERROR

    handler = _HANDLERS.get(args.subcommand)
    if handler is None:
        parser.print_help()
        return EXIT_ERROR
    return handler(args, config)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
