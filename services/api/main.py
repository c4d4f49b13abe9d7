"""twtrade API service: paper-account operations and the replica record store.

Factory function ``create_app(storage)`` returns a FastAPI application that:
- Reports liveness at GET /health
- Serves account state, quotes, confirmations, settlement ticks, resets and
  summaries under /api/accounts/{user}/...
- Ranks every stored account at GET /api/leaderboard
- Acts as the remote replica for client sync at GET/PUT /api/records/{key}.
  A PUT is reconciled into the stored record, never blindly overwritten.

Usage
-----
    python -m twtrade serve --port 8000
    # or
    uvicorn --factory services.api.main:create_app --port 8000
"""

from __future__ import annotations

import argparse
import logging
import threading
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from packages.twstock.papertrade.account_service import (
    AccountService,
    OrderQuote,
    RejectReason,
    Rejection,
)
from packages.twstock.papertrade.config import TradingConfig, load_trading_config, resolve_data_dir
from packages.twstock.papertrade.ledger.stats import SORT_BY_ASSETS, build_leaderboard, summarize_account
from packages.twstock.papertrade.ledger.types import LotMode, TradingMode
from packages.twstock.papertrade.records import (
    RecordFormatError,
    decode_user_accounts,
    transaction_to_dict,
)
from packages.twstock.papertrade.storage import AccountStorage, JsonFileStorage, StorageError, safe_key

logger = logging.getLogger(__name__)

SERVICE_NAME = "twtrade-api"


# Request models
class QuoteRequest(BaseModel):
    """Request body for /api/accounts/{user}/quote."""

    symbol: str = Field(..., min_length=1, description="Stock symbol, e.g. 2330")
    side: str = Field(..., description="BUY or SELL")
    quantity: int = Field(..., description="Lots for WHOLE orders, shares for ODD orders")
    price: Decimal = Field(..., description="Quoted price per share")
    lot_mode: str = Field(default=LotMode.WHOLE, description="WHOLE or ODD")
    name: Optional[str] = Field(default=None, description="Display name (defaults to symbol)")
    mode: Optional[str] = Field(default=None, description="REAL or SIMULATION (default REAL)")


class ConfirmRequest(BaseModel):
    """Request body for /api/accounts/{user}/confirm: a quote returned by /quote."""

    quote: dict[str, Any]


class TickRequest(BaseModel):
    now_ms: Optional[int] = Field(default=None, description="Settle as of this instant (epoch ms)")


class ResetRequest(BaseModel):
    mode: str = Field(..., description="Mode to reset: REAL or SIMULATION")


class RecordBody(BaseModel):
    """Request body for PUT /api/records/{key}."""

    record: dict[str, Any]


def _rejection_error(rejection: Rejection) -> HTTPException:
    status = 400 if RejectReason.is_input_error(rejection.reason) else 409
    return HTTPException(status_code=status, detail=rejection.to_dict())


def _parse_mode(mode: Optional[str]) -> str:
    try:
        return TradingMode.normalize(mode or TradingMode.REAL)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _storage_key(user: str) -> str:
    """Key under which *user* shows up in ``storage.keys()`` (file stems are sanitised)."""
    try:
        return safe_key(user)
    except StorageError:
        return user


def _parse_marks(marks: Optional[list[str]]) -> dict[str, Decimal]:
    out: dict[str, Decimal] = {}
    for raw in marks or []:
        symbol, sep, price = raw.partition("=")
        try:
            if not sep or not symbol:
                raise ValueError(raw)
            out[symbol] = Decimal(price)
        except (ArithmeticError, ValueError):
            raise HTTPException(status_code=400, detail=f"mark must look like SYMBOL=PRICE; got {raw!r}")
    return out


def create_app(
    storage: Optional[AccountStorage] = None,
    *,
    config: Optional[TradingConfig] = None,
    clock: Optional[Callable[[], int]] = None,
    background: bool = False,
) -> FastAPI:
    """Create and return the twtrade API application.

    Parameters
    ----------
    storage:
        Account record store shared by every user's service.  Defaults to a
        :class:`JsonFileStorage` under ``$TWTRADE_DATA_DIR``.  Pass an
        ``InMemoryStorage`` in tests.
    config:
        Trading configuration; loaded from ``TWTRADE_*`` env vars by default.
    clock:
        Epoch-millisecond clock handed to every account service.
    background:
        Start each account's settlement timer when it is first used.
    """
    _storage = storage if storage is not None else JsonFileStorage(resolve_data_dir())
    _config = config or load_trading_config()
    _services: dict[str, AccountService] = {}
    _services_lock = threading.Lock()

    def _service_for(user: str) -> AccountService:
        with _services_lock:
            service = _services.get(user)
            if service is None:
                kwargs: dict[str, Any] = {"config": _config}
                if clock is not None:
                    kwargs["clock"] = clock
                service = AccountService(user, _storage, **kwargs)
                service.load()
                if background:
                    service.start()
                _services[user] = service
                logger.info("Opened account service for %r", user)
            return service

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        with _services_lock:
            for service in _services.values():
                service.stop()
            _services.clear()

    app = FastAPI(title="twtrade API", version="0.1.0", lifespan=lifespan)

    # ------------------------------------------------------------------
    # GET /health
    # ------------------------------------------------------------------

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {"status": "healthy", "service": SERVICE_NAME}

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @app.get("/api/accounts/{user}/state")
    def account_state(user: str, mode: Optional[str] = None) -> dict[str, Any]:
        resolved = _parse_mode(mode)
        service = _service_for(user)
        return service.snapshot(resolved)

    @app.post("/api/accounts/{user}/quote")
    def quote_order(user: str, request: QuoteRequest) -> dict[str, Any]:
        service = _service_for(user)
        result = service.place_order(
            request.symbol,
            request.side,
            request.lot_mode,
            request.quantity,
            request.price,
            name=request.name,
            mode=request.mode or TradingMode.REAL,
        )
        if isinstance(result, Rejection):
            raise _rejection_error(result)
        return {"quote": result.to_dict()}

    @app.post("/api/accounts/{user}/confirm")
    def confirm_order(user: str, request: ConfirmRequest) -> dict[str, Any]:
        try:
            quote = OrderQuote.from_dict(request.quote)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        service = _service_for(user)
        result = service.confirm_order(quote)
        if isinstance(result, Rejection):
            raise _rejection_error(result)
        return {
            "transaction": transaction_to_dict(result),
            "balance": str(service.current_state(quote.mode).balance),
        }

    @app.post("/api/accounts/{user}/tick")
    def tick(user: str, request: Optional[TickRequest] = None) -> dict[str, Any]:
        service = _service_for(user)
        outcome = service.tick(now_ms=request.now_ms if request else None)
        return {
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

    @app.post("/api/accounts/{user}/reset")
    def reset(user: str, request: ResetRequest) -> dict[str, Any]:
        resolved = _parse_mode(request.mode)
        service = _service_for(user)
        fresh = service.reset_mode(resolved)
        return {"mode": resolved, "balance": str(fresh.balance), "epoch": fresh.epoch}

    @app.get("/api/accounts/{user}/summary")
    def summary(
        user: str,
        mode: Optional[str] = None,
        mark: Optional[list[str]] = Query(default=None),
    ) -> dict[str, Any]:
        resolved = _parse_mode(mode)
        marks = _parse_marks(mark)
        service = _service_for(user)
        payload = summarize_account(service.current_state(resolved), marks).to_dict()
        payload["username"] = user
        payload["mode"] = resolved
        return payload

    # ------------------------------------------------------------------
    # GET /api/leaderboard
    # ------------------------------------------------------------------

    @app.get("/api/leaderboard")
    def leaderboard(
        mode: Optional[str] = None,
        sort_by: str = SORT_BY_ASSETS,
        mark: Optional[list[str]] = Query(default=None),
    ) -> dict[str, Any]:
        resolved = _parse_mode(mode)
        marks = _parse_marks(mark)
        list_keys = getattr(_storage, "keys", None)
        if list_keys is None:
            raise HTTPException(status_code=501, detail="storage backend cannot list accounts")
        with _services_lock:
            live = {_storage_key(user): (user, service) for user, service in _services.items()}
        accounts = []
        for key in list_keys():
            if _storage_key(key) in live:
                user, service = live[_storage_key(key)]
                accounts.append((user, service.current_state(resolved)))
                continue
            try:
                payload = _storage.load(key)
                if payload is None:
                    continue
                decoded = decode_user_accounts(payload, _config.starting_balance)
            except (StorageError, RecordFormatError) as exc:
                logger.warning("Skipping unreadable record %r: %s", key, exc)
                continue
            accounts.append((decoded.username or key, decoded.account(resolved)))
        try:
            entries = build_leaderboard(accounts, marks, sort_by=sort_by)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"mode": resolved, "sort_by": sort_by, "entries": [e.to_dict() for e in entries]}

    # ------------------------------------------------------------------
    # Record store (remote replica for client sync)
    # ------------------------------------------------------------------

    @app.get("/api/records/{key}")
    def get_record(key: str) -> dict[str, Any]:
        try:
            payload = _storage.load(key)
        except StorageError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        if payload is None:
            raise HTTPException(status_code=404, detail=f"record not found: {key!r}")
        return {"record": payload}

    @app.put("/api/records/{key}")
    def put_record(key: str, body: RecordBody) -> dict[str, Any]:
        service = _service_for(key)
        outcome = service.merge_record(body.record, source="pushed")
        if not outcome.ok:
            raise HTTPException(status_code=400, detail=outcome.error)
        if service.last_error:
            logger.warning("Record %r merged with a soft error: %s", key, service.last_error)
        return {"ok": True, "changed": outcome.changed}

    return app


def main(argv: list[str]) -> int:
    """Run the API with uvicorn.  Returns exit code."""
    import uvicorn

    parser = argparse.ArgumentParser(prog="twtrade serve", description="Run the twtrade account API.")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000).")
    parser.add_argument("--store-dir", default=None, metavar="PATH", help="Account store directory.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = create_app(JsonFileStorage(resolve_data_dir(args.store_dir)), background=True)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    import sys

    raise SystemExit(main(sys.argv[1:]))
