"""Unit tests for the twtrade FastAPI service.

Requires fastapi and httpx.  The whole module is skipped gracefully if
fastapi is not installed.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed; skip API tests")

from fastapi.testclient import TestClient  # noqa: E402

from packages.twstock.papertrade.account_service import AccountService  # noqa: E402
from packages.twstock.papertrade.config import TradingConfig  # noqa: E402
from packages.twstock.papertrade.ledger.types import LotMode, Side, TradingMode  # noqa: E402
from packages.twstock.papertrade.records import UserAccounts, encode_user_accounts  # noqa: E402
from packages.twstock.papertrade.remote import HttpAccountStore  # noqa: E402
from packages.twstock.papertrade.storage import InMemoryStorage, JsonFileStorage  # noqa: E402
from services.api.main import create_app  # noqa: E402

# Mon 2026-01-05 09:30 Asia/Taipei
T0 = 1767576600000
WED_1000_MS = 1767751200000


def _client(storage=None, config=None):
    storage = storage if storage is not None else InMemoryStorage()
    app = create_app(storage, config=config or TradingConfig(), clock=lambda: T0)
    return TestClient(app), storage


def _quote(client, user="amy", **overrides):
    body = {"symbol": "2330", "side": "BUY", "quantity": 1, "price": "100"}
    body.update(overrides)
    return client.post(f"/api/accounts/{user}/quote", json=body)


def _buy(client, user="amy", **overrides):
    quote = _quote(client, user, **overrides)
    assert quote.status_code == 200, quote.text
    return client.post(f"/api/accounts/{user}/confirm", json={"quote": quote.json()["quote"]})


# ---------------------------------------------------------------------------
# Health + state
# ---------------------------------------------------------------------------


def test_health():
    client, _ = _client()
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_state_of_new_user():
    client, storage = _client()
    resp = client.get("/api/accounts/amy/state")
    assert resp.status_code == 200
    data = resp.json()
    assert data["balance"] == "1000000"
    assert data["mode"] == "REAL"
    assert storage.load("amy") is not None


def test_state_rejects_unknown_mode():
    client, _ = _client()
    assert client.get("/api/accounts/amy/state", params={"mode": "PAPER"}).status_code == 400


# ---------------------------------------------------------------------------
# Quote / confirm
# ---------------------------------------------------------------------------


class TestOrders:
    def test_quote_then_confirm(self):
        client, _ = _client()
        resp = _buy(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["balance"] == "899858"
        assert data["transaction"]["fee"] == "142"
        assert data["transaction"]["settlementDate"] == WED_1000_MS
        assert data["transaction"]["status"] == "PENDING"

        state = client.get("/api/accounts/amy/state").json()
        assert state["positions"]["2330"]["shares"] == 1000

    def test_quote_does_not_mutate(self):
        client, _ = _client()
        _quote(client)
        assert client.get("/api/accounts/amy/state").json()["ledger"] == []

    def test_business_rejection_is_409(self):
        client, _ = _client()
        resp = _quote(client, side="SELL")
        assert resp.status_code == 409
        assert resp.json()["detail"]["reason"] == "insufficient_shares"

    def test_input_rejection_is_400(self):
        client, _ = _client()
        resp = _quote(client, quantity=0)
        assert resp.status_code == 400
        assert resp.json()["detail"]["reason"] == "invalid_quantity"

    def test_unknown_lot_mode_is_400(self):
        client, _ = _client()
        assert _quote(client, lot_mode="BLOCK").status_code == 400

    def test_confirm_rechecks_funds(self):
        client, _ = _client(config=TradingConfig(starting_balance=Decimal("150000")))
        first = _quote(client).json()["quote"]
        second = _quote(client).json()["quote"]
        assert client.post("/api/accounts/amy/confirm", json={"quote": first}).status_code == 200
        resp = client.post("/api/accounts/amy/confirm", json={"quote": second})
        assert resp.status_code == 409
        assert resp.json()["detail"]["reason"] == "insufficient_funds"

    def test_malformed_quote_is_400(self):
        client, _ = _client()
        resp = client.post("/api/accounts/amy/confirm", json={"quote": {"symbol": "2330"}})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Tick / reset / summary / leaderboard
# ---------------------------------------------------------------------------


def test_tick_settles_due_orders():
    client, _ = _client()
    _buy(client)
    assert client.post("/api/accounts/amy/tick", json={"now_ms": WED_1000_MS - 1}).json()["changed"] is False
    data = client.post("/api/accounts/amy/tick", json={"now_ms": WED_1000_MS}).json()
    assert data["changed"] is True
    assert len(data["modes"]["REAL"]["settled_ids"]) == 1


def test_reset_one_mode():
    client, _ = _client()
    _buy(client)
    _buy(client, mode="SIMULATION")
    resp = client.post("/api/accounts/amy/reset", json={"mode": "SIMULATION"})
    assert resp.status_code == 200
    assert resp.json()["epoch"] == 1
    assert client.get("/api/accounts/amy/state", params={"mode": "SIMULATION"}).json()["ledger"] == []
    assert len(client.get("/api/accounts/amy/state").json()["ledger"]) == 1


def test_summary_with_marks():
    client, _ = _client()
    _buy(client)
    data = client.get("/api/accounts/amy/summary", params={"mark": "2330=120"}).json()
    assert data["total_assets"] == "1019858"
    assert data["pending_settlement_cash"] == "-100142"


def test_summary_bad_mark():
    client, _ = _client()
    assert client.get("/api/accounts/amy/summary", params={"mark": "2330"}).status_code == 400


def test_leaderboard():
    client, _ = _client()
    client.get("/api/accounts/bob/state")
    _buy(client)
    resp = client.get("/api/leaderboard", params=[("mark", "2330=200"), ("sort_by", "profit")])
    assert resp.status_code == 200
    entries = resp.json()["entries"]
    assert [e["username"] for e in entries] == ["amy", "bob"]
    assert client.get("/api/leaderboard", params={"sort_by": "volume"}).status_code == 400


# ---------------------------------------------------------------------------
# Record store + client sync through the API
# ---------------------------------------------------------------------------


class _TestClientHttp:
    """Adapts a TestClient to the HttpClient surface HttpAccountStore uses."""

    def __init__(self, client: TestClient) -> None:
        self.client = client

    def get(self, path, params=None, headers=None):
        return self.client.get(path, params=params, headers=headers)

    def put_json(self, path, payload, headers=None):
        resp = self.client.put(path, json=payload, headers=headers)
        assert resp.status_code == 200, resp.text
        return resp.json()


class TestRecordStore:
    def test_missing_record_is_404(self):
        client, _ = _client()
        assert client.get("/api/records/nobody").status_code == 404

    def test_put_is_merged_not_overwritten(self):
        client, storage = _client()
        _buy(client)  # server-side trade

        # a client replica that never saw the server trade
        other = AccountService("amy", InMemoryStorage(), clock=lambda: T0 + 1, id_factory=lambda: "client-1")
        other.load()
        other.confirm_order(other.place_order("2317", Side.BUY, LotMode.WHOLE, 1, "50"))
        payload = encode_user_accounts(
            UserAccounts("amy", {m: other.current_state(m) for m in TradingMode.ALL}, T0 + 1)
        )
        other.stop()

        resp = client.put("/api/records/amy", json={"record": payload})
        assert resp.status_code == 200
        assert resp.json()["changed"] is True

        state = client.get("/api/accounts/amy/state").json()
        assert {tx["symbol"] for tx in state["ledger"]} == {"2330", "2317"}
        record = client.get("/api/records/amy").json()["record"]
        assert len(record["realMode"]["history"]) == 2

    def test_unreadable_put_is_400(self):
        client, _ = _client()
        resp = client.put("/api/records/amy", json={"record": {"realMode": {"history": "nope"}}})
        assert resp.status_code == 400

    def test_client_service_syncs_through_api(self):
        client, _ = _client()
        store = HttpAccountStore("http://testserver", client=_TestClientHttp(client))
        local = AccountService(
            "amy", InMemoryStorage(), remote=store, clock=lambda: T0 + 5, id_factory=lambda: "local-1"
        )
        local.load()

        # local trade is pushed to the server on persist
        local.confirm_order(local.place_order("2317", Side.BUY, LotMode.WHOLE, 1, "50"))
        server_state = client.get("/api/accounts/amy/state").json()
        assert [tx["id"] for tx in server_state["ledger"]] == ["local-1"]

        # a server-side trade reaches the local replica on sync
        _buy(client)
        outcome = local.sync()
        assert outcome.ok is True
        assert outcome.changed is True
        assert local.current_state().held_shares("2330") == 1000
        assert local.last_error is None
        local.stop()


class _StaleAfterCreateStorage(JsonFileStorage):
    """Writes the first record per key, then silently stops writing."""

    def save(self, account_key, payload):
        if self.load(account_key) is None:
            super().save(account_key, payload)


def test_leaderboard_uses_live_state_for_sanitised_usernames(tmp_path):
    client, _ = _client(storage=_StaleAfterCreateStorage(tmp_path))
    _buy(client, user="amy lee")
    entries = client.get("/api/leaderboard", params={"mark": "2330=200"}).json()["entries"]
    assert [e["username"] for e in entries] == ["amy lee"]
    assert entries[0]["total_assets"] == "1099858"
