"""End-to-end tests for ``twtrade account`` against a temporary file store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from tools.cli.account import main as account_main
from twtrade.__main__ import main as twtrade_main

FAR_FUTURE_MS = 4_102_444_800_000  # 2100-01-01


def _run(capsys, *argv: str) -> tuple[int, str, str]:
    code = account_main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


@pytest.fixture()
def store(tmp_path: Path) -> str:
    return str(tmp_path / "accounts")


def test_show_creates_fresh_account(capsys, store):
    code, out, _ = _run(capsys, "show", "--user", "amy", "--store-dir", store)
    assert code == 0
    data = json.loads(out)
    assert data["balance"] == "1000000"
    assert data["mode"] == "REAL"
    assert data["ledger"] == []
    assert (Path(store) / "amy.json").exists()


def test_buy_is_a_dry_run_without_yes(capsys, store):
    code, out, err = _run(
        capsys, "buy", "--user", "amy", "--store-dir", store,
        "--symbol", "2330", "--quantity", "1", "--price", "100",
    )
    assert code == 0
    data = json.loads(out)
    assert data["confirmed"] is False
    assert data["quote"]["fee"] == "142"
    assert "--yes" in err

    _, out, _ = _run(capsys, "show", "--user", "amy", "--store-dir", store)
    assert json.loads(out)["ledger"] == []


def test_buy_sell_and_settle(capsys, store):
    code, out, _ = _run(
        capsys, "buy", "--user", "amy", "--store-dir", store,
        "--symbol", "2330", "--quantity", "1", "--price", "100", "--yes",
    )
    assert code == 0
    assert json.loads(out)["balance"] == "899858"

    code, out, _ = _run(
        capsys, "sell", "--user", "amy", "--store-dir", store,
        "--symbol", "2330", "--quantity", "400", "--odd", "--price", "110", "--yes",
    )
    assert code == 0

    code, out, _ = _run(
        capsys, "tick", "--user", "amy", "--store-dir", store, "--now-ms", str(FAR_FUTURE_MS),
    )
    assert code == 0
    data = json.loads(out)
    assert data["changed"] is True
    assert len(data["modes"]["REAL"]["settled_ids"]) == 2

    _, out, _ = _run(capsys, "show", "--user", "amy", "--store-dir", store, "--limit", "1")
    data = json.loads(out)
    assert len(data["ledger"]) == 1
    assert data["positions"]["2330"]["shares"] == 600


def test_rejected_order_exits_2(capsys, store):
    code, out, err = _run(
        capsys, "sell", "--user", "amy", "--store-dir", store,
        "--symbol", "2330", "--quantity", "1", "--price", "100", "--yes",
    )
    assert code == 2
    assert out == ""
    assert "insufficient_shares" in err


def test_simulation_mode_is_separate(capsys, store):
    _run(
        capsys, "buy", "--user", "amy", "--store-dir", store, "--mode", "simulation",
        "--symbol", "2330", "--quantity", "1", "--price", "100", "--yes",
    )
    _, out, _ = _run(capsys, "show", "--user", "amy", "--store-dir", store)
    assert json.loads(out)["ledger"] == []
    _, out, _ = _run(capsys, "show", "--user", "amy", "--store-dir", store, "--mode", "SIMULATION")
    assert len(json.loads(out)["ledger"]) == 1


def test_reset_requires_yes(capsys, store):
    code, _, err = _run(capsys, "reset", "--user", "amy", "--store-dir", store)
    assert code == 1
    assert "--yes" in err

    code, out, _ = _run(capsys, "reset", "--user", "amy", "--store-dir", store, "--yes")
    assert code == 0
    assert json.loads(out)["epoch"] == 1


def test_summary_with_marks(capsys, store):
    _run(
        capsys, "buy", "--user", "amy", "--store-dir", store,
        "--symbol", "2330", "--quantity", "1", "--price", "100", "--yes",
    )
    code, out, _ = _run(capsys, "summary", "--user", "amy", "--store-dir", store, "--mark", "2330=120")
    assert code == 0
    data = json.loads(out)
    assert data["holdings_value"] == "120000"
    assert data["total_assets"] == "1019858"
    assert data["buy_count"] == 1


def test_summary_rejects_bad_mark(capsys, store):
    code, _, err = _run(capsys, "summary", "--user", "amy", "--store-dir", store, "--mark", "2330")
    assert code == 1
    assert "SYMBOL=PRICE" in err


def test_leaderboard_ranks_stored_accounts(capsys, store):
    _run(capsys, "show", "--user", "bob", "--store-dir", store)
    _run(
        capsys, "buy", "--user", "amy", "--store-dir", store,
        "--symbol", "2330", "--quantity", "1", "--price", "100", "--yes",
    )
    code, out, _ = _run(capsys, "leaderboard", "--store-dir", store, "--mark", "2330=200")
    assert code == 0
    entries = json.loads(out)["entries"]
    assert [e["username"] for e in entries] == ["amy", "bob"]
    assert [e["rank"] for e in entries] == [1, 2]


def test_sync_requires_remote_url(capsys, store):
    code, _, err = _run(capsys, "sync", "--user", "amy", "--store-dir", store)
    assert code == 1
    assert "--remote-url" in err


def test_invalid_config_json(capsys, store):
    code, _, err = _run(capsys, "show", "--user", "amy", "--store-dir", store, "--config-json", "{oops")
    assert code == 1
    assert "not valid JSON" in err


def test_config_changes_lot_size(capsys, store):
    code, out, _ = _run(
        capsys, "buy", "--user", "amy", "--store-dir", store, "--config-json", '{"lot_size": 100}',
        "--symbol", "2330", "--quantity", "1", "--price", "100",
    )
    assert code == 0
    assert json.loads(out)["quote"]["shares"] == 100


class TestEntrypoint:
    def test_routes_account(self, capsys, store):
        assert twtrade_main(["account", "show", "--user", "amy", "--store-dir", store]) == 0
        assert json.loads(capsys.readouterr().out)["username"] == "amy"

    def test_version(self, capsys):
        assert twtrade_main(["--version"]) == 0
        assert capsys.readouterr().out.startswith("twtrade ")

    def test_unknown_command(self, capsys):
        assert twtrade_main(["frobnicate"]) == 1
        assert "Unknown command" in capsys.readouterr().out

    def test_no_args_prints_usage(self, capsys):
        assert twtrade_main([]) == 1
        assert "Usage" in capsys.readouterr().out
