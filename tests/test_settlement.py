"""Settlement processor: PENDING -> SETTLED / DEFAULTED, sticky freeze."""

from __future__ import annotations

from decimal import Decimal

import pytest

from packages.twstock.papertrade.ledger.settlement import process_settlements, settle_account
from packages.twstock.papertrade.ledger.types import SettlementStatus, Side
from tests._ledger_builders import DAY_MS, START, T0, make_account, make_tx

_D = Decimal  # shorthand

DUE = T0 + 2 * DAY_MS


def _status_by_id(ledger):
    return {tx.tx_id: tx.status for tx in ledger}


class TestProcessSettlements:
    def test_nothing_due_is_unchanged(self):
        ledger = [make_tx("b1", Side.BUY)]
        result = process_settlements(ledger, START, now_ms=DUE - 1)
        assert result.changed is False
        assert result.settled_ids == ()
        assert _status_by_id(result.ledger) == {"b1": SettlementStatus.PENDING}

    def test_covered_buy_settles(self):
        ledger = [make_tx("b1", Side.BUY)]
        result = process_settlements(ledger, START, now_ms=DUE)
        assert result.changed is True
        assert result.settled_ids == ("b1",)
        assert result.frozen is False
        assert result.balance == _D("899858")
        assert result.events[0]["event"] == "settled"

    def test_due_sell_always_settles(self):
        ledger = [make_tx("s1", Side.SELL, symbol="9999", shares=10, price="10")]
        result = process_settlements(ledger, _D("0"), now_ms=DUE)
        assert _status_by_id(result.ledger) == {"s1": SettlementStatus.SETTLED}

    def test_uncovered_buy_defaults_and_freezes(self):
        # 500 cash against a 590 + fee purchase
        ledger = [make_tx("b1", Side.BUY, shares=59, price="10")]
        result = process_settlements(ledger, _D("500"), now_ms=DUE)
        assert result.defaulted_ids == ("b1",)
        assert result.newly_defaulted is True
        assert result.frozen is True
        assert result.balance == _D("0")
        assert _status_by_id(result.ledger) == {"b1": SettlementStatus.DEFAULTED}
        assert result.events[0]["event"] == "defaulted"

    def test_running_balance_counts_not_yet_due_transactions(self):
        # The earlier SELL is not due yet but its proceeds still count
        ledger = [
            make_tx("s1", Side.SELL, symbol="9999", shares=100, price="10",
                    timestamp=T0 - 1, settlement_timestamp=DUE + DAY_MS),
            make_tx("b1", Side.BUY, shares=50, price="10", timestamp=T0),
        ]
        result = process_settlements(ledger, _D("0"), now_ms=DUE)
        assert _status_by_id(result.ledger) == {
            "s1": SettlementStatus.PENDING,
            "b1": SettlementStatus.SETTLED,
        }

    def test_later_purchase_cannot_starve_earlier_one(self):
        ledger = [
            make_tx("b1", Side.BUY, shares=40, price="10", timestamp=T0),
            make_tx("b2", Side.BUY, shares=40, price="10", timestamp=T0 + 1),
        ]
        result = process_settlements(ledger, _D("500"), now_ms=DUE + 1)
        assert _status_by_id(result.ledger) == {
            "b1": SettlementStatus.SETTLED,
            "b2": SettlementStatus.DEFAULTED,
        }

    def test_frozen_flag_is_sticky(self):
        ledger = [make_tx("b1", Side.BUY)]
        result = process_settlements(ledger, START, now_ms=DUE, frozen=True)
        assert result.frozen is True
        assert result.newly_defaulted is False

    def test_second_pass_is_a_no_op(self):
        ledger = [make_tx("b1", Side.BUY), make_tx("b2", Side.BUY, shares=59, price="10", timestamp=T0 + 1)]
        first = process_settlements(ledger, START, now_ms=DUE + 5)
        second = process_settlements(first.ledger, START, now_ms=DUE + 10)
        assert first.changed is True
        assert second.changed is False
        assert second.ledger == first.ledger
        assert second.balance == first.balance


class TestSettleAccount:
    def test_unchanged_account_is_returned_as_is(self):
        account = make_account([make_tx("b1", Side.BUY)])
        updated, result = settle_account(account, DUE - 1)
        assert updated is account
        assert result.changed is False

    def test_default_freezes_account(self):
        account = make_account([make_tx("b1", Side.BUY, shares=59, price="10")], starting_balance=_D("500"))
        updated, result = settle_account(account, DUE)
        assert updated.frozen is True
        assert updated.balance == _D("0")
        assert updated.last_update == DUE
        # holdings still come from the ledger
        assert updated.held_shares("2330") == 59

    def test_frozen_survives_later_settlements(self):
        account = make_account(
            [make_tx("b1", Side.BUY, shares=59, price="10"),
             make_tx("s1", Side.SELL, symbol="9999", shares=1, price="1", timestamp=T0 + DAY_MS)],
            starting_balance=_D("500"),
        )
        frozen_account, _ = settle_account(account, DUE)
        later, result = settle_account(frozen_account, DUE + 5 * DAY_MS)
        assert result.settled_ids == ("s1",)
        assert later.frozen is True

    def test_epoch_is_preserved(self):
        account = make_account([make_tx("b1", Side.BUY)], epoch=3)
        updated, _ = settle_account(account, DUE)
        assert updated.epoch == 3


def test_terminal_status_cannot_move_again():
    tx = make_tx("b1", Side.BUY).with_status(SettlementStatus.SETTLED)
    with pytest.raises(ValueError):
        tx.with_status(SettlementStatus.DEFAULTED)
    assert tx.with_status(SettlementStatus.SETTLED) is tx
