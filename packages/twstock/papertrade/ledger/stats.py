"""Account summaries and leaderboard ranking.

Mark prices come from the caller (quote retrieval is not part of this
package).  A position without a mark is valued at its average cost, which
keeps total assets conservative-neutral instead of dropping the holding.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from .types import AccountState, Side

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

SORT_BY_ASSETS = "assets"
SORT_BY_PROFIT = "profit"


@dataclass(frozen=True)
class AccountSummary:
    total_assets: Decimal
    holdings_value: Decimal
    profit: Decimal
    profit_percent: Decimal
    buy_count: int
    sell_count: int
    trade_count: int
    trade_volume: Decimal
    holdings_count: int
    pending_settlement_cash: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_assets": str(self.total_assets),
            "holdings_value": str(self.holdings_value),
            "profit": str(self.profit),
            "profit_percent": str(self.profit_percent),
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "trade_count": self.trade_count,
            "trade_volume": str(self.trade_volume),
            "holdings_count": self.holdings_count,
            "pending_settlement_cash": str(self.pending_settlement_cash),
        }


@dataclass(frozen=True)
class LeaderboardEntry:
    username: str
    total_assets: Decimal
    profit: Decimal
    profit_percent: Decimal
    rank: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "username": self.username,
            "total_assets": str(self.total_assets),
            "profit": str(self.profit),
            "profit_percent": str(self.profit_percent),
        }


def summarize_account(
    account: AccountState,
    prices: Optional[Mapping[str, Decimal]] = None,
) -> AccountSummary:
    """Value *account* at *prices* and collect trade statistics."""
    prices = prices or {}

    holdings_value = _ZERO
    for symbol, pos in account.positions.items():
        mark = prices.get(symbol)
        if mark is None:
            mark = pos.average_price
        holdings_value += mark * pos.shares

    total_assets = account.balance + holdings_value
    profit = total_assets - account.starting_balance
    if account.starting_balance > _ZERO:
        profit_percent = profit / account.starting_balance * _HUNDRED
    else:
        profit_percent = _ZERO

    buys = sum(1 for tx in account.ledger if tx.side == Side.BUY)
    sells = len(account.ledger) - buys

    return AccountSummary(
        total_assets=total_assets,
        holdings_value=holdings_value,
        profit=profit,
        profit_percent=profit_percent,
        buy_count=buys,
        sell_count=sells,
        trade_count=len(account.ledger),
        trade_volume=sum((tx.gross for tx in account.ledger), _ZERO),
        holdings_count=len(account.positions),
        pending_settlement_cash=sum(
            (tx.cash_effect for tx in account.ledger if tx.is_pending), _ZERO
        ),
    )


def build_leaderboard(
    accounts: Iterable[tuple[str, AccountState]],
    prices: Optional[Mapping[str, Decimal]] = None,
    sort_by: str = SORT_BY_ASSETS,
) -> list[LeaderboardEntry]:
    """Rank *(username, account)* pairs by total assets or profit (1-based ranks).

    Ties keep a stable order by username.

    Raises:
        ValueError: Unknown ``sort_by``.
    """
    if sort_by not in (SORT_BY_ASSETS, SORT_BY_PROFIT):
        raise ValueError(f"sort_by must be {SORT_BY_ASSETS!r} or {SORT_BY_PROFIT!r}; got {sort_by!r}")

    rows = []
    for username, account in accounts:
        summary = summarize_account(account, prices)
        rows.append(
            LeaderboardEntry(
                username=username,
                total_assets=summary.total_assets,
                profit=summary.profit,
                profit_percent=summary.profit_percent,
            )
        )

    rows.sort(key=lambda r: r.username)
    if sort_by == SORT_BY_ASSETS:
        rows.sort(key=lambda r: r.total_assets, reverse=True)
    else:
        rows.sort(key=lambda r: r.profit, reverse=True)

    return [
        LeaderboardEntry(
            username=r.username,
            total_assets=r.total_assets,
            profit=r.profit,
            profit_percent=r.profit_percent,
            rank=i + 1,
        )
        for i, r in enumerate(rows)
    ]
