"""Ledger core: every balance and position is derived from the transaction ledger.

Modules:
  types.py          : Transaction, Position, AccountState and string constants
  fees.py           : Decimal fee / transaction-tax computation
  settlement_date.py: T+2 settlement instant (weekends skipped, 10:00 local)
  projection.py     : ledger -> (balance, positions); the single source of truth
  settlement.py     : PENDING -> SETTLED / DEFAULTED processor
  reconcile.py      : id-based merge of a local and a remote replica
  stats.py          : account summaries and leaderboard ranking
"""
