"""Ledger-derived paper-trading accounts (REAL and SIMULATION modes)."""

from .account_service import (
    AccountService,
    OrderQuote,
    RejectReason,
    Rejection,
    SyncOutcome,
    TickOutcome,
)
from .config import ConfigLoadError, TradingConfig, load_trading_config
from .ledger.types import (
    AccountState,
    LotMode,
    Position,
    SettlementStatus,
    Side,
    TradingMode,
    Transaction,
)
from .records import RecordFormatError, UserAccounts, decode_user_accounts, encode_user_accounts
from .remote import HttpAccountStore, RemoteSyncError
from .storage import InMemoryStorage, JsonFileStorage, StorageError

__all__ = [
    "AccountService",
    "OrderQuote",
    "RejectReason",
    "Rejection",
    "SyncOutcome",
    "TickOutcome",
    "ConfigLoadError",
    "TradingConfig",
    "load_trading_config",
    "AccountState",
    "LotMode",
    "Position",
    "SettlementStatus",
    "Side",
    "TradingMode",
    "Transaction",
    "RecordFormatError",
    "UserAccounts",
    "decode_user_accounts",
    "encode_user_accounts",
    "HttpAccountStore",
    "RemoteSyncError",
    "InMemoryStorage",
    "JsonFileStorage",
    "StorageError",
]
