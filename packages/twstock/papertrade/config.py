"""Trading configuration: fee schedule, lot size, settlement calendar, timers.

Sources, lowest precedence first:

1. :class:`TradingConfig` defaults.
2. A JSON object from ``--config PATH`` or ``--config-json '{...}'``.
   Files written by PowerShell 5.1 carry a UTF-8 BOM; both loaders accept it.
3. ``TWTRADE_*`` environment variables (e.g. ``TWTRADE_FEE_RATE=0.0006``).

Unknown keys are rejected so a typo never silently falls back to a default.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from .ledger.fees import DEFAULT_FEE_RATE, DEFAULT_TAX_RATE
from .ledger.settlement_date import (
    DEFAULT_MARKET_TIMEZONE,
    DEFAULT_SETTLEMENT_DAYS,
    DEFAULT_SETTLEMENT_HOUR,
)

ENV_PREFIX = "TWTRADE_"
DATA_DIR_ENV = "TWTRADE_DATA_DIR"
DEFAULT_DATA_DIR = Path("artifacts") / "accounts"


class ConfigLoadError(ValueError):
    """Raised when config loading or parsing fails."""


@dataclass(frozen=True)
class TradingConfig:
    """Runtime settings for the paper-trading account service."""

    fee_rate: Decimal = DEFAULT_FEE_RATE
    tax_rate: Decimal = DEFAULT_TAX_RATE
    lot_size: int = 1000
    starting_balance: Decimal = Decimal("1000000")
    settlement_days: int = DEFAULT_SETTLEMENT_DAYS
    settlement_hour: int = DEFAULT_SETTLEMENT_HOUR
    timezone: str = DEFAULT_MARKET_TIMEZONE
    tick_interval_seconds: float = 10.0
    sync_interval_seconds: float = 10.0
    io_timeout_seconds: float = 5.0
    change_epsilon: Decimal = Decimal("0.01")

    def __post_init__(self) -> None:
        if self.fee_rate < 0 or self.tax_rate < 0:
            raise ConfigLoadError("fee_rate and tax_rate must be non-negative")
        if self.lot_size <= 0:
            raise ConfigLoadError(f"lot_size must be positive; got {self.lot_size}")
        if self.starting_balance < 0:
            raise ConfigLoadError(f"starting_balance must be non-negative; got {self.starting_balance}")
        if self.settlement_days < 1:
            raise ConfigLoadError(f"settlement_days must be at least 1; got {self.settlement_days}")
        if not 0 <= self.settlement_hour <= 23:
            raise ConfigLoadError(f"settlement_hour must be 0-23; got {self.settlement_hour}")
        if self.io_timeout_seconds <= 0:
            raise ConfigLoadError("io_timeout_seconds must be positive")
        if self.tick_interval_seconds <= 0 or self.sync_interval_seconds <= 0:
            raise ConfigLoadError("tick/sync intervals must be positive")


_FIELD_TYPES: dict[str, type] = {
    "fee_rate": Decimal,
    "tax_rate": Decimal,
    "lot_size": int,
    "starting_balance": Decimal,
    "settlement_days": int,
    "settlement_hour": int,
    "timezone": str,
    "tick_interval_seconds": float,
    "sync_interval_seconds": float,
    "io_timeout_seconds": float,
    "change_epsilon": Decimal,
}


def _coerce(name: str, raw: Any) -> Any:
    kind = _FIELD_TYPES[name]
    try:
        if kind is Decimal:
            # str() first so JSON floats like 0.001425 keep their literal digits
            return Decimal(str(raw))
        if kind is int:
            if isinstance(raw, bool):
                raise ValueError("booleans are not integers")
            value = float(raw)
            if value != int(value):
                raise ValueError(f"{raw!r} is not a whole number")
            return int(value)
        if kind is float:
            return float(raw)
        return str(raw)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ConfigLoadError(f"invalid value for {name}: {raw!r} ({exc})") from exc


def load_json_from_path(path: Union[str, Path]) -> dict:
    """Load a JSON object from *path*, accepting a UTF-8 BOM.

    Raises:
        ConfigLoadError: If the file is missing, not JSON, or not an object.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8-sig")
    except FileNotFoundError as exc:
        raise ConfigLoadError(f"config file not found: {p}") from exc

    try:
        result = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigLoadError(f"config file is not valid JSON ({p}): {exc}") from exc

    if not isinstance(result, dict):
        raise ConfigLoadError(
            f"config file must contain a JSON object, got {type(result).__name__}: {p}"
        )
    return result


def load_json_from_string(raw: str) -> dict:
    """Parse a JSON object from a string.

    Strips surrounding whitespace, one pair of outer single quotes, and a
    leading BOM character, so strings from PowerShell pipelines parse.

    Raises:
        ConfigLoadError: If the string is not valid JSON or not an object.
    """
    original_raw = raw
    raw = raw.strip()
    if len(raw) >= 2 and raw.startswith("'") and raw.endswith("'"):
        raw = raw[1:-1].strip()
    if raw.startswith("\ufeff"):
        raw = raw[1:]
    try:
        result = json.loads(raw)
    except json.JSONDecodeError as exc:
        snippet = original_raw[:120]
        if len(original_raw) > 120:
            snippet += "..."
        raise ConfigLoadError(
            f"config string is not valid JSON: {exc} (raw_prefix={snippet!r})"
        ) from exc

    if not isinstance(result, dict):
        raise ConfigLoadError(
            f"config string must be a JSON object, got {type(result).__name__}"
        )
    return result


def config_from_mapping(data: Mapping[str, Any], base: Optional[TradingConfig] = None) -> TradingConfig:
    """Overlay *data* onto *base* (defaults when ``None``).

    Raises:
        ConfigLoadError: Unknown keys or values that do not coerce.
    """
    known = {f.name for f in fields(TradingConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigLoadError(f"unknown config keys: {unknown}")
    overrides = {name: _coerce(name, value) for name, value in data.items()}
    return replace(base or TradingConfig(), **overrides)


def _env_overrides(env: Mapping[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for f in fields(TradingConfig):
        value = env.get(ENV_PREFIX + f.name.upper())
        if value not in (None, ""):
            out[f.name] = value
    return out


def load_trading_config(
    *,
    config_path: Union[str, Path, None] = None,
    config_json: Union[str, None] = None,
    env: Optional[Mapping[str, str]] = None,
) -> TradingConfig:
    """Build a :class:`TradingConfig` from a file or JSON string plus env overrides.

    At most one of ``config_path`` and ``config_json`` may be provided.

    Raises:
        ConfigLoadError: If both sources are provided or loading fails.
    """
    if config_path is not None and config_json is not None:
        raise ConfigLoadError("Provide only one of config_path or config_json, not both.")

    data: dict = {}
    if config_path is not None:
        data = load_json_from_path(config_path)
    elif config_json is not None:
        data = load_json_from_string(config_json)

    config = config_from_mapping(data)
    overrides = _env_overrides(os.environ if env is None else env)
    if overrides:
        config = config_from_mapping(overrides, base=config)
    return config


def resolve_data_dir(explicit: Union[str, Path, None] = None) -> Path:
    """Account store root: explicit path, else ``$TWTRADE_DATA_DIR``, else ``artifacts/accounts``."""
    if explicit is not None:
        return Path(explicit)
    env_root = os.getenv(DATA_DIR_ENV)
    if env_root:
        return Path(env_root)
    return DEFAULT_DATA_DIR
