from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

import pytest


_ISOLATED_ENV_VARS = (
    "TWTRADE_DATA_DIR",
    "TWTRADE_FEE_RATE",
    "TWTRADE_TAX_RATE",
    "TWTRADE_LOT_SIZE",
    "TWTRADE_STARTING_BALANCE",
    "TWTRADE_SETTLEMENT_DAYS",
    "TWTRADE_SETTLEMENT_HOUR",
    "TWTRADE_TIMEZONE",
    "TWTRADE_TICK_INTERVAL_SECONDS",
    "TWTRADE_SYNC_INTERVAL_SECONDS",
    "TWTRADE_IO_TIMEOUT_SECONDS",
    "TWTRADE_CHANGE_EPSILON",
)

_PREVIOUS_CWD: Path | None = None
_PREVIOUS_ENV: dict[str, str | None] = {}
_WORKSPACE_ROOT: Path | None = None


def pytest_configure(config: pytest.Config) -> None:
    """Run every test from a throwaway workspace with TWTRADE_* env cleared.

    The account store default (artifacts/accounts) is relative to the cwd,
    so nothing a test writes lands in the repo.
    """
    global _PREVIOUS_CWD, _PREVIOUS_ENV, _WORKSPACE_ROOT
    repo_root = Path(__file__).resolve().parent.parent
    workspace_root = repo_root / ".tmp" / "test-workspaces" / uuid.uuid4().hex
    data_root = workspace_root / "artifacts" / "accounts"
    data_root.mkdir(parents=True, exist_ok=True)

    _PREVIOUS_CWD = Path.cwd()
    _PREVIOUS_ENV = {key: os.environ.get(key) for key in _ISOLATED_ENV_VARS}
    _WORKSPACE_ROOT = workspace_root

    for key in _ISOLATED_ENV_VARS:
        os.environ.pop(key, None)
    os.environ["TWTRADE_DATA_DIR"] = str(data_root)
    os.chdir(workspace_root)


def pytest_unconfigure(config: pytest.Config) -> None:
    global _PREVIOUS_CWD, _PREVIOUS_ENV, _WORKSPACE_ROOT
    if _PREVIOUS_CWD is not None:
        os.chdir(_PREVIOUS_CWD)
    for key, value in _PREVIOUS_ENV.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    if _WORKSPACE_ROOT is not None:
        shutil.rmtree(_WORKSPACE_ROOT, ignore_errors=True)
