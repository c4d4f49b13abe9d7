"""Account record storage collaborators.

Storage works on wire payloads (JSON-safe dicts); decoding into
:class:`~.records.UserAccounts` is the account service's job.  Every
implementation exposes the same two calls::

    load(account_key) -> dict | None     # None when no record exists
    save(account_key, payload) -> None   # idempotent upsert; raises StorageError

Implementations:

* :class:`InMemoryStorage` : process-local dict; tests and ephemeral sessions.
* :class:`JsonFileStorage` : one ``<key>.json`` per user under a root dir,
  written atomically (temp file + ``os.replace``).

The HTTP-backed store lives in :mod:`.remote`.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol, Union

logger = logging.getLogger(__name__)

_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.@-]+")


class StorageError(RuntimeError):
    """Raised when a record cannot be read or written."""


class AccountStorage(Protocol):
    def load(self, account_key: str) -> Optional[dict[str, Any]]: ...

    def save(self, account_key: str, payload: dict[str, Any]) -> None: ...


def safe_key(account_key: str) -> str:
    """Filesystem-safe form of *account_key*.

    Raises:
        StorageError: The key is empty after sanitising.
    """
    cleaned = _SAFE_KEY_RE.sub("_", str(account_key).strip()).strip(".")
    if not cleaned:
        raise StorageError(f"invalid account key: {account_key!r}")
    return cleaned


class InMemoryStorage:
    """Dict-backed storage.  Payloads are deep-copied in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}

    def load(self, account_key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            payload = self._records.get(account_key)
            return copy.deepcopy(payload) if payload is not None else None

    def save(self, account_key: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._records[account_key] = copy.deepcopy(payload)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._records)


class JsonFileStorage:
    """One JSON file per account under *root*."""

    def __init__(self, root: Union[str, Path]) -> None:
        self._root = Path(root)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, account_key: str) -> Path:
        return self._root / f"{safe_key(account_key)}.json"

    def load(self, account_key: str) -> Optional[dict[str, Any]]:
        path = self.path_for(account_key)
        try:
            # utf-8-sig: records hand-edited on Windows may carry a BOM
            text = path.read_text(encoding="utf-8-sig")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"cannot read {path}: {exc}") from exc

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageError(f"record is not valid JSON ({path}): {exc}") from exc
        if not isinstance(payload, dict):
            raise StorageError(f"record must be a JSON object: {path}")
        return payload

    def save(self, account_key: str, payload: dict[str, Any]) -> None:
        path = self.path_for(account_key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(
                    json.dumps(payload, indent=2, ensure_ascii=False) + "\n",
                    encoding="utf-8",
                )
                os.replace(tmp_path, path)
            except OSError as exc:
                tmp_path.unlink(missing_ok=True)
                raise StorageError(f"cannot write {path}: {exc}") from exc
        logger.debug("Saved account record %s", path)

    def keys(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(p.stem for p in self._root.glob("*.json") if not p.name.startswith("."))
