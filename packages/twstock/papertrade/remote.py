"""HTTP record store: remote replica for sync, usable as primary storage too.

Talks to the ``/api/records/{key}`` endpoints served by ``services.api.main``
(or any server with the same contract)::

    GET /api/records/{key}  -> 200 {"record": {...}} | 404
    PUT /api/records/{key}  <- {"record": {...}}     -> 200 {"ok": true}

Network errors surface as :class:`RemoteSyncError` (a :class:`StorageError`),
which the account service treats as a soft, retryable failure.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

import requests

from ..http_client import HttpClient
from .storage import StorageError

logger = logging.getLogger(__name__)

_BUDGET_SHARE = 0.9


class RemoteSyncError(StorageError):
    """Raised when the remote record store is unreachable or misbehaves."""


class HttpAccountStore:
    """Storage + remote-sync collaborator backed by an HTTP record store."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_retries: int = 2,
        client: Optional[HttpClient] = None,
        total_timeout: Optional[float] = None,
        backoff_factor: float = 0.5,
    ) -> None:
        self.client = client or HttpClient(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            total_timeout=total_timeout,
        )

    @classmethod
    def within_budget(
        cls, base_url: str, io_timeout_seconds: float, max_retries: int = 2
    ) -> "HttpAccountStore":
        """Build a store whose calls, retries included, finish inside *io_timeout_seconds*.

        The client stops at 90% of the budget so its worker thread is free
        again before the caller's own timeout fires.
        """
        total = io_timeout_seconds * _BUDGET_SHARE
        return cls(
            base_url,
            timeout=total / (max_retries + 1),
            max_retries=max_retries,
            total_timeout=total,
            backoff_factor=min(0.5, total / 10),
        )

    @staticmethod
    def _path(account_key: str) -> str:
        return f"/api/records/{quote(str(account_key), safe='')}"

    def fetch_remote_ledger(self, account_key: str) -> Optional[dict[str, Any]]:
        """Return the remote record payload, or ``None`` when it does not exist.

        Raises:
            RemoteSyncError: Transport failure or malformed response.
        """
        try:
            response = self.client.get(self._path(account_key))
        except requests.RequestException as exc:
            raise RemoteSyncError(f"remote fetch failed for {account_key!r}: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RemoteSyncError(
                f"remote fetch for {account_key!r} returned {response.status_code}: {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteSyncError(f"remote record for {account_key!r} is not JSON") from exc

        record = body.get("record") if isinstance(body, dict) else None
        if record is not None and not isinstance(record, dict):
            raise RemoteSyncError(f"remote record for {account_key!r} is not an object")
        return record

    def load(self, account_key: str) -> Optional[dict[str, Any]]:
        return self.fetch_remote_ledger(account_key)

    def save(self, account_key: str, payload: dict[str, Any]) -> None:
        """Upsert the record remotely.

        Raises:
            RemoteSyncError: Transport failure or error status.
        """
        try:
            self.client.put_json(self._path(account_key), {"record": payload})
        except requests.RequestException as exc:
            raise RemoteSyncError(f"remote save failed for {account_key!r}: {exc}") from exc
        logger.debug("Pushed account record %r to remote store", account_key)
