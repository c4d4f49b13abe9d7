"""HTTP client for the record store: retries, exponential backoff, and jitter."""

import time
import random
import logging
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class HttpClient:
    """requests session wrapper that retries GET and PUT with exponential backoff.

    PUT is retried because every write this client makes is an idempotent
    upsert of a whole record.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
        retry_statuses: tuple = (429, 500, 502, 503, 504),
        total_timeout: Optional[float] = None,
    ):
        """
        Args:
            base_url: Base URL for all requests
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt
            backoff_factor: Base delay; attempt N waits backoff_factor * 2**N plus jitter
            retry_statuses: HTTP status codes that trigger a retry
            total_timeout: Wall-clock budget for one call, retries and waits
                included.  Attempts are shortened to fit and no wait starts
                that would end past it.  ``None`` means unbounded.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.retry_statuses = retry_statuses
        self.total_timeout = total_timeout

        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()

        # Every retry is counted by _request against the time budget, so the
        # adapter itself never retries.
        retry_strategy = Retry(
            total=0,
            allowed_methods=["GET", "PUT"],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    def _add_jitter(self, delay: float) -> float:
        """Add random jitter to delay (0-50% of delay)."""
        return delay + random.uniform(0, delay * 0.5)

    def _attempt_timeout(self, deadline: Optional[float]) -> Optional[float]:
        """Per-attempt timeout, or ``None`` once the budget is spent."""
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        return min(self.timeout, remaining)

    def _wait(
        self,
        attempt: int,
        reason: str,
        deadline: Optional[float],
        base_delay: Optional[float] = None,
    ) -> bool:
        """Sleep before the next attempt.  Returns False when no retry should follow."""
        if attempt >= self.max_retries:
            logger.warning("%s. Giving up after %d attempts", reason, attempt + 1)
            return False
        if base_delay is None:
            base_delay = self.backoff_factor * (2**attempt)
        delay = self._add_jitter(base_delay)
        if deadline is not None and time.monotonic() + delay >= deadline:
            logger.warning("%s. Time budget of %.2fs exhausted", reason, self.total_timeout)
            return False
        logger.warning(
            "%s. Waiting %.2fs before retry. Attempt %d/%d",
            reason, delay, attempt + 1, self.max_retries + 1,
        )
        time.sleep(delay)
        return True

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Any = None,
        headers: Optional[dict] = None,
    ) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        deadline = None
        if self.total_timeout is not None:
            deadline = time.monotonic() + self.total_timeout

        for attempt in range(self.max_retries + 1):
            timeout = self._attempt_timeout(deadline)
            if timeout is None:
                break
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=timeout,
                )
            except requests.exceptions.Timeout:
                if not self._wait(attempt, f"{method} {url} timed out", deadline):
                    break
                continue
            except requests.exceptions.ConnectionError as exc:
                if not self._wait(attempt, f"Connection error on {method} {url}: {exc}", deadline):
                    break
                continue

            if response.status_code == 429:
                retry_after = float(response.headers.get("Retry-After", 1))
                if not self._wait(attempt, "Rate limited (429)", deadline, base_delay=retry_after):
                    break
                continue
            if response.status_code in self.retry_statuses:
                if not self._wait(attempt, f"Server error ({response.status_code})", deadline):
                    break
                continue
            return response

        raise requests.exceptions.RetryError(
            f"Max retries ({self.max_retries}) exceeded for {method} {url}"
        )

    def get(
        self,
        path: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> requests.Response:
        """GET *path*; non-retryable statuses (404 included) are returned as is.

        Raises:
            requests.RequestException: If all retries fail
        """
        return self._request("GET", path, params=params, headers=headers)

    def put_json(
        self,
        path: str,
        payload: Any,
        headers: Optional[dict] = None,
    ) -> Any:
        """PUT a JSON body and return the parsed JSON response (``None`` if empty).

        Raises:
            requests.RequestException: If the request fails or returns an error status
        """
        response = self._request("PUT", path, json_body=payload, headers=headers)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()
