"""Taiwan-stock paper-trading packages."""

from .http_client import HttpClient

__all__ = ["HttpClient"]
