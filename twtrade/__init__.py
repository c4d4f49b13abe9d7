"""twtrade: Taiwan-stock paper-trading accounts."""

__version__ = "0.1.0"

__all__ = ["__version__"]
