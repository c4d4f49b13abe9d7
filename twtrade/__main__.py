"""Module entrypoint for running twtrade CLI commands.

Usage: python -m twtrade <command> [options]
"""

from __future__ import annotations

import sys
from typing import Optional


def print_usage() -> None:
    """Print CLI usage information."""
    print("twtrade - Taiwan-stock paper-trading accounts")
    print("")
    print("Usage: twtrade <command> [options]")
    print("       python -m twtrade <command> [options]")
    print("")
    print("Commands:")
    print("  account           Inspect and trade a paper account (show, buy, sell, tick, ...)")
    print("  serve             Run the account HTTP API")
    print("")
    print("Options:")
    print("  -h, --help        Show this help message")
    print("  --version         Show version information")
    print("")
    print("Examples:")
    print("  twtrade account show --user amy")
    print("  twtrade account buy --user amy --symbol 2330 --quantity 1 --price 580")
    print("  twtrade account sell --user amy --symbol 2330 --quantity 200 --odd --price 600 --yes")
    print("  twtrade account leaderboard --sort-by profit")
    print("  twtrade serve --port 8000")


def print_version() -> None:
    """Print version information."""
    from twtrade import __version__
    print(f"twtrade {__version__}")


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entrypoint."""
    if argv is None:
        argv = sys.argv[1:]

    if len(argv) < 1:
        print_usage()
        return 1

    command = argv[0]

    if command in ("-h", "--help"):
        print_usage()
        return 0

    if command in ("-v", "--version"):
        print_version()
        return 0

    if command == "account":
        from tools.cli.account import main as account_main
        return account_main(argv[1:])

    if command == "serve":
        try:
            from services.api.main import main as serve_main
        except ImportError as exc:
            print(f"Error: API dependencies missing ({exc}). Run:  pip install -e .", file=sys.stderr)
            return 1
        return serve_main(argv[1:])

    print(f"Unknown command: {command}")
    print_usage()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
