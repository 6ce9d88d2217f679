#!/usr/bin/env python3
"""Create, clear or drop the Postgres login table.

Usage:
    python scripts/login_table.py setup
    python scripts/login_table.py clear --table logins
    DATABASE_URL=postgresql://... python scripts/login_table.py drop

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    LOGIN_TABLE: Table name (default: logins)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run(command: str, database_url: str, table: str) -> str:
    """Run one table command and return a status line."""
    # Import here to avoid loading config before arguments are parsed
    from rememberme.storage.postgres import PostgresLoginStore

    store = PostgresLoginStore(database_url, table, min_size=1, max_size=1)
    try:
        if command == "setup":
            created = store.setup()
            return f"Created login table {table!r}" if created else (
                f"Login table {table!r} already present"
            )
        if command == "clear":
            store.clear()
            return f"Cleared login table {table!r}"
        if command == "drop":
            store.drop()
            return f"Dropped login table {table!r}"
        raise ValueError(f"unknown command {command!r}")
    finally:
        store.close()


def main(argv: Optional[List[str]] = None) -> int:
    from rememberme.config import get_settings

    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Manage the persistent login table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("command", choices=["setup", "clear", "drop"])
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--table",
        default=settings.login_table,
        help="Login table name (or set LOGIN_TABLE env var)",
    )
    args = parser.parse_args(argv)

    if not args.table:
        print("Error: --table or LOGIN_TABLE environment variable required")
        return 1

    try:
        print(run(args.command, args.database_url, args.table))
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
