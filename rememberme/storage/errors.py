from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for login store failures that must reach the integrator."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TableNotInitializedError(StoreError):
    """The login table does not exist; run the table setup first."""

    def __init__(self, table: str):
        super().__init__(
            f"Login table {table!r} does not exist. "
            "Run `python scripts/login_table.py setup` to create it.",
            {"table": table},
        )
        self.table = table


class InvalidTableFormatError(StoreError):
    """The login table exists but its columns do not match a Login."""

    def __init__(self, table: str, reason: str = ""):
        super().__init__(
            f"Login table {table!r} has an invalid format"
            + (f": {reason}" if reason else "")
            + ". Drop it and run the table setup again.",
            {"table": table},
        )
        self.table = table


class TableExistsError(StoreError):
    """Setup found a table with the same name but different columns."""

    def __init__(self, table: str, columns: Optional[list] = None):
        super().__init__(
            f"A table named {table!r} already exists with different columns.",
            {"table": table, "columns": columns or []},
        )
        self.table = table


class StoreTimeoutError(StoreError):
    """A store call did not complete within the configured timeout."""


class StoreClosedError(StoreError):
    """A request was sent to an in-memory store that has been stopped."""


__all__ = [
    "StoreError",
    "TableNotInitializedError",
    "InvalidTableFormatError",
    "TableExistsError",
    "StoreTimeoutError",
    "StoreClosedError",
]
