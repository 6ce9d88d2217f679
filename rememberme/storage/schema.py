"""Create, clear and drop the Postgres login table.

All three helpers are idempotent. The store itself never creates its table;
deployments run ``scripts/login_table.py setup`` once.
"""

from __future__ import annotations

from typing import List, Tuple

from psycopg import sql

from rememberme.logging import get_logger
from rememberme.storage.errors import TableExistsError

logger = get_logger(__name__)

# Column order matches the Login dataclass
LOGIN_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("username", "TEXT NOT NULL"),
    ("serial", "TEXT NOT NULL"),
    ("token", "TEXT NOT NULL"),
    ("sid", "TEXT"),
    ("created_at", "TIMESTAMPTZ NOT NULL"),
    ("last_login", "TIMESTAMPTZ NOT NULL"),
    ("last_ip", "TEXT"),
    ("last_useragent", "TEXT NOT NULL DEFAULT ''"),
)

LOGIN_COLUMN_NAMES: Tuple[str, ...] = tuple(name for name, _ in LOGIN_COLUMNS)


def existing_columns(conn, table: str) -> List[str]:
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    ).fetchall()
    return [row["column_name"] for row in rows]


def setup_table(pool, table: str) -> bool:
    """Create the login table and its indexes if absent.

    Returns ``True`` when the table was created, ``False`` when a compatible
    table was already there. Raises :class:`TableExistsError` when a table
    with the same name but other columns exists.
    """
    with pool.connection() as conn:
        columns = existing_columns(conn, table)
        if columns:
            if sorted(columns) != sorted(LOGIN_COLUMN_NAMES):
                raise TableExistsError(table, columns)
            logger.info("login_table_present", table=table)
            return False

        column_defs = sql.SQL(", ").join(
            sql.SQL("{} {}").format(sql.Identifier(name), sql.SQL(definition))
            for name, definition in LOGIN_COLUMNS
        )
        conn.execute(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {table} ({columns}, PRIMARY KEY (username, serial))"
            ).format(table=sql.Identifier(table), columns=column_defs)
        )
        for column in ("serial", "last_login"):
            conn.execute(
                sql.SQL("CREATE INDEX IF NOT EXISTS {index} ON {table} ({column})").format(
                    index=sql.Identifier(f"{table}_{column}_idx"),
                    table=sql.Identifier(table),
                    column=sql.Identifier(column),
                )
            )
    logger.info("login_table_created", table=table)
    return True


def clear_table(pool, table: str) -> None:
    """Delete every login row, keeping the table."""
    with pool.connection() as conn:
        if not existing_columns(conn, table):
            return
        conn.execute(sql.SQL("TRUNCATE {table}").format(table=sql.Identifier(table)))
    logger.info("login_table_cleared", table=table)


def drop_table(pool, table: str) -> None:
    with pool.connection() as conn:
        conn.execute(
            sql.SQL("DROP TABLE IF EXISTS {table}").format(table=sql.Identifier(table))
        )
    logger.info("login_table_dropped", table=table)


__all__ = [
    "LOGIN_COLUMNS",
    "LOGIN_COLUMN_NAMES",
    "existing_columns",
    "setup_table",
    "clear_table",
    "drop_table",
]
