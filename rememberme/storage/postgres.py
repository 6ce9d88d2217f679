from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from rememberme.logging import get_logger
from rememberme.service.errors import ConfigurationError
from rememberme.storage.common import CompareResult, expiry_cutoff, tokens_match
from rememberme.storage.errors import (
    InvalidTableFormatError,
    StoreTimeoutError,
    TableNotInitializedError,
)
from rememberme.storage.models import Login
from rememberme.storage.schema import clear_table, drop_table, setup_table

DEFAULT_TIMEOUT_SECONDS = 5.0

# Errors that only show up when a row is written into a table of another shape
_FORMAT_ERRORS = (
    errors.UndefinedColumn,
    errors.DatatypeMismatch,
    errors.InvalidTextRepresentation,
    errors.InvalidDatetimeFormat,
    errors.NotNullViolation,
    errors.StringDataRightTruncation,
)


class PostgresLoginStore:
    """Login store backed by a Postgres table keyed by ``(username, serial)``.

    Every public method runs in a single transaction: the pooled connection
    block commits on success and rolls back on error. Writes replace the row
    by deleting any existing one for the key before inserting, and
    ``compare_and_put`` locks the row with ``SELECT ... FOR UPDATE`` so two
    requests presenting the same token are serialized by Postgres.
    """

    def __init__(
        self,
        dsn: str,
        table: str = "logins",
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        pool: Optional[ConnectionPool] = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        if not table:
            raise ConfigurationError(reason="no_table")
        self.dsn = dsn
        self.table = table
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout * 1000)}",
            },
        )

    @contextmanager
    def _transaction(self, *, write: bool = False) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except errors.UndefinedTable as exc:
            self.logger.error("login_table_missing", table=self.table)
            raise TableNotInitializedError(self.table) from exc
        except (errors.QueryCanceled, PoolTimeout) as exc:
            self.logger.error(
                "postgres_store_timeout", table=self.table, timeout=self.timeout
            )
            raise StoreTimeoutError(
                f"login table {self.table!r} did not answer within {self.timeout}s",
                {"table": self.table},
            ) from exc
        except _FORMAT_ERRORS as exc:
            if not write:
                raise
            self.logger.error(
                "login_table_invalid_format", table=self.table, error=str(exc)
            )
            raise InvalidTableFormatError(self.table, type(exc).__name__) from exc

    def _sql(self, template: str) -> sql.Composed:
        return sql.SQL(template).format(table=sql.Identifier(self.table))

    @staticmethod
    def _parse_ts(value: Any) -> datetime:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def _login_from_row(self, row: Dict[str, Any]) -> Login:
        return Login(
            username=row["username"],
            serial=row["serial"],
            token=row["token"],
            sid=row.get("sid"),
            created_at=self._parse_ts(row["created_at"]),
            last_login=self._parse_ts(row["last_login"]),
            last_ip=row.get("last_ip"),
            last_useragent=row.get("last_useragent") or "",
        )

    def _replace_row(self, conn, login: Login) -> None:
        conn.execute(
            self._sql("DELETE FROM {table} WHERE username = %s AND serial = %s"),
            (login.username, login.serial),
        )
        conn.execute(
            self._sql(
                """
                INSERT INTO {table} (username, serial, token, sid, created_at, last_login, last_ip, last_useragent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """
            ),
            (
                login.username,
                login.serial,
                login.token,
                login.sid,
                login.created_at,
                login.last_login,
                login.last_ip,
                login.last_useragent,
            ),
        )

    def list_user_logins(self, username: str) -> List[Login]:
        with self._transaction() as conn:
            rows = conn.execute(
                self._sql("SELECT * FROM {table} WHERE username = %s"), (username,)
            ).fetchall()
        return [self._login_from_row(row) for row in rows]

    def get(self, username: str, serial: str) -> Optional[Login]:
        with self._transaction() as conn:
            row = conn.execute(
                self._sql("SELECT * FROM {table} WHERE username = %s AND serial = %s"),
                (username, serial),
            ).fetchone()
        if not row:
            return None
        return self._login_from_row(row)

    def put(self, login: Login) -> None:
        with self._transaction(write=True) as conn:
            self._replace_row(conn, login)

    def compare_and_put(self, login: Login, expected_token: str) -> CompareResult:
        with self._transaction(write=True) as conn:
            row = conn.execute(
                self._sql(
                    "SELECT token FROM {table} WHERE username = %s AND serial = %s FOR UPDATE"
                ),
                (login.username, login.serial),
            ).fetchone()
            if not row:
                return CompareResult.MISSING
            if not tokens_match(row["token"], expected_token):
                return CompareResult.MISMATCH
            self._replace_row(conn, login)
        return CompareResult.WRITTEN

    def delete(self, username: str, serial: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                self._sql("DELETE FROM {table} WHERE username = %s AND serial = %s"),
                (username, serial),
            )

    def clean_old_logins(self, max_age: int) -> List[Login]:
        cutoff = expiry_cutoff(max_age)
        with self._transaction() as conn:
            rows = conn.execute(
                self._sql("SELECT * FROM {table} WHERE last_login < %s FOR UPDATE"),
                (cutoff,),
            ).fetchall()
            for row in rows:
                conn.execute(
                    self._sql("DELETE FROM {table} WHERE username = %s AND serial = %s"),
                    (row["username"], row["serial"]),
                )
        expired = [self._login_from_row(row) for row in rows]
        if expired:
            self.logger.info(
                "postgres_logins_expired", table=self.table, count=len(expired)
            )
        return expired

    # table management
    def setup(self) -> bool:
        return setup_table(self.pool, self.table)

    def clear(self) -> None:
        clear_table(self.pool, self.table)

    def drop(self) -> None:
        drop_table(self.pool, self.table)

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresLoginStore"]
