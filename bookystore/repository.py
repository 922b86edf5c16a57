"""Database repository: connections, transactions, advisory locks and migrations."""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from types import TracebackType

from bookystore.accounting import AccountingQueries
from bookystore.filings import FilingQueries
from bookystore.migrations import apply_schema, run_migrations
from bookystore.records import LockBusyError
from bookystore.tax import TaxQueries
from bookystore.webhooks import WebhookQueries

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

_LOCK_TABLE = "advisory_locks_held"


class Queries(AccountingQueries, FilingQueries, TaxQueries, WebhookQueries):
    """Every store query, bound to one database connection."""


def _check_key(name: str, value: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an integer")
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"{name} {value} is outside the 32-bit signed range")
    return value


class AdvisoryLock:
    """A held advisory lock; release it once, or use it as a context manager."""

    def __init__(self, connection: sqlite3.Connection, key1: int, key2: int) -> None:
        self._connection = connection
        self.key1 = key1
        self.key2 = key2

    def release(self) -> None:
        """Give the lock up; raises RuntimeError when it was not held."""
        cursor = self._connection.execute(
            f"DELETE FROM {_LOCK_TABLE} WHERE key1 = ? AND key2 = ?",
            (self.key1, self.key2),
        )
        if cursor.rowcount != 1:
            raise RuntimeError("advisory lock was not held")

    def __enter__(self) -> AdvisoryLock:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class Repository:
    """Owns one database connection and hands out query objects over it.

    Statements issued through :meth:`queries` take effect immediately;
    :meth:`transaction` groups them so that they commit or roll back together.
    """

    def __init__(self, database: str | os.PathLike[str] = ":memory:", *, create_schema: bool = True) -> None:
        self._connection = sqlite3.connect(os.fspath(database), isolation_level=None)
        if create_schema:
            apply_schema(self._connection)

    def __enter__(self) -> Repository:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection."""
        self._connection.close()

    def ping(self) -> None:
        """Check that the database answers; raises when it does not."""
        self._connection.execute("SELECT 1").fetchone()

    def queries(self) -> Queries:
        """Queries that run outside any transaction."""
        return Queries(self._connection)

    @contextmanager
    def transaction(self) -> Iterator[Queries]:
        """Run the block in a transaction: commit on success, roll back on error."""
        self._connection.execute("BEGIN")
        try:
            yield Queries(self._connection)
        except BaseException:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
            raise
        self._connection.execute("COMMIT")

    def acquire_advisory_lock(self, key1: int, key2: int) -> AdvisoryLock:
        """Take the lock named by the two keys without waiting.

        Raises LockBusyError when the lock is already held.
        """
        _check_key("key1", key1)
        _check_key("key2", key2)
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {_LOCK_TABLE} ("
            "key1 INTEGER NOT NULL, key2 INTEGER NOT NULL, PRIMARY KEY (key1, key2))"
        )
        cursor = self._connection.execute(
            f"INSERT OR IGNORE INTO {_LOCK_TABLE} (key1, key2) VALUES (?, ?)",
            (key1, key2),
        )
        if cursor.rowcount != 1:
            raise LockBusyError()
        return AdvisoryLock(self._connection, key1, key2)

    def run_migrations(self, directory: str | os.PathLike[str]) -> None:
        """Apply the SQL migration files in ``directory`` not yet applied."""
        run_migrations(self._connection, directory)