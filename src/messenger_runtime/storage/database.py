"""
messenger-runtime — persistent store handle.

File: src/messenger_runtime/storage/database.py

Purpose
- Own a bounded pool of SQLite connections to one local store file.
- Provide explicit all-or-nothing transactions, busy retry, and an error taxonomy
  that the migrator and the entity stores share.

Functional requirements
- Must never leave a pooled connection inside an open transaction.
- Must expose the persisted schema version (``PRAGMA user_version``).

Non-functional requirements
- Must avoid long-lived locks that block concurrent readers (WAL journal mode).
"""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Final, Literal, NoReturn, TypeAlias

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None
TransactionMode: TypeAlias = Literal["deferred", "immediate", "exclusive"]

DEFAULT_POOL_SIZE: Final[int] = 4
MAX_POOL_SIZE: Final[int] = 16
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25
TRANSACTION_MODES: Final[tuple[TransactionMode, ...]] = ("deferred", "immediate", "exclusive")

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Base class for local store errors."""


class StoreBusyError(StoreError):
    """Raised when bounded busy retries or pool waits are exhausted."""


class StoreCorruptionError(StoreError):
    """Raised when SQLite reports possible corruption."""


class StoreHandle:
    """Pooled SQLite handle shared by the migrator and all entity stores."""

    def __init__(
        self,
        path: str | Path,
        *,
        pool_size: int = DEFAULT_POOL_SIZE,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if pool_size <= 0:
            raise ValueError("pool_size must be > 0")
        if pool_size > MAX_POOL_SIZE:
            raise ValueError(f"pool_size must be <= {MAX_POOL_SIZE}")
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._pool_size = pool_size
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms

        self._idle: queue.Queue[sqlite3.Connection] = queue.Queue(maxsize=pool_size)
        self._checked_out: set[sqlite3.Connection] = set()
        self._created_count = 0
        self._pool_lock = threading.Lock()
        self._savepoint_lock = threading.Lock()
        self._savepoint_counter = 0
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def exists(self) -> bool:
        """Return ``True`` when the store file exists and carries a schema version."""

        if not self._path.exists():
            return False
        return self.user_version() > 0

    def persisted_version(self) -> int:
        """Read the schema version through a read-only connection; a missing file is 0.

        Unlike pooled connections this never switches the journal mode, so a
        store from a newer build can be inspected without being modified.
        """

        if not self._path.exists():
            return 0
        try:
            conn = sqlite3.connect(
                f"{self._path.resolve().as_uri()}?mode=ro",
                uri=True,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="read schema version")
        try:
            row = self._execute_with_retry(
                conn, "PRAGMA user_version", (), operation="read schema version"
            ).fetchone()
        finally:
            conn.close()
        return int(row[0]) if row else 0

    # -- connection pool -------------------------------------------------

    def acquire(self) -> sqlite3.Connection:
        """Borrow a connection, creating one while the pool is below capacity."""

        if self._closed:
            raise StoreError(f"store handle for {self._path} is closed")

        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            pass
        else:
            with self._pool_lock:
                self._checked_out.add(conn)
            return conn

        with self._pool_lock:
            if self._created_count < self._pool_size:
                self._created_count += 1
                try:
                    conn = self._open_connection()
                except Exception:
                    self._created_count -= 1
                    raise
                self._checked_out.add(conn)
                return conn

        try:
            conn = self._idle.get(timeout=self._busy_timeout_ms / 1000.0)
        except queue.Empty:
            raise StoreBusyError(
                f"timed out waiting for a pooled connection to {self._path} "
                f"(pool size: {self._pool_size})"
            ) from None
        with self._pool_lock:
            self._checked_out.add(conn)
        return conn

    def release(self, conn: sqlite3.Connection) -> None:
        """Return a borrowed connection to the pool."""

        with self._pool_lock:
            self._checked_out.discard(conn)

        if conn.in_transaction:
            # A caller leaked an open transaction; never hand it to the next borrower.
            logger.warning("rolling back transaction left open on %s", self._path)
            conn.rollback()

        if self._closed:
            conn.close()
            return

        try:
            self._idle.put_nowait(conn)
        except queue.Full:
            conn.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def stats(self) -> dict[str, int | bool]:
        with self._pool_lock:
            return {
                "created": self._created_count,
                "idle": self._idle.qsize(),
                "checked_out": len(self._checked_out),
                "pool_size": self._pool_size,
                "closed": self._closed,
            }

    def close(self) -> None:
        """Close idle connections; checked-out connections close on release."""

        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()

        with self._pool_lock:
            if self._checked_out:
                logger.warning(
                    "closing store %s with %d checked-out connection(s)",
                    self._path,
                    len(self._checked_out),
                )
            self._created_count = len(self._checked_out)

    def __enter__(self) -> StoreHandle:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    # -- transactions and statements --------------------------------------

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        mode: TransactionMode = "immediate",
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if mode not in TRANSACTION_MODES:
            allowed = ", ".join(TRANSACTION_MODES)
            raise ValueError(f"mode must be one of: {allowed}; got {mode!r}")

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, mode=mode) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except BaseException:
                self._execute_with_retry(
                    conn,
                    f"ROLLBACK TO SAVEPOINT {savepoint}",
                    (),
                    operation="rollback to savepoint",
                )
                self._execute_with_retry(
                    conn,
                    f"RELEASE SAVEPOINT {savepoint}",
                    (),
                    operation="release savepoint",
                )
                raise
            else:
                self._execute_with_retry(
                    conn,
                    f"RELEASE SAVEPOINT {savepoint}",
                    (),
                    operation="release savepoint",
                )
            return

        self._execute_with_retry(conn, f"BEGIN {mode.upper()}", (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="execute statement")
            return cursor.rowcount

        with self.transaction() as tx:
            cursor = self._execute_with_retry(tx, sql, params, operation="execute statement")
            return cursor.rowcount

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        params_list = [tuple(params) for params in params_iter]
        if conn is not None:
            return self._executemany_with_retry(conn, sql, params_list, operation="execute many")

        with self.transaction() as tx:
            return self._executemany_with_retry(tx, sql, params_list, operation="execute many")

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

    # -- schema version marker ----------------------------------------------

    def user_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        """Return the persisted schema version (0 for a store never stamped)."""

        row = self.query_one("PRAGMA user_version", conn=conn)
        if row is None:
            return 0
        value = row.get("user_version")
        if not isinstance(value, int):
            raise StoreError(f"user_version must be an integer for {self._path}")
        return value

    def set_user_version(self, version: int, *, conn: sqlite3.Connection) -> None:
        """Stamp the persisted schema version on ``conn`` (inside its transaction)."""

        if not isinstance(version, int) or isinstance(version, bool) or version < 0:
            raise ValueError(f"schema version must be a non-negative integer, got {version!r}")
        self._execute_with_retry(
            conn,
            f"PRAGMA user_version = {version}",
            (),
            operation="stamp schema version",
        )

    def table_names(self, *, conn: sqlite3.Connection | None = None) -> tuple[str, ...]:
        rows = self.query_all(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
            """,
            conn=conn,
        )
        return tuple(str(row["name"]) for row in rows)

    # -- maintenance ------------------------------------------------------

    def backup(self, destination: str | Path) -> Path:
        """Create a consistent snapshot using SQLite backup API."""

        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)

        target = sqlite3.connect(
            destination_path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            with self.connection() as source:
                source.backup(target)
            target.execute("PRAGMA foreign_keys=ON")
            target.execute("PRAGMA journal_mode=WAL")
        finally:
            target.close()

        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    # -- internals ----------------------------------------------------------

    def _open_connection(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="open connection")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except Exception:
            conn.close()
            raise
        return conn

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        self._execute_with_retry(conn, "PRAGMA foreign_keys=ON", (), operation="configure")
        self._execute_with_retry(
            conn, f"PRAGMA busy_timeout={self._busy_timeout_ms}", (), operation="configure"
        )
        journal_row = self._execute_with_retry(
            conn, "PRAGMA journal_mode=WAL", (), operation="configure"
        ).fetchone()
        if journal_row is None:
            raise StoreError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StoreError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _next_savepoint_name(self) -> str:
        with self._savepoint_lock:
            self._savepoint_counter += 1
            return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StoreBusyError(f"{operation} exhausted retries unexpectedly")

    def _executemany_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params_list: Sequence[SQLParams],
        *,
        operation: str,
    ) -> int:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                cursor = conn.executemany(sql, params_list)
                return cursor.rowcount
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StoreBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> NoReturn:
        if self._is_corruption_error(exc):
            raise StoreCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StoreHandle.integrity_check()` and restore from a backup if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StoreBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StoreError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "DEFAULT_POOL_SIZE",
    "MAX_POOL_SIZE",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StoreBusyError",
    "StoreCorruptionError",
    "StoreError",
    "StoreHandle",
    "TRANSACTION_MODES",
    "TransactionMode",
]
