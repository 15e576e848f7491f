"""Query executor adapters - the boundary to the row store."""

import os
import re
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

try:
    import pyodbc
    PYODBC_AVAILABLE = True
except ImportError:
    PYODBC_AVAILABLE = False

from .errors import QueryTimeout


logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("datatable_audit")


@runtime_checkable
class QueryExecutorAdapter(Protocol):
    """
    Two-method contract the pipeline needs from a relational engine.

    Both methods take qmark-style SQL (?) and a sequence of bound values.
    Failures are raised as exceptions; the pipeline wraps them.
    """

    def execute(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        ...

    def scalar(self, sql: str, params: Sequence[Any]) -> int:
        ...


def _rows_to_dicts(cursor) -> List[Dict[str, Any]]:
    """Convert fetched rows to dicts keyed by result column name."""
    columns = [desc[0] for desc in cursor.description]
    result = []
    for row in cursor.fetchall():
        row_dict = {}
        for i, col in enumerate(columns):
            value = row[i]
            # Convert datetime to string for JSON serialization
            if isinstance(value, datetime):
                value = value.isoformat()
            row_dict[col] = value
        result.append(row_dict)
    return result


def _first_value(cursor) -> int:
    row = cursor.fetchone()
    if row is None or row[0] is None:
        return 0
    return int(row[0])


class PyodbcExecutor:
    """
    ODBC-backed adapter with connection reuse.

    Uses simple connection health checks and auto-reconnection.
    """

    def __init__(self, database: str, credentials_env_key: str):
        if not PYODBC_AVAILABLE:
            logger.warning("pyodbc not available - SQL queries will fail")

        # Validate database name to prevent injection
        if database and not re.match(r'^[a-zA-Z0-9_]+$', database):
            raise ValueError(
                f"Invalid database name '{database}': "
                "must contain only alphanumeric characters and underscores"
            )

        self.database = database
        self.credentials_env_key = credentials_env_key
        self._connection: Optional[Any] = None
        self._lock = threading.Lock()

    def execute(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._get_connection().cursor()
            try:
                cursor.execute(sql, tuple(params))
                return _rows_to_dicts(cursor)
            finally:
                cursor.close()

    def scalar(self, sql: str, params: Sequence[Any]) -> int:
        with self._lock:
            cursor = self._get_connection().cursor()
            try:
                cursor.execute(sql, tuple(params))
                return _first_value(cursor)
            finally:
                cursor.close()

    def _connection_string(self) -> str:
        conn_string = os.getenv(self.credentials_env_key)
        if not conn_string:
            raise ValueError(
                f"Connection string not found in environment: {self.credentials_env_key}"
            )

        # Append database to connection string if not already present
        if "Database=" not in conn_string and self.database:
            conn_string = f"{conn_string};Database={self.database}"
        return conn_string

    def _get_connection(self) -> Any:
        """
        Get or create the database connection with a health check.

        Raises:
            RuntimeError: If pyodbc is not installed
            ValueError: If the connection string is not found
        """
        if not PYODBC_AVAILABLE:
            raise RuntimeError("pyodbc not installed - cannot execute SQL queries")

        if self._connection is None:
            logger.debug(f"Creating database connection: {self.database}")
            self._connection = pyodbc.connect(self._connection_string())
            return self._connection

        # Health check existing connection (simple ping)
        try:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1")
            cursor.close()
            return self._connection
        except Exception as e:
            # Connection is stale - reconnect
            logger.warning(f"Connection to {self.database} is stale, reconnecting: {e}")
            try:
                self._connection.close()
            except Exception as close_error:
                logger.debug(f"Ignoring close error on stale connection: {close_error}")

            self._connection = pyodbc.connect(self._connection_string())
            return self._connection

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self._connection is None:
                return
            try:
                self._connection.close()
                logger.debug(f"Closed connection: {self.database}")
            except Exception as e:
                logger.error(f"Error closing connection {self.database}: {e}")
            self._connection = None


class SqliteExecutor:
    """Adapter over the sqlite3 driver (local files and in-memory stores)."""

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._connection = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def execute(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._connection.execute(sql, tuple(params))
            try:
                return _rows_to_dicts(cursor)
            finally:
                cursor.close()

    def scalar(self, sql: str, params: Sequence[Any]) -> int:
        with self._lock:
            cursor = self._connection.execute(sql, tuple(params))
            try:
                return _first_value(cursor)
            finally:
                cursor.close()

    def close(self):
        with self._lock:
            self._connection.close()


class TimeoutExecutor:
    """
    Runs each call of a wrapped adapter under a time limit.

    A call that overruns raises QueryTimeout. The underlying driver call is
    not cancelled; it finishes in the worker thread and its result is dropped.
    """

    def __init__(self, adapter: QueryExecutorAdapter, timeout_seconds: float, max_workers: int = 8):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.adapter = adapter
        self.timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="datatable-query")

    def _call(self, method: str, sql: str, params: Sequence[Any]):
        future = self._pool.submit(getattr(self.adapter, method), sql, params)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            raise QueryTimeout(
                f"Query exceeded {self.timeout_seconds}s", sql=sql, params=params
            )

    def execute(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        return self._call('execute', sql, params)

    def scalar(self, sql: str, params: Sequence[Any]) -> int:
        return self._call('scalar', sql, params)

    def close(self):
        self._pool.shutdown(wait=False)
        close = getattr(self.adapter, 'close', None)
        if close is not None:
            close()


def audit_log(context: Any, kind: str, sql: str, params: Sequence[Any],
              success: bool, row_count: int = 0, error: Optional[str] = None):
    """Log one executed statement for the audit trail (full SQL and params)."""
    audit_logger.info(
        f"{context} {kind} sql={sql!r} params={tuple(params)!r} "
        f"success={success} rows={row_count} error={error}"
    )
