"""
SQL Server Connection
=====================

SQLAlchemy-backed executor and bulk loader, plus an engine factory for SQL
Server over pyodbc.
"""

import time
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import quote_plus

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from bulksync.connections.base import (
    AsyncBulkLoader,
    AsyncSqlExecutor,
    BulkLoader,
    ProgressCallback,
    Row,
    SqlExecutor,
    get_progress,
)
from bulksync.exceptions import ConnectionError, TransferError
from bulksync.utils.logging_context import get_logging_context


class SqlServerConnection:
    """
    SQL Server connection settings.

    Supports:
    - SQL authentication (username/password)
    - Azure Active Directory Managed Identity
    - Connection pooling
    """

    def __init__(
        self,
        server: str,
        database: str,
        driver: str = "ODBC Driver 18 for SQL Server",
        username: Optional[str] = None,
        password: Optional[str] = None,
        auth_mode: str = "sql",  # "sql", "aad_msi"
        port: int = 1433,
        timeout: int = 30,
    ):
        """
        Initialize SQL Server connection settings.

        Args:
            server: SQL server hostname
            database: Database name
            driver: ODBC driver name (default: ODBC Driver 18 for SQL Server)
            username: SQL auth username (required if auth_mode='sql')
            password: SQL auth password (required if auth_mode='sql')
            auth_mode: Authentication mode ('sql', 'aad_msi')
            port: SQL Server port (default: 1433)
            timeout: Connection timeout in seconds (default: 30)
        """
        self.server = server
        self.database = database
        self.driver = driver
        self.username = username
        self.password = password
        self.auth_mode = auth_mode
        self.port = port
        self.timeout = timeout
        self._engine: Optional[Engine] = None

    def validate(self) -> None:
        if not self.server:
            raise ValueError("SQL Server connection requires 'server'")
        if not self.database:
            raise ValueError("SQL Server connection requires 'database'")
        if self.auth_mode == "sql" and not (self.username and self.password):
            raise ValueError("SQL Server with auth_mode='sql' requires username and password")

    def odbc_dsn(self) -> str:
        """Build ODBC connection string.

        Example:
            >>> conn = SqlServerConnection(server="db.local", database="shop")
            >>> conn.odbc_dsn()
            'Driver={ODBC Driver 18 for SQL Server};Server=tcp:db.local,1433;...'
        """
        dsn = (
            f"Driver={{{self.driver}}};"
            f"Server=tcp:{self.server},{self.port};"
            f"Database={self.database};"
            f"Encrypt=yes;"
            f"TrustServerCertificate=yes;"
            f"Connection Timeout={self.timeout};"
        )

        if self.username and self.password:
            dsn += f"UID={self.username};PWD={self.password};"
        elif self.auth_mode == "aad_msi":
            dsn += "Authentication=ActiveDirectoryMsi;"

        return dsn

    def get_engine(self) -> Engine:
        """
        Get or create SQLAlchemy engine.

        Raises:
            ConnectionError: If the engine cannot connect
        """
        if self._engine is not None:
            return self._engine

        try:
            connection_url = f"mssql+pyodbc:///?odbc_connect={quote_plus(self.odbc_dsn())}"
            self._engine = create_engine(
                connection_url,
                pool_pre_ping=True,
                pool_recycle=3600,
                fast_executemany=True,
            )
            with self._engine.connect():
                pass
            return self._engine
        except SQLAlchemyError as e:
            self._engine = None
            raise ConnectionError(
                connection_name=f"SqlServer({self.server})",
                reason=f"Failed to create engine: {str(e)}",
                suggestions=self._get_error_suggestions(str(e)),
            ) from e

    def _get_error_suggestions(self, error_msg: str) -> List[str]:
        """Generate suggestions based on error message."""
        suggestions = []
        error_lower = error_msg.lower()

        if "login failed" in error_lower:
            suggestions.append("Check username and password")
            suggestions.append(f"Verify auth_mode is correct (current: {self.auth_mode})")

        if "firewall" in error_lower or "tcp provider" in error_lower:
            suggestions.append("Check server firewall rules")
            suggestions.append("Ensure client IP is allowed")

        if "driver" in error_lower:
            suggestions.append(f"Verify ODBC driver '{self.driver}' is installed")
            suggestions.append("On Linux: sudo apt-get install msodbcsql18")

        return suggestions


def _rows_to_dicts(result: Any) -> List[Row]:
    return [dict(row) for row in result.mappings().all()]


class SqlAlchemyExecutor(SqlExecutor):
    """
    Runs generated statements on an open SQLAlchemy connection.

    Statements go through `exec_driver_sql`, so they are not parsed for bind
    parameters. Nothing is committed; the caller owns the transaction.
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self.ctx = get_logging_context()

    def execute(self, sql: str) -> int:
        self.ctx.debug("Executing statement", sql=sql)
        result = self.connection.exec_driver_sql(sql)
        return max(result.rowcount, 0)

    def execute_scalar(self, sql: str) -> Any:
        return self.connection.exec_driver_sql(sql).scalar()

    def query(self, sql: str) -> List[Row]:
        return _rows_to_dicts(self.connection.exec_driver_sql(sql))

    def in_transaction(self) -> bool:
        return self.connection.in_transaction()


class AsyncSqlAlchemyExecutor(AsyncSqlExecutor):
    """Async twin of `SqlAlchemyExecutor` over an `AsyncConnection`."""

    def __init__(self, connection: AsyncConnection):
        self.connection = connection
        self.ctx = get_logging_context()

    async def execute(self, sql: str) -> int:
        self.ctx.debug("Executing statement", sql=sql)
        result = await self.connection.exec_driver_sql(sql)
        return max(result.rowcount, 0)

    async def execute_scalar(self, sql: str) -> Any:
        result = await self.connection.exec_driver_sql(sql)
        return result.scalar()

    async def query(self, sql: str) -> List[Row]:
        result = await self.connection.exec_driver_sql(sql)
        return _rows_to_dicts(result)

    def in_transaction(self) -> bool:
        return self.connection.in_transaction()


def build_insert_sql(destination_table: str, column_mapping: Dict[str, str]) -> str:
    columns = ", ".join("[" + c.replace("]", "]]") + "]" for c in column_mapping.values())
    params = ", ".join(f":p{i}" for i in range(len(column_mapping)))
    return f"INSERT INTO {destination_table} ({columns}) VALUES ({params})"


def iter_batches(rows: Iterable[Row], batch_size: int) -> Iterator[List[Row]]:
    iterator = iter(rows)
    while True:
        batch = list(islice(iterator, batch_size))
        if not batch:
            return
        yield batch


class _CopyProgress:
    """Tracks copied rows, the timeout and notification thresholds."""

    def __init__(
        self,
        destination: str,
        total: Optional[int],
        notify_after: Optional[int],
        timeout: Optional[int],
        callback: Optional[ProgressCallback],
    ):
        self.destination = destination
        self.total = total
        self.notify_after = notify_after
        self.timeout = timeout
        self.callback = callback
        self.copied = 0
        self.next_notify = notify_after
        self.started = time.monotonic()

    def check_timeout(self) -> None:
        if self.timeout and time.monotonic() - self.started > self.timeout:
            raise TransferError(
                self.destination,
                f"Bulk copy timed out after {self.timeout}s ({self.copied} rows copied)",
            )

    def advance(self, count: int) -> None:
        self.copied += count
        if self.callback is None:
            return
        if self.next_notify is None:
            self.callback(get_progress(self.total, self.copied))
            return
        if self.copied >= self.next_notify:
            self.callback(get_progress(self.total, self.copied))
            while self.next_notify <= self.copied:
                self.next_notify += self.notify_after


def _params(batch: List[Row], names: List[str]) -> List[Dict[str, Any]]:
    return [{f"p{i}": row.get(name) for i, name in enumerate(names)} for row in batch]


class SqlAlchemyBulkLoader(BulkLoader):
    """
    Loads rows with batched executemany INSERTs on the caller's connection.

    With the pyodbc dialect and `fast_executemany=True` each batch is sent as
    a single parameter array.
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self.ctx = get_logging_context()

    def load(
        self,
        destination_table: str,
        column_mapping: Dict[str, str],
        rows: Iterable[Row],
        batch_size: int = 2000,
        notify_after: Optional[int] = None,
        timeout: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        total_rows: Optional[int] = None,
    ) -> int:
        if total_rows is None and isinstance(rows, list):
            total_rows = len(rows)
        statement = text(build_insert_sql(destination_table, column_mapping))
        names = list(column_mapping)
        progress = _CopyProgress(destination_table, total_rows, notify_after, timeout, progress_callback)

        try:
            for batch in iter_batches(rows, batch_size):
                progress.check_timeout()
                self.connection.execute(statement, _params(batch, names))
                progress.advance(len(batch))
        except SQLAlchemyError as e:
            raise TransferError(destination_table, str(e), e) from e

        self.ctx.debug("Bulk copy completed", destination=destination_table, rows=progress.copied)
        return progress.copied


class AsyncSqlAlchemyBulkLoader(AsyncBulkLoader):
    """Async twin of `SqlAlchemyBulkLoader`."""

    def __init__(self, connection: AsyncConnection):
        self.connection = connection
        self.ctx = get_logging_context()

    async def load(
        self,
        destination_table: str,
        column_mapping: Dict[str, str],
        rows: Iterable[Row],
        batch_size: int = 2000,
        notify_after: Optional[int] = None,
        timeout: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        total_rows: Optional[int] = None,
    ) -> int:
        if total_rows is None and isinstance(rows, list):
            total_rows = len(rows)
        statement = text(build_insert_sql(destination_table, column_mapping))
        names = list(column_mapping)
        progress = _CopyProgress(destination_table, total_rows, notify_after, timeout, progress_callback)

        try:
            for batch in iter_batches(rows, batch_size):
                progress.check_timeout()
                await self.connection.execute(statement, _params(batch, names))
                progress.advance(len(batch))
        except SQLAlchemyError as e:
            raise TransferError(destination_table, str(e), e) from e

        self.ctx.debug("Bulk copy completed", destination=destination_table, rows=progress.copied)
        return progress.copied
