"""Connection implementations for bulksync."""

from bulksync.connections.base import (
    AsyncBulkLoader,
    AsyncSqlExecutor,
    BulkLoader,
    SqlExecutor,
    get_progress,
)
from bulksync.connections.sql_server import (
    AsyncSqlAlchemyBulkLoader,
    AsyncSqlAlchemyExecutor,
    SqlAlchemyBulkLoader,
    SqlAlchemyExecutor,
    SqlServerConnection,
)

__all__ = [
    "AsyncBulkLoader",
    "AsyncSqlExecutor",
    "BulkLoader",
    "SqlExecutor",
    "get_progress",
    "AsyncSqlAlchemyBulkLoader",
    "AsyncSqlAlchemyExecutor",
    "SqlAlchemyBulkLoader",
    "SqlAlchemyExecutor",
    "SqlServerConnection",
]
