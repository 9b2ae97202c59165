"""bulksync - set-based bulk insert, update, upsert, sync, delete and read for SQL Server."""

__version__ = "0.1.0"

# Core components
from bulksync.catalog import InMemoryCatalog, ModelCatalog, NavigationMeta, PropertyMeta, ValueGenerated
from bulksync.config import BulkConfig, OperationType
from bulksync.exceptions import (
    BulkSyncException,
    ConfigurationError,
    CorrelationWarning,
    OperationCancelled,
    ReconciliationError,
    TransferError,
)
from bulksync.metadata import TableDescriptor, resolve
from bulksync.orchestrator import (
    BulkOperation,
    BulkResult,
    BulkState,
    bulk_delete,
    bulk_delete_async,
    bulk_insert,
    bulk_insert_async,
    bulk_insert_or_update,
    bulk_insert_or_update_async,
    bulk_insert_or_update_or_delete,
    bulk_insert_or_update_or_delete_async,
    bulk_read,
    bulk_read_async,
    bulk_update,
    bulk_update_async,
)
from bulksync.stats import StatsInfo
from bulksync.utils.cancellation import CancellationToken
from bulksync.writers import SqlServerQueryBuilder

__all__ = [
    "InMemoryCatalog",
    "ModelCatalog",
    "NavigationMeta",
    "PropertyMeta",
    "ValueGenerated",
    "BulkConfig",
    "OperationType",
    "BulkSyncException",
    "ConfigurationError",
    "CorrelationWarning",
    "OperationCancelled",
    "ReconciliationError",
    "TransferError",
    "TableDescriptor",
    "resolve",
    "BulkOperation",
    "BulkResult",
    "BulkState",
    "bulk_delete",
    "bulk_delete_async",
    "bulk_insert",
    "bulk_insert_async",
    "bulk_insert_or_update",
    "bulk_insert_or_update_async",
    "bulk_insert_or_update_or_delete",
    "bulk_insert_or_update_or_delete_async",
    "bulk_read",
    "bulk_read_async",
    "bulk_update",
    "bulk_update_async",
    "StatsInfo",
    "CancellationToken",
    "SqlServerQueryBuilder",
    "__version__",
]


# Connection-level components are imported on first use
def __getattr__(name):
    if name == "SqlAlchemyCatalog":
        from bulksync.catalog_sqlalchemy import SqlAlchemyCatalog

        return SqlAlchemyCatalog
    if name in (
        "SqlServerConnection",
        "SqlAlchemyExecutor",
        "SqlAlchemyBulkLoader",
        "AsyncSqlAlchemyExecutor",
        "AsyncSqlAlchemyBulkLoader",
    ):
        from bulksync.connections import sql_server

        return getattr(sql_server, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
