from bulksync.writers.sql_server_writer import (
    ACTION_COLUMN,
    ROW_SEQUENCE_COLUMN,
    MergePlan,
    SqlServerQueryBuilder,
)

__all__ = ["ACTION_COLUMN", "ROW_SEQUENCE_COLUMN", "MergePlan", "SqlServerQueryBuilder"]
