"""Inserted/updated/deleted counts derived from the output table."""

from dataclasses import dataclass
from typing import Optional

from bulksync.config import OperationType
from bulksync.connections.base import AsyncSqlExecutor, SqlExecutor
from bulksync.metadata import TableDescriptor
from bulksync.utils.logging_context import get_logging_context
from bulksync.writers.sql_server_writer import SqlServerQueryBuilder


@dataclass(frozen=True)
class StatsInfo:
    """Row counts of one bulk call."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total_affected(self) -> int:
        return self.inserted + self.updated + self.deleted


class StatsCalculator:
    """
    Counts MERGE actions recorded in the output table.

    Inserts are not counted directly: `inserted = total - updated - deleted`,
    where `total` is the number of rows that reached the output table. For
    sync operations the total also covers rows deleted as missing from the
    source, so it is counted with a third query.
    """

    def __init__(self, builder: Optional[SqlServerQueryBuilder] = None):
        self.builder = builder or SqlServerQueryBuilder()
        self.ctx = get_logging_context()

    def _needs_total_query(self, descriptor: TableDescriptor) -> bool:
        return descriptor.operation == OperationType.INSERT_OR_UPDATE_OR_DELETE

    def _build(self, descriptor: TableDescriptor, total: int, updated, deleted) -> StatsInfo:
        updated = int(updated or 0)
        deleted = int(deleted or 0)
        stats = StatsInfo(inserted=max(total - updated - deleted, 0), updated=updated, deleted=deleted)
        self.ctx.info(
            "Bulk stats computed",
            table=descriptor.table_name,
            inserted=stats.inserted,
            updated=stats.updated,
            deleted=stats.deleted,
        )
        return stats

    def compute(self, executor: SqlExecutor, descriptor: TableDescriptor, total: int) -> StatsInfo:
        """
        Args:
            executor: Executor on the connection that ran the MERGE
            descriptor: Resolved table metadata
            total: Output rows read back, or the submitted row count

        Returns:
            StatsInfo with the three counts
        """
        updated = executor.execute_scalar(self.builder.build_count_action_sql(descriptor, "UPDATE"))
        deleted = executor.execute_scalar(self.builder.build_count_action_sql(descriptor, "DELETE"))
        if self._needs_total_query(descriptor):
            total = int(executor.execute_scalar(self.builder.build_count_output_sql(descriptor)) or 0)
        return self._build(descriptor, total, updated, deleted)

    async def compute_async(
        self,
        executor: AsyncSqlExecutor,
        descriptor: TableDescriptor,
        total: int,
    ) -> StatsInfo:
        updated = await executor.execute_scalar(
            self.builder.build_count_action_sql(descriptor, "UPDATE")
        )
        deleted = await executor.execute_scalar(
            self.builder.build_count_action_sql(descriptor, "DELETE")
        )
        if self._needs_total_query(descriptor):
            total = int(
                await executor.execute_scalar(self.builder.build_count_output_sql(descriptor)) or 0
            )
        return self._build(descriptor, total, updated, deleted)
