"""Staging lifecycle orchestration for bulk operations.

A bulk call moves through a fixed sequence of states:

    START -> METADATA_RESOLVED -> STAGING_CREATED -> ROWS_LOADED -> RECONCILED
          -> OUTPUT_READ -> IDENTITY_PROPAGATED -> STATS_COMPUTED
          -> STAGING_DROPPED -> DONE

The optional states are skipped when not configured. FAILED can follow any
state; staging cleanup still runs before the error reaches the caller.
"""

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from bulksync.catalog import ModelCatalog
from bulksync.config import BulkConfig, OperationType
from bulksync.connections.base import ProgressCallback, Row
from bulksync.exceptions import ConfigurationError, ReconciliationError
from bulksync.identity import (
    needs_identity_placeholders,
    select_strategy,
    set_identity_for_preserve_order,
)
from bulksync.metadata import DEFAULT_SCHEMA, MetadataResolver, TableDescriptor
from bulksync.stats import StatsCalculator, StatsInfo
from bulksync.utils.cancellation import CancellationToken
from bulksync.utils.logging_context import OperationPhase, get_logging_context
from bulksync.writers.sql_server_writer import ROW_SEQUENCE_COLUMN, SqlServerQueryBuilder


class BulkState(str, Enum):
    """Lifecycle states of one bulk call."""

    START = "start"
    METADATA_RESOLVED = "metadata_resolved"
    STAGING_CREATED = "staging_created"
    ROWS_LOADED = "rows_loaded"
    RECONCILED = "reconciled"
    OUTPUT_READ = "output_read"
    IDENTITY_PROPAGATED = "identity_propagated"
    STATS_COMPUTED = "stats_computed"
    STAGING_DROPPED = "staging_dropped"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BulkResult:
    """Outcome of a bulk call. `stats` is set only when requested."""

    operation: OperationType
    rows_affected: int = 0
    stats: Optional[StatsInfo] = None


def key_string(values) -> str:
    return "_".join(str(v) for v in values)


class BulkOperation:
    """
    Runs one bulk call against one table.

    The caller owns the connection and the transaction; the executor and loader
    must share that connection. The entity list is updated in place with
    generated values (or, for reads, with the stored row values).

    Args:
        entities: Entities to write or read, in the order they are staged
        entity_type: Entity type registered in the catalog
        operation: Kind of reconciliation
        catalog: Metadata source for the entity type
        executor: Statement executor (sync for `run`, async for `run_async`)
        loader: Bulk loader (sync for `run`, async for `run_async`)
        config: Bulk options; defaults to `BulkConfig()`
        progress_callback: Receives the copied fraction during the load
        cancellation_token: Checked between database round trips
        builder: Statement builder
        default_schema: Schema used when none is declared
    """

    def __init__(
        self,
        entities: List[Any],
        entity_type: type,
        operation: OperationType,
        catalog: ModelCatalog,
        executor: Any,
        loader: Any,
        config: Optional[BulkConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
        builder: Optional[SqlServerQueryBuilder] = None,
        default_schema: Optional[str] = DEFAULT_SCHEMA,
    ):
        self.entities = entities
        self.entity_type = entity_type
        self.operation = operation
        self.catalog = catalog
        self.executor = executor
        self.loader = loader
        self.config = config or BulkConfig()
        self.progress_callback = progress_callback
        self.cancellation_token = cancellation_token
        self.builder = builder or SqlServerQueryBuilder()
        self.default_schema = default_schema

        self.operation_id = uuid.uuid4().hex[:8]
        self.ctx = get_logging_context().with_context(
            operation_id=self.operation_id, operation_kind=operation.value
        )
        self.state = BulkState.START
        self.history: List[BulkState] = [BulkState.START]
        self.descriptor: Optional[TableDescriptor] = None
        self.stats_calculator = StatsCalculator(self.builder)
        self._placeholders_assigned = False
        self._created_tables: List[str] = []
        self._started = 0.0

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _transition(self, state: BulkState) -> None:
        self.state = state
        self.history.append(state)
        self.ctx.debug("State transition", state=state.value)

    def _checkpoint(self) -> None:
        if self.cancellation_token is not None:
            self.cancellation_token.raise_if_cancelled(self.state.value)

    @property
    def inserts_directly(self) -> bool:
        """Pure inserts without output capture skip staging and MERGE."""
        return self.operation == OperationType.INSERT and not self.config.created_output_table

    @property
    def reads_output(self) -> bool:
        descriptor = self.descriptor
        if not self.config.set_output_identity:
            return False
        if self.operation in (OperationType.DELETE, OperationType.READ):
            return False
        return descriptor.has_identity or descriptor.timestamp_column is not None

    @property
    def computes_stats(self) -> bool:
        return self.config.calculate_stats and self.operation != OperationType.READ

    def _resolve(self) -> None:
        self._started = time.perf_counter()
        with self.ctx.operation(OperationPhase.RESOLVE):
            resolver = MetadataResolver(self.catalog, self.config, self.default_schema)
            self.descriptor = resolver.resolve(self.entity_type, self.operation, self.entities)
        self.ctx = self.ctx.with_context(table=self.descriptor.table_name)
        self._transition(BulkState.METADATA_RESOLVED)
        self.ctx.info(
            "Bulk operation started",
            entities=len(self.entities),
            direct=self.inserts_directly,
        )

    def _check_transaction(self) -> None:
        """Temp tables live in the session, so output must be read inside one transaction."""
        if not self.config.use_temp_db:
            return
        if self.operation == OperationType.INSERT and not self.config.set_output_identity:
            return
        if not self.executor.in_transaction():
            raise ConfigurationError(
                f"use_temp_db with '{self.operation.value}' requires an open transaction "
                f"on the executor's connection",
                option="use_temp_db",
            )

    def _assign_placeholders(self) -> None:
        if self.inserts_directly:
            return
        if needs_identity_placeholders(self.descriptor, self.entities, self.config):
            set_identity_for_preserve_order(self.descriptor, self.entities)
            self._placeholders_assigned = True

    def _reset_placeholders(self) -> None:
        if self._placeholders_assigned:
            set_identity_for_preserve_order(self.descriptor, self.entities, reset=True)
            self._placeholders_assigned = False

    def _staging_statements(self) -> List[tuple]:
        descriptor = self.descriptor
        statements = [
            (
                self.builder.staging_table(descriptor),
                self.builder.build_create_staging_sql(descriptor),
            )
        ]
        if self.config.created_output_table and self.operation != OperationType.READ:
            statements.append(
                (
                    self.builder.output_table(descriptor),
                    self.builder.build_create_output_sql(descriptor),
                )
            )
        return statements

    def _column_mapping(self, staged: bool) -> Dict[str, str]:
        descriptor = self.descriptor
        if staged:
            mapping = dict(descriptor.write_columns)
            mapping[ROW_SEQUENCE_COLUMN] = ROW_SEQUENCE_COLUMN
            return mapping
        # The identity column is generated by the target table
        return {
            name: column
            for name, column in descriptor.write_columns.items()
            if column != descriptor.identity_column
        }

    def _iter_rows(self, names: List[str]) -> Iterator[Row]:
        accessors = self.descriptor.accessors
        for seq, entity in enumerate(self.entities):
            row = {name: accessors[name].get(entity) for name in names}
            row[ROW_SEQUENCE_COLUMN] = seq
            yield row

    def _load_arguments(self, staged: bool) -> Dict[str, Any]:
        mapping = self._column_mapping(staged)
        names = [name for name in mapping if name != ROW_SEQUENCE_COLUMN]
        rows = self._iter_rows(names)
        if not self.config.enable_streaming:
            rows = list(rows)
        if staged:
            destination = self.builder.staging_table(self.descriptor)
        else:
            destination = self.builder.target_table(self.descriptor)
        return dict(
            destination_table=destination,
            column_mapping=mapping,
            rows=rows,
            batch_size=self.config.batch_size,
            notify_after=self.config.notify_after or self.config.batch_size,
            timeout=self.config.bulk_copy_timeout,
            progress_callback=self.progress_callback,
            total_rows=len(self.entities),
        )

    def _reconcile_sql(self) -> str:
        if self.operation == OperationType.READ:
            return self.builder.build_read_sql(self.descriptor)
        return self.builder.build_merge_sql(self.descriptor, self.operation, self.config)

    def _reconciliation_error(self, error: Exception) -> ReconciliationError:
        self.ctx.error(
            "Reconciliation failed",
            error_type=type(error).__name__,
            error_message=str(error),
        )
        return ReconciliationError(
            self.builder.target_table(self.descriptor), self.operation.value, error
        )

    def _to_properties(self, rows: List[Row]) -> List[Row]:
        """Re-key database rows from column names to property names, keeping the row sequence."""
        columns = self.descriptor.output_columns
        keyed = []
        for row in rows:
            values = {name: row[column] for name, column in columns.items() if column in row}
            if ROW_SEQUENCE_COLUMN in row:
                values[ROW_SEQUENCE_COLUMN] = row[ROW_SEQUENCE_COLUMN]
            keyed.append(values)
        return keyed

    def _apply_read(self, rows: List[Row]) -> int:
        descriptor = self.descriptor
        key_names = list(descriptor.key_columns)
        by_key = {}
        for row in self._to_properties(rows):
            by_key[key_string(row.get(name) for name in key_names)] = row

        matched = 0
        for entity in self.entities:
            key = key_string(descriptor.accessors[name].get(entity) for name in key_names)
            row = by_key.get(key)
            if row is None:
                continue
            for name, value in row.items():
                descriptor.accessors[name].set(entity, value)
            matched += 1
        return matched

    def _materialize(self, index: int, row: Row) -> Any:
        descriptor = self.descriptor
        if index < len(self.entities):
            entity_type = type(self.entities[index])
        else:
            entity_type = descriptor.entity_type
        instance = self.catalog.new_instance(entity_type)
        for name, value in row.items():
            descriptor.accessors[name].set(instance, value)
        if self.config.tracking_entities:
            self.catalog.attach(instance)
        return instance

    def _propagate(self, rows: List[Row]) -> None:
        strategy = select_strategy(self.config)
        with self.ctx.operation(OperationPhase.PROPAGATE, strategy.name) as metrics:
            metrics.rows_in = len(self.entities)
            metrics.rows_out = strategy.apply(
                self.descriptor, self.entities, self._to_properties(rows), self._materialize
            )
        self._transition(BulkState.IDENTITY_PROPAGATED)

    def _stats_total(self, output_rows: Optional[List[Row]]) -> int:
        if output_rows is not None:
            return len(output_rows)
        return len(self.entities)

    def _fail(self, error: BaseException) -> None:
        self._transition(BulkState.FAILED)
        self._reset_placeholders()
        self.ctx.error(
            "Bulk operation failed",
            error_type=type(error).__name__,
            error_message=str(error),
        )

    def _log_drop_failure(self, table: str, error: Exception) -> None:
        self.ctx.warning(
            "Failed to drop staging table",
            staging_table=table,
            error_type=type(error).__name__,
            error_message=str(error),
        )

    def _finish(self, rows_affected: int, stats: Optional[StatsInfo]) -> BulkResult:
        self._reset_placeholders()
        self._transition(BulkState.DONE)
        self.ctx.info(
            "Bulk operation completed",
            rows_affected=rows_affected,
            elapsed_ms=round((time.perf_counter() - self._started) * 1000, 2),
        )
        return BulkResult(operation=self.operation, rows_affected=rows_affected, stats=stats)

    def _empty_result(self) -> BulkResult:
        stats = StatsInfo() if self.computes_stats else None
        return self._finish(0, stats)

    # ------------------------------------------------------------------
    # Sync driver
    # ------------------------------------------------------------------

    def run(self) -> BulkResult:
        """
        Execute the bulk call.

        Raises:
            ConfigurationError: Before any statement is issued
            TransferError: If the bulk load fails
            ReconciliationError: If the MERGE (or read join) fails
            OperationCancelled: If the cancellation token was set
        """
        try:
            self._checkpoint()
            self._resolve()
            if not self.entities:
                return self._empty_result()
            self._check_transaction()
            self._assign_placeholders()
            rows_affected, stats = self._execute()
        except BaseException as e:
            self._fail(e)
            raise
        finally:
            self._drop_staging()

        self._transition(BulkState.STAGING_DROPPED)
        return self._finish(rows_affected, stats)

    def _execute(self) -> tuple:
        if self.inserts_directly:
            self._checkpoint()
            with self.ctx.operation(OperationPhase.LOAD, "direct") as metrics:
                rows_affected = self.loader.load(**self._load_arguments(staged=False))
                metrics.rows_out = rows_affected
            self._transition(BulkState.ROWS_LOADED)
            self._transition(BulkState.RECONCILED)
            return rows_affected, None

        self._checkpoint()
        with self.ctx.operation(OperationPhase.STAGE):
            for table, sql in self._staging_statements():
                self._created_tables.append(table)
                self.executor.execute(sql)
        self._transition(BulkState.STAGING_CREATED)

        self._checkpoint()
        with self.ctx.operation(OperationPhase.LOAD) as metrics:
            metrics.rows_out = self.loader.load(**self._load_arguments(staged=True))
        self._transition(BulkState.ROWS_LOADED)

        self._checkpoint()
        with self.ctx.operation(OperationPhase.RECONCILE):
            try:
                if self.operation == OperationType.READ:
                    rows_affected = self._apply_read(self.executor.query(self._reconcile_sql()))
                else:
                    rows_affected = self.executor.execute(self._reconcile_sql())
            except Exception as e:
                raise self._reconciliation_error(e) from e
        self.ctx.info("Reconciliation completed", rows_affected=rows_affected)
        self._transition(BulkState.RECONCILED)

        output_rows = None
        if self.reads_output:
            self._checkpoint()
            with self.ctx.operation(OperationPhase.READ_OUTPUT) as metrics:
                output_rows = self.executor.query(
                    self.builder.build_select_output_sql(self.descriptor)
                )
                metrics.rows_out = len(output_rows)
            self._transition(BulkState.OUTPUT_READ)
            self.ctx.log_row_count_change(len(self.entities), len(output_rows), operation="read_output")
            self._checkpoint()
            self._propagate(output_rows)

        stats = None
        if self.computes_stats:
            self._checkpoint()
            with self.ctx.operation(OperationPhase.STATS):
                stats = self.stats_calculator.compute(
                    self.executor, self.descriptor, self._stats_total(output_rows)
                )
            self._transition(BulkState.STATS_COMPUTED)
        return rows_affected, stats

    def _drop_staging(self) -> None:
        if not self._created_tables:
            return
        with self.ctx.operation(OperationPhase.CLEANUP):
            while self._created_tables:
                table = self._created_tables.pop()
                try:
                    self.executor.execute(self.builder.build_drop_sql(table))
                except Exception as e:
                    self._log_drop_failure(table, e)

    # ------------------------------------------------------------------
    # Async driver
    # ------------------------------------------------------------------

    async def run_async(self) -> BulkResult:
        """Async twin of `run`; awaits only at executor and loader calls."""
        try:
            self._checkpoint()
            self._resolve()
            if not self.entities:
                return self._empty_result()
            self._check_transaction()
            self._assign_placeholders()
            rows_affected, stats = await self._execute_async()
        except BaseException as e:
            self._fail(e)
            raise
        finally:
            await self._drop_staging_async()

        self._transition(BulkState.STAGING_DROPPED)
        return self._finish(rows_affected, stats)

    async def _execute_async(self) -> tuple:
        if self.inserts_directly:
            self._checkpoint()
            with self.ctx.operation(OperationPhase.LOAD, "direct") as metrics:
                rows_affected = await self.loader.load(**self._load_arguments(staged=False))
                metrics.rows_out = rows_affected
            self._transition(BulkState.ROWS_LOADED)
            self._transition(BulkState.RECONCILED)
            return rows_affected, None

        self._checkpoint()
        with self.ctx.operation(OperationPhase.STAGE):
            for table, sql in self._staging_statements():
                self._created_tables.append(table)
                await self.executor.execute(sql)
        self._transition(BulkState.STAGING_CREATED)

        self._checkpoint()
        with self.ctx.operation(OperationPhase.LOAD) as metrics:
            metrics.rows_out = await self.loader.load(**self._load_arguments(staged=True))
        self._transition(BulkState.ROWS_LOADED)

        self._checkpoint()
        with self.ctx.operation(OperationPhase.RECONCILE):
            try:
                if self.operation == OperationType.READ:
                    rows = await self.executor.query(self._reconcile_sql())
                    rows_affected = self._apply_read(rows)
                else:
                    rows_affected = await self.executor.execute(self._reconcile_sql())
            except Exception as e:
                raise self._reconciliation_error(e) from e
        self.ctx.info("Reconciliation completed", rows_affected=rows_affected)
        self._transition(BulkState.RECONCILED)

        output_rows = None
        if self.reads_output:
            self._checkpoint()
            with self.ctx.operation(OperationPhase.READ_OUTPUT) as metrics:
                output_rows = await self.executor.query(
                    self.builder.build_select_output_sql(self.descriptor)
                )
                metrics.rows_out = len(output_rows)
            self._transition(BulkState.OUTPUT_READ)
            self.ctx.log_row_count_change(len(self.entities), len(output_rows), operation="read_output")
            self._checkpoint()
            self._propagate(output_rows)

        stats = None
        if self.computes_stats:
            self._checkpoint()
            with self.ctx.operation(OperationPhase.STATS):
                stats = await self.stats_calculator.compute_async(
                    self.executor, self.descriptor, self._stats_total(output_rows)
                )
            self._transition(BulkState.STATS_COMPUTED)
        return rows_affected, stats

    async def _drop_staging_async(self) -> None:
        if not self._created_tables:
            return
        with self.ctx.operation(OperationPhase.CLEANUP):
            while self._created_tables:
                table = self._created_tables.pop()
                try:
                    await self.executor.execute(self.builder.build_drop_sql(table))
                except Exception as e:
                    self._log_drop_failure(table, e)


# ----------------------------------------------------------------------
# Public entry points
# ----------------------------------------------------------------------


def _run(entities, entity_type, operation, catalog, executor, loader, config, progress_callback,
         cancellation_token) -> BulkResult:
    return BulkOperation(
        entities,
        entity_type,
        operation,
        catalog,
        executor,
        loader,
        config=config,
        progress_callback=progress_callback,
        cancellation_token=cancellation_token,
    ).run()


async def _run_async(entities, entity_type, operation, catalog, executor, loader, config,
                     progress_callback, cancellation_token) -> BulkResult:
    return await BulkOperation(
        entities,
        entity_type,
        operation,
        catalog,
        executor,
        loader,
        config=config,
        progress_callback=progress_callback,
        cancellation_token=cancellation_token,
    ).run_async()


def bulk_insert(entities, entity_type, catalog, executor, loader, config=None,
                progress_callback=None, cancellation_token=None) -> BulkResult:
    """Insert entities; with `set_output_identity` their generated keys are read back."""
    return _run(entities, entity_type, OperationType.INSERT, catalog, executor, loader, config,
                progress_callback, cancellation_token)


def bulk_update(entities, entity_type, catalog, executor, loader, config=None,
                progress_callback=None, cancellation_token=None) -> BulkResult:
    return _run(entities, entity_type, OperationType.UPDATE, catalog, executor, loader, config,
                progress_callback, cancellation_token)


def bulk_insert_or_update(entities, entity_type, catalog, executor, loader, config=None,
                          progress_callback=None, cancellation_token=None) -> BulkResult:
    """Upsert entities matched by primary key or `update_by_properties`."""
    return _run(entities, entity_type, OperationType.INSERT_OR_UPDATE, catalog, executor, loader,
                config, progress_callback, cancellation_token)


def bulk_insert_or_update_or_delete(entities, entity_type, catalog, executor, loader, config=None,
                                    progress_callback=None, cancellation_token=None) -> BulkResult:
    """Make the table hold exactly the submitted rows: upsert them and delete the rest."""
    return _run(entities, entity_type, OperationType.INSERT_OR_UPDATE_OR_DELETE, catalog, executor,
                loader, config, progress_callback, cancellation_token)


def bulk_delete(entities, entity_type, catalog, executor, loader, config=None,
                progress_callback=None, cancellation_token=None) -> BulkResult:
    return _run(entities, entity_type, OperationType.DELETE, catalog, executor, loader, config,
                progress_callback, cancellation_token)


def bulk_read(entities, entity_type, catalog, executor, loader, config=None,
              progress_callback=None, cancellation_token=None) -> BulkResult:
    """Fill entities with the stored values of the rows matching their keys."""
    return _run(entities, entity_type, OperationType.READ, catalog, executor, loader, config,
                progress_callback, cancellation_token)


async def bulk_insert_async(entities, entity_type, catalog, executor, loader, config=None,
                            progress_callback=None, cancellation_token=None) -> BulkResult:
    return await _run_async(entities, entity_type, OperationType.INSERT, catalog, executor, loader,
                            config, progress_callback, cancellation_token)


async def bulk_update_async(entities, entity_type, catalog, executor, loader, config=None,
                            progress_callback=None, cancellation_token=None) -> BulkResult:
    return await _run_async(entities, entity_type, OperationType.UPDATE, catalog, executor, loader,
                            config, progress_callback, cancellation_token)


async def bulk_insert_or_update_async(entities, entity_type, catalog, executor, loader,
                                      config=None, progress_callback=None,
                                      cancellation_token=None) -> BulkResult:
    return await _run_async(entities, entity_type, OperationType.INSERT_OR_UPDATE, catalog,
                            executor, loader, config, progress_callback, cancellation_token)


async def bulk_insert_or_update_or_delete_async(entities, entity_type, catalog, executor, loader,
                                                config=None, progress_callback=None,
                                                cancellation_token=None) -> BulkResult:
    return await _run_async(entities, entity_type, OperationType.INSERT_OR_UPDATE_OR_DELETE,
                            catalog, executor, loader, config, progress_callback,
                            cancellation_token)


async def bulk_delete_async(entities, entity_type, catalog, executor, loader, config=None,
                            progress_callback=None, cancellation_token=None) -> BulkResult:
    return await _run_async(entities, entity_type, OperationType.DELETE, catalog, executor, loader,
                            config, progress_callback, cancellation_token)


async def bulk_read_async(entities, entity_type, catalog, executor, loader, config=None,
                          progress_callback=None, cancellation_token=None) -> BulkResult:
    return await _run_async(entities, entity_type, OperationType.READ, catalog, executor, loader,
                            config, progress_callback, cancellation_token)
