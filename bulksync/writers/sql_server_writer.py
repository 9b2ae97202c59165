"""T-SQL statement builder for staging-table bulk operations.

Every statement a bulk call issues is produced here from a `TableDescriptor`:
staging/output table creation, the MERGE that reconciles staging against the
target, output read-back, action counts, the keyed read join and cleanup.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from bulksync.config import BulkConfig, OperationType
from bulksync.metadata import DEFAULT_SCHEMA, TableDescriptor

# Bookkeeping columns added to staging and output tables
ROW_SEQUENCE_COLUMN = "BulkSyncRowSeq"
ACTION_COLUMN = "BulkSyncAction"

MERGE_ACTIONS = ("INSERT", "UPDATE", "DELETE")


@dataclass
class MergePlan:
    """Clauses a MERGE needs for one operation kind."""

    insert: bool = False
    update: bool = False
    delete_matched: bool = False
    delete_not_matched_by_source: bool = False

    @classmethod
    def for_operation(cls, operation: OperationType) -> "MergePlan":
        if operation == OperationType.INSERT:
            return cls(insert=True)
        if operation == OperationType.UPDATE:
            return cls(update=True)
        if operation == OperationType.INSERT_OR_UPDATE:
            return cls(insert=True, update=True)
        if operation == OperationType.INSERT_OR_UPDATE_OR_DELETE:
            return cls(insert=True, update=True, delete_not_matched_by_source=True)
        if operation == OperationType.DELETE:
            return cls(delete_matched=True)
        raise ValueError(f"Operation '{operation.value}' is not reconciled with MERGE")


class SqlServerQueryBuilder:
    """
    Builds the T-SQL for one bulk call.

    Supports:
    - Staging and output tables created from the target's shape
    - MERGE for insert, update, upsert, sync and delete
    - Change detection on a compare column subset
    - OUTPUT capture keyed by the staging row sequence
    """

    def escape_column(self, col: str) -> str:
        """Escape an identifier for SQL Server; embedded `]` is doubled."""
        return "[" + col.replace("]", "]]") + "]"

    def parse_table_name(self, table: str) -> Tuple[str, str]:
        """
        Parse table name into schema and table parts.

        Args:
            table: Table name (e.g., 'sales.fact_orders' or 'fact_orders')

        Returns:
            Tuple of (schema, table_name)
        """
        if "." in table:
            schema, table_name = table.split(".", 1)
        else:
            schema = DEFAULT_SCHEMA
            table_name = table

        schema = schema.strip("[]")
        table_name = table_name.strip("[]")
        return schema, table_name

    def get_escaped_table_name(self, table: str) -> str:
        schema, table_name = self.parse_table_name(table)
        return f"{self.escape_column(schema)}.{self.escape_column(table_name)}"

    def _qualify(self, schema: Optional[str], table_name: str) -> str:
        if schema:
            return f"{self.escape_column(schema)}.{self.escape_column(table_name)}"
        return self.escape_column(table_name)

    def target_table(self, descriptor: TableDescriptor) -> str:
        return self._qualify(descriptor.schema, descriptor.table_name)

    def staging_table(self, descriptor: TableDescriptor) -> str:
        if descriptor.use_temp_db:
            return self.escape_column(f"#{descriptor.staging_table_name}")
        return self._qualify(descriptor.schema, descriptor.staging_table_name)

    def output_table(self, descriptor: TableDescriptor) -> str:
        if descriptor.use_temp_db:
            return self.escape_column(f"#{descriptor.output_table_name}")
        return self._qualify(descriptor.schema, descriptor.output_table_name)

    def _select_into_template(self, select_list: List[str], destination: str, target: str) -> str:
        # The self join on 1 = 0 keeps the IDENTITY property off the new table
        return "\n".join(
            [
                f"SELECT TOP 0 {', '.join(select_list)}",
                f"INTO {destination}",
                f"FROM {target} AS T",
                f"LEFT JOIN {target} AS Source ON 1 = 0",
            ]
        )

    def build_create_staging_sql(self, descriptor: TableDescriptor) -> str:
        """Empty copy of the write columns plus the row sequence column."""
        select_list = [f"T.{self.escape_column(c)}" for c in descriptor.write_columns.values()]
        select_list.append(f"CAST(0 AS BIGINT) AS {self.escape_column(ROW_SEQUENCE_COLUMN)}")
        target = self.target_table(descriptor)
        return self._select_into_template(select_list, self.staging_table(descriptor), target)

    def build_create_output_sql(self, descriptor: TableDescriptor) -> str:
        """Empty copy of the output columns plus row sequence and action marker."""
        select_list = []
        for column in descriptor.output_columns.values():
            if column == descriptor.timestamp_column:
                select_list.append(f"CAST(NULL AS VARBINARY(8)) AS {self.escape_column(column)}")
            else:
                select_list.append(f"T.{self.escape_column(column)}")
        select_list.append(f"CAST(NULL AS BIGINT) AS {self.escape_column(ROW_SEQUENCE_COLUMN)}")
        select_list.append(f"CAST(NULL AS NVARCHAR(10)) AS {self.escape_column(ACTION_COLUMN)}")
        target = self.target_table(descriptor)
        return self._select_into_template(select_list, self.output_table(descriptor), target)

    def build_on_clause(self, descriptor: TableDescriptor, operation: OperationType) -> str:
        if operation == OperationType.INSERT:
            return "1 = 0"
        return " AND ".join(
            f"T.{self.escape_column(c)} = S.{self.escape_column(c)}"
            for c in descriptor.key_columns.values()
        )

    def build_merge_sql(
        self,
        descriptor: TableDescriptor,
        operation: OperationType,
        config: Optional[BulkConfig] = None,
    ) -> str:
        """
        Build the T-SQL MERGE that reconciles staging into the target.

        Args:
            descriptor: Resolved table metadata
            operation: Operation kind (not READ)
            config: Bulk options (holdlock, compare filter, output capture)

        Returns:
            T-SQL MERGE statement
        """
        config = config or BulkConfig()
        plan = MergePlan.for_operation(operation)
        esc = self.escape_column
        identity = descriptor.identity_column

        hint = " WITH (HOLDLOCK)" if config.with_holdlock else ""
        sql_parts = [
            f"MERGE {self.target_table(descriptor)}{hint} AS T",
            f"USING (SELECT TOP {descriptor.number_of_entities} * "
            f"FROM {self.staging_table(descriptor)} "
            f"ORDER BY {esc(ROW_SEQUENCE_COLUMN)}) AS S",
            f"ON {self.build_on_clause(descriptor, operation)}",
        ]

        if plan.insert:
            insert_cols = [c for c in descriptor.write_columns.values() if c != identity]
            sql_parts.append("WHEN NOT MATCHED BY TARGET THEN")
            if insert_cols:
                sql_parts.append(f"    INSERT ({', '.join(esc(c) for c in insert_cols)})")
                sql_parts.append(f"    VALUES ({', '.join(f'S.{esc(c)}' for c in insert_cols)})")
            else:
                sql_parts.append("    INSERT DEFAULT VALUES")

        update_cols = [c for c in descriptor.update_columns.values() if c != identity]
        if plan.update and update_cols:
            compare_cols = [
                c for c in descriptor.compare_columns.values() if c not in descriptor.key_columns.values()
            ]
            if config.has_compare_filter and compare_cols:
                source_list = ", ".join(f"S.{esc(c)}" for c in compare_cols)
                target_list = ", ".join(f"T.{esc(c)}" for c in compare_cols)
                sql_parts.append(
                    f"WHEN MATCHED AND EXISTS (SELECT {source_list} EXCEPT SELECT {target_list}) THEN"
                )
            else:
                sql_parts.append("WHEN MATCHED THEN")
            update_set = ", ".join(f"T.{esc(c)} = S.{esc(c)}" for c in update_cols)
            sql_parts.append(f"    UPDATE SET {update_set}")

        if plan.delete_matched:
            sql_parts.append("WHEN MATCHED THEN")
            sql_parts.append("    DELETE")

        if plan.delete_not_matched_by_source:
            sql_parts.append("WHEN NOT MATCHED BY SOURCE THEN")
            sql_parts.append("    DELETE")

        if config.created_output_table:
            output_cols = list(descriptor.output_columns.values())
            if operation == OperationType.DELETE:
                values = [f"DELETED.{esc(c)}" for c in output_cols]
            elif plan.delete_not_matched_by_source:
                values = [f"COALESCE(INSERTED.{esc(c)}, DELETED.{esc(c)})" for c in output_cols]
            else:
                values = [f"INSERTED.{esc(c)}" for c in output_cols]
            values += [f"S.{esc(ROW_SEQUENCE_COLUMN)}", "$action"]
            into_cols = [esc(c) for c in output_cols] + [esc(ROW_SEQUENCE_COLUMN), esc(ACTION_COLUMN)]
            sql_parts.append(f"OUTPUT {', '.join(values)}")
            sql_parts.append(f"INTO {self.output_table(descriptor)} ({', '.join(into_cols)});")
        else:
            sql_parts[-1] += ";"

        return "\n".join(sql_parts)

    def build_select_output_sql(self, descriptor: TableDescriptor) -> str:
        """Output rows with their staged sequence number, in submission order."""
        seq = self.escape_column(ROW_SEQUENCE_COLUMN)
        columns = ", ".join([self.escape_column(c) for c in descriptor.output_columns.values()] + [seq])
        return (
            f"SELECT {columns} FROM {self.output_table(descriptor)} "
            f"WHERE {seq} IS NOT NULL ORDER BY {seq}"
        )

    def build_count_action_sql(self, descriptor: TableDescriptor, action: str) -> str:
        if action not in MERGE_ACTIONS:
            raise ValueError(f"Unknown MERGE action '{action}'")
        return (
            f"SELECT COUNT(*) FROM {self.output_table(descriptor)} "
            f"WHERE {self.escape_column(ACTION_COLUMN)} = '{action}'"
        )

    def build_count_output_sql(self, descriptor: TableDescriptor) -> str:
        return f"SELECT COUNT(*) FROM {self.output_table(descriptor)}"

    def build_read_sql(self, descriptor: TableDescriptor) -> str:
        """Target rows whose keys were staged."""
        esc = self.escape_column
        columns = ", ".join(f"T.{esc(c)}" for c in descriptor.output_columns.values())
        on_clause = " AND ".join(
            f"T.{esc(c)} = S.{esc(c)}" for c in descriptor.key_columns.values()
        )
        return "\n".join(
            [
                f"SELECT {columns}",
                f"FROM {self.target_table(descriptor)} AS T",
                f"INNER JOIN {self.staging_table(descriptor)} AS S ON {on_clause}",
            ]
        )

    def build_drop_sql(self, table: str) -> str:
        """Drop an already escaped table name if it exists."""
        return f"DROP TABLE IF EXISTS {table}"
