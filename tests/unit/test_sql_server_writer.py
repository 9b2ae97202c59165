"""Tests for the SQL Server statement builder."""

from dataclasses import replace

import pytest
from models import Customer, Item, TenantItem

from bulksync.config import BulkConfig, OperationType
from bulksync.metadata import resolve
from bulksync.writers.sql_server_writer import MergePlan, SqlServerQueryBuilder


@pytest.fixture
def builder():
    return SqlServerQueryBuilder()


def descriptor_for(catalog, entity_type, operation, config=None, count=3):
    descriptor = resolve(entity_type, catalog, config, operation, entities=[None] * count)
    return replace(descriptor, staging_suffix="ab12cd34")


class TestIdentifiers:
    def test_escape_column(self, builder):
        assert builder.escape_column("Name") == "[Name]"

    def test_escape_column_doubles_closing_bracket(self, builder):
        assert builder.escape_column("Weird]Name") == "[Weird]]Name]"

    def test_parse_table_name(self, builder):
        assert builder.parse_table_name("sales.Orders") == ("sales", "Orders")
        assert builder.parse_table_name("Orders") == ("dbo", "Orders")
        assert builder.parse_table_name("[sales].[Orders]") == ("sales", "Orders")

    def test_get_escaped_table_name(self, builder):
        assert builder.get_escaped_table_name("Orders") == "[dbo].[Orders]"

    def test_table_names(self, builder, catalog):
        descriptor = descriptor_for(catalog, TenantItem, OperationType.INSERT_OR_UPDATE)
        assert builder.target_table(descriptor) == "[sales].[TenantItems]"
        assert builder.staging_table(descriptor) == "[sales].[TenantItemsab12cd34Temp]"
        assert builder.output_table(descriptor) == "[sales].[TenantItemsab12cd34TempOutput]"

    def test_temp_table_names_drop_schema(self, builder, catalog):
        config = BulkConfig(use_temp_db=True)
        descriptor = descriptor_for(catalog, TenantItem, OperationType.INSERT, config)
        assert builder.staging_table(descriptor) == "[#TenantItemsab12cd34Temp]"
        assert builder.output_table(descriptor) == "[#TenantItemsab12cd34TempOutput]"


class TestStagingDdl:
    def test_create_staging(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT_OR_UPDATE)
        sql = builder.build_create_staging_sql(descriptor)
        assert sql == (
            "SELECT TOP 0 T.[ItemId], T.[Name], T.[Price], CAST(0 AS BIGINT) AS [BulkSyncRowSeq]\n"
            "INTO [dbo].[Itemsab12cd34Temp]\n"
            "FROM [dbo].[Items] AS T\n"
            "LEFT JOIN [dbo].[Items] AS Source ON 1 = 0"
        )

    def test_create_output_casts_timestamp(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT)
        sql = builder.build_create_output_sql(descriptor)
        first_line = sql.splitlines()[0]
        assert "T.[ItemId], T.[Name], T.[Price]" in first_line
        assert "CAST(NULL AS VARBINARY(8)) AS [Version]" in first_line
        assert "CAST(NULL AS BIGINT) AS [BulkSyncRowSeq]" in first_line
        assert "CAST(NULL AS NVARCHAR(10)) AS [BulkSyncAction]" in first_line
        assert "INTO [dbo].[Itemsab12cd34TempOutput]" in sql

    def test_delete_stages_keys_only(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.DELETE)
        sql = builder.build_create_staging_sql(descriptor)
        assert sql.splitlines()[0] == "SELECT TOP 0 T.[ItemId], CAST(0 AS BIGINT) AS [BulkSyncRowSeq]"


class TestMergePlan:
    @pytest.mark.parametrize(
        "operation,expected",
        [
            (OperationType.INSERT, MergePlan(insert=True)),
            (OperationType.UPDATE, MergePlan(update=True)),
            (OperationType.INSERT_OR_UPDATE, MergePlan(insert=True, update=True)),
            (
                OperationType.INSERT_OR_UPDATE_OR_DELETE,
                MergePlan(insert=True, update=True, delete_not_matched_by_source=True),
            ),
            (OperationType.DELETE, MergePlan(delete_matched=True)),
        ],
    )
    def test_for_operation(self, operation, expected):
        assert MergePlan.for_operation(operation) == expected

    def test_read_is_not_a_merge(self):
        with pytest.raises(ValueError):
            MergePlan.for_operation(OperationType.READ)


class TestBuildMergeSql:
    def test_insert_excludes_identity_and_never_matches(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT)
        sql = builder.build_merge_sql(descriptor, OperationType.INSERT, BulkConfig(set_output_identity=True))
        lines = sql.splitlines()
        assert lines[0] == "MERGE [dbo].[Items] WITH (HOLDLOCK) AS T"
        assert lines[1] == (
            "USING (SELECT TOP 3 * FROM [dbo].[Itemsab12cd34Temp] ORDER BY [BulkSyncRowSeq]) AS S"
        )
        assert lines[2] == "ON 1 = 0"
        assert "    INSERT ([Name], [Price])" in lines
        assert "    VALUES (S.[Name], S.[Price])" in lines
        assert "UPDATE SET" not in sql
        assert lines[-2] == (
            "OUTPUT INSERTED.[ItemId], INSERTED.[Name], INSERTED.[Price], INSERTED.[Version], "
            "S.[BulkSyncRowSeq], $action"
        )
        assert lines[-1] == (
            "INTO [dbo].[Itemsab12cd34TempOutput] "
            "([ItemId], [Name], [Price], [Version], [BulkSyncRowSeq], [BulkSyncAction]);"
        )

    def test_upsert_composite_key(self, builder, catalog):
        descriptor = descriptor_for(catalog, TenantItem, OperationType.INSERT_OR_UPDATE)
        sql = builder.build_merge_sql(descriptor, OperationType.INSERT_OR_UPDATE)
        assert "ON T.[TenantId] = S.[TenantId] AND T.[ItemId] = S.[ItemId]" in sql
        assert "WHEN NOT MATCHED BY TARGET THEN" in sql
        assert "WHEN MATCHED THEN\n    UPDATE SET T.[Name] = S.[Name], T.[Quantity] = S.[Quantity];" in sql
        assert "OUTPUT" not in sql
        assert sql.endswith(";")

    def test_update_only(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.UPDATE)
        sql = builder.build_merge_sql(descriptor, OperationType.UPDATE)
        assert "WHEN NOT MATCHED BY TARGET" not in sql
        assert "UPDATE SET T.[Name] = S.[Name], T.[Price] = S.[Price]" in sql
        assert "T.[ItemId] = S.[ItemId]," not in sql

    def test_sync_deletes_missing_and_coalesces_output(self, builder, catalog):
        operation = OperationType.INSERT_OR_UPDATE_OR_DELETE
        descriptor = descriptor_for(catalog, TenantItem, operation)
        sql = builder.build_merge_sql(descriptor, operation, BulkConfig(calculate_stats=True))
        assert "WHEN NOT MATCHED BY SOURCE THEN\n    DELETE" in sql
        assert "COALESCE(INSERTED.[TenantId], DELETED.[TenantId])" in sql

    def test_delete_outputs_deleted_values(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.DELETE)
        sql = builder.build_merge_sql(descriptor, OperationType.DELETE, BulkConfig(calculate_stats=True))
        assert "WHEN MATCHED THEN\n    DELETE" in sql
        assert "DELETED.[ItemId]" in sql
        assert "INSERTED." not in sql

    def test_compare_filter_guards_update(self, builder, catalog):
        config = BulkConfig(properties_to_include_on_compare=["quantity"])
        descriptor = descriptor_for(catalog, TenantItem, OperationType.INSERT_OR_UPDATE, config)
        sql = builder.build_merge_sql(descriptor, OperationType.INSERT_OR_UPDATE, config)
        assert (
            "WHEN MATCHED AND EXISTS (SELECT S.[Quantity] EXCEPT SELECT T.[Quantity]) THEN" in sql
        )

    def test_without_holdlock(self, builder, catalog):
        config = BulkConfig(with_holdlock=False)
        descriptor = descriptor_for(catalog, Item, OperationType.UPDATE, config)
        sql = builder.build_merge_sql(descriptor, OperationType.UPDATE, config)
        assert sql.splitlines()[0] == "MERGE [dbo].[Items] AS T"

    def test_owned_columns_in_insert(self, builder, catalog):
        descriptor = descriptor_for(catalog, Customer, OperationType.INSERT)
        sql = builder.build_merge_sql(descriptor, OperationType.INSERT, BulkConfig(set_output_identity=True))
        assert "INSERT ([Name], [AddressStreet], [AddressCity])" in sql

    def test_only_identity_column_inserts_default_values(self, builder, catalog):
        config = BulkConfig(properties_to_include=["item_id"], set_output_identity=True)
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT, config)
        sql = builder.build_merge_sql(descriptor, OperationType.INSERT, config)
        assert "    INSERT DEFAULT VALUES" in sql


class TestReadAndStatsSql:
    def test_select_output_orders_by_sequence(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT)
        sql = builder.build_select_output_sql(descriptor)
        assert sql == (
            "SELECT [ItemId], [Name], [Price], [Version], [BulkSyncRowSeq] "
            "FROM [dbo].[Itemsab12cd34TempOutput] "
            "WHERE [BulkSyncRowSeq] IS NOT NULL ORDER BY [BulkSyncRowSeq]"
        )

    def test_count_action(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT_OR_UPDATE)
        sql = builder.build_count_action_sql(descriptor, "UPDATE")
        assert sql == (
            "SELECT COUNT(*) FROM [dbo].[Itemsab12cd34TempOutput] WHERE [BulkSyncAction] = 'UPDATE'"
        )

    def test_count_action_rejects_unknown(self, builder, catalog):
        descriptor = descriptor_for(catalog, Item, OperationType.INSERT_OR_UPDATE)
        with pytest.raises(ValueError):
            builder.build_count_action_sql(descriptor, "MERGE'; DROP TABLE x; --")

    def test_read_join(self, builder, catalog):
        descriptor = descriptor_for(catalog, TenantItem, OperationType.READ)
        sql = builder.build_read_sql(descriptor)
        assert sql.splitlines() == [
            "SELECT T.[TenantId], T.[ItemId], T.[Name], T.[Quantity]",
            "FROM [sales].[TenantItems] AS T",
            "INNER JOIN [sales].[TenantItemsab12cd34Temp] AS S "
            "ON T.[TenantId] = S.[TenantId] AND T.[ItemId] = S.[ItemId]",
        ]

    def test_drop(self, builder):
        assert builder.build_drop_sql("[#ItemsTemp]") == "DROP TABLE IF EXISTS [#ItemsTemp]"
