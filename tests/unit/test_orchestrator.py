"""End-to-end tests of the staging lifecycle against the in-memory SQL Server fake."""

import types
from decimal import Decimal

import pytest
from fakes import FakeDatabaseError
from models import Address, Animal, Cat, Customer, Dog, Item, Product, TenantItem

from bulksync.config import BulkConfig, OperationType
from bulksync.exceptions import (
    ConfigurationError,
    CorrelationWarning,
    OperationCancelled,
    ReconciliationError,
    TransferError,
)
from bulksync.orchestrator import (
    BulkOperation,
    BulkState,
    bulk_delete,
    bulk_insert,
    bulk_insert_or_update,
    bulk_insert_or_update_or_delete,
    bulk_read,
    bulk_update,
    key_string,
)
from bulksync.stats import StatsInfo
from bulksync.utils.cancellation import CancellationToken

ORIGINAL_TABLES = {
    "[dbo].[Items]",
    "[sales].[TenantItems]",
    "[dbo].[Customers]",
    "[dbo].[Products]",
    "[dbo].[Animals]",
}


def seed_items(server, *names):
    server.seed(
        "[dbo].[Items]",
        [{"ItemId": i, "Name": n, "Price": Decimal(i)} for i, n in enumerate(names, 1)],
    )


def new_items(count=3):
    return [Item(name=f"item{i}", price=Decimal(i)) for i in range(count)]


def run_operation(entities, entity_type, operation, catalog, server, config=None, **kwargs):
    op = BulkOperation(entities, entity_type, operation, catalog, server, server, config, **kwargs)
    return op, op.run()


class TestKeyString:
    def test_joins_with_underscore(self):
        assert key_string([1, "a", None]) == "1_a_None"


class TestUpsert:
    def test_composite_key_upsert_with_stats(self, catalog, server):
        server.seed("[sales].[TenantItems]", [{"TenantId": 1, "ItemId": 1, "Name": "old", "Quantity": 5}])
        entities = [
            TenantItem(1, 1, "new", 6),
            TenantItem(1, 2, "b", 1),
            TenantItem(1, 3, "c", 2),
        ]

        result = bulk_insert_or_update(
            entities, TenantItem, catalog, server, server, BulkConfig(calculate_stats=True)
        )

        assert result.operation == OperationType.INSERT_OR_UPDATE
        assert result.rows_affected == 3
        assert result.stats == StatsInfo(inserted=2, updated=1, deleted=0)
        rows = {(r["TenantId"], r["ItemId"]): r for r in server.rows("[sales].[TenantItems]")}
        assert rows[(1, 1)]["Name"] == "new"
        assert rows[(1, 1)]["Quantity"] == 6
        assert set(rows) == {(1, 1), (1, 2), (1, 3)}

    def test_staging_tables_are_dropped(self, catalog, server):
        bulk_insert_or_update(
            [TenantItem(1, 1, "a", 1)], TenantItem, catalog, server, server,
            BulkConfig(calculate_stats=True),
        )
        assert set(server.tables) == ORIGINAL_TABLES
        assert len(server.sql_containing("DROP TABLE IF EXISTS")) == 2

    def test_history_without_output(self, catalog, server):
        op, _ = run_operation(
            [TenantItem(1, 1, "a", 1)], TenantItem, OperationType.INSERT_OR_UPDATE, catalog, server,
            BulkConfig(calculate_stats=True),
        )
        assert op.history == [
            BulkState.START,
            BulkState.METADATA_RESOLVED,
            BulkState.STAGING_CREATED,
            BulkState.ROWS_LOADED,
            BulkState.RECONCILED,
            BulkState.STATS_COMPUTED,
            BulkState.STAGING_DROPPED,
            BulkState.DONE,
        ]

    def test_existing_and_new_identities_with_graph_merge(self, catalog, server):
        seed_items(server, "first")
        entities = [Item(item_id=1, name="renamed", price=Decimal("1")), Item(name="second")]
        config = BulkConfig(preserve_insert_order=False, include_graph=True, set_output_identity=True)

        bulk_insert_or_update(entities, Item, catalog, server, server, config)

        assert [e.item_id for e in entities] == [1, 2]
        assert server.rows("[dbo].[Items]")[0]["Name"] == "renamed"

    def test_match_by_alternate_key(self, catalog, server):
        server.seed("[dbo].[Products]", [{"Code": "A", "Sku": "s1", "Name": "old", "Price": Decimal("1")}])
        config = BulkConfig(update_by_properties=["sku"])

        bulk_insert_or_update(
            [Product(code="A", sku="s1", name="new", price=Decimal("2"))],
            Product, catalog, server, server, config,
        )

        merge = server.sql_containing("MERGE")[0]
        assert "ON T.[Sku] = S.[Sku]" in merge
        assert "PriceWithTax" not in merge
        assert server.rows("[dbo].[Products]")[0]["Name"] == "new"


class TestInsert:
    def test_identity_values_propagated_in_order(self, catalog, server):
        seed_items(server, "existing")
        entities = new_items()

        op, result = run_operation(
            entities, Item, OperationType.INSERT, catalog, server,
            BulkConfig(set_output_identity=True, calculate_stats=True),
        )

        assert [e.item_id for e in entities] == [2, 3, 4]
        assert all(e.version is not None for e in entities)
        assert result.stats == StatsInfo(inserted=3)
        assert BulkState.OUTPUT_READ in op.history
        assert BulkState.IDENTITY_PROPAGATED in op.history

    def test_placeholders_are_staged(self, catalog, server):
        bulk_insert(new_items(), Item, catalog, server, server, BulkConfig(set_output_identity=True))
        assert [r["item_id"] for r in server.loads[0]["rows"]] == [-3, -2, -1]
        assert [r["BulkSyncRowSeq"] for r in server.loads[0]["rows"]] == [0, 1, 2]

    def test_direct_insert_skips_staging(self, catalog, server):
        entities = new_items()

        op, result = run_operation(entities, Item, OperationType.INSERT, catalog, server)

        assert server.statements == []
        assert server.loads[0]["destination"] == "[dbo].[Items]"
        assert server.loads[0]["mapping"] == {"name": "Name", "price": "Price"}
        assert result.rows_affected == 3
        assert result.stats is None
        assert [e.item_id for e in entities] == [None, None, None]
        assert [r["ItemId"] for r in server.rows("[dbo].[Items]")] == [1, 2, 3]
        assert op.history == [
            BulkState.START,
            BulkState.METADATA_RESOLVED,
            BulkState.ROWS_LOADED,
            BulkState.RECONCILED,
            BulkState.STAGING_DROPPED,
            BulkState.DONE,
        ]

    def test_placeholders_reset_without_output(self, catalog, server):
        entities = new_items()
        bulk_insert_or_update(entities, Item, catalog, server, server)
        assert [e.item_id for e in entities] == [0, 0, 0]

    def test_placeholders_reset_on_uncorrelated_entities(self, catalog, server, monkeypatch):
        query = server.query
        monkeypatch.setattr(server, "query", lambda sql: query(sql)[:2])
        entities = new_items()

        with pytest.warns(CorrelationWarning):
            bulk_insert(entities, Item, catalog, server, server, BulkConfig(set_output_identity=True))

        assert [e.item_id for e in entities] == [1, 2, 0]

    def test_owned_type_columns_round_trip(self, catalog, server):
        entities = [
            Customer(name="ann", address=Address("Main St", "Oslo")),
            Customer(name="bob"),
        ]

        bulk_insert(entities, Customer, catalog, server, server, BulkConfig(set_output_identity=True))

        rows = server.rows("[dbo].[Customers]")
        assert rows[0]["AddressStreet"] == "Main St"
        assert rows[0]["AddressCity"] == "Oslo"
        assert rows[1]["AddressCity"] is None
        assert [e.customer_id for e in entities] == [1, 2]

    def test_polymorphic_list_shares_one_table(self, catalog, server):
        entities = [Dog(name="rex", bark_volume=7), Cat(name="tom", lives=3)]

        bulk_insert(entities, Animal, catalog, server, server, BulkConfig(set_output_identity=True))

        rows = server.rows("[dbo].[Animals]")
        assert rows[0]["BarkVolume"] == 7
        assert rows[0]["Lives"] is None
        assert rows[1]["Lives"] == 3
        assert [e.animal_id for e in entities] == [1, 2]

    def test_replace_collection_materializes_and_attaches(self, catalog, server):
        entities = new_items(2)
        original = entities
        config = BulkConfig(
            preserve_insert_order=False, set_output_identity=True, tracking_entities=True
        )

        bulk_insert(entities, Item, catalog, server, server, config)

        assert entities is original
        assert [e.item_id for e in entities] == [1, 2]
        assert [e.name for e in entities] == ["item0", "item1"]
        assert catalog.attached == entities


class TestUpdateDeleteSync:
    def test_update(self, catalog, server):
        seed_items(server, "a", "b")
        version_before = server.rows("[dbo].[Items]")[0]["Version"]

        result = bulk_update(
            [Item(item_id=1, name="A", price=Decimal("10"))], Item, catalog, server, server
        )

        assert result.rows_affected == 1
        row = server.rows("[dbo].[Items]")[0]
        assert row["Name"] == "A"
        assert row["Price"] == Decimal("10")
        assert row["Version"] != version_before
        assert server.rows("[dbo].[Items]")[1]["Name"] == "b"

    def test_update_reads_back_timestamp(self, catalog, server):
        seed_items(server, "a")
        entity = Item(item_id=1, name="A")

        bulk_update([entity], Item, catalog, server, server, BulkConfig(set_output_identity=True))

        assert entity.version == server.rows("[dbo].[Items]")[0]["Version"]

    def test_unmatched_key_does_not_shift_output_values(self, catalog, server):
        seed_items(server, "a", "b", "c")
        entities = [Item(item_id=99, name="X"), Item(item_id=2, name="B"), Item(item_id=3, name="C")]

        with pytest.warns(CorrelationWarning, match="2 were updated"):
            bulk_update(entities, Item, catalog, server, server, BulkConfig(set_output_identity=True))

        rows = server.rows("[dbo].[Items]")
        assert [e.item_id for e in entities] == [99, 2, 3]
        assert entities[0].version is None
        assert [e.version for e in entities[1:]] == [rows[1]["Version"], rows[2]["Version"]]

    def test_compare_filter_skips_unchanged_rows(self, catalog, server):
        server.seed("[sales].[TenantItems]", [{"TenantId": 1, "ItemId": 1, "Name": "x", "Quantity": 5}])
        config = BulkConfig(properties_to_include_on_compare=["quantity"], calculate_stats=True)

        result = bulk_update([TenantItem(1, 1, "renamed", 5)], TenantItem, catalog, server, server, config)

        assert result.stats.updated == 0
        assert server.rows("[sales].[TenantItems]")[0]["Name"] == "x"

    def test_delete(self, catalog, server):
        seed_items(server, "a", "b", "c")

        result = bulk_delete([Item(item_id=2)], Item, catalog, server, server, BulkConfig(calculate_stats=True))

        assert [r["ItemId"] for r in server.rows("[dbo].[Items]")] == [1, 3]
        assert result.stats == StatsInfo(inserted=0, updated=0, deleted=1)
        staging_ddl = server.sql_containing("SELECT TOP 0")[0]
        assert "[Name]" not in staging_ddl.splitlines()[0]

    def test_sync_deletes_rows_missing_from_source(self, catalog, server):
        server.seed(
            "[sales].[TenantItems]",
            [
                {"TenantId": 1, "ItemId": 1, "Name": "gone", "Quantity": 1},
                {"TenantId": 1, "ItemId": 2, "Name": "old", "Quantity": 1},
            ],
        )
        entities = [TenantItem(1, 2, "kept", 3), TenantItem(1, 3, "new", 4)]

        result = bulk_insert_or_update_or_delete(
            entities, TenantItem, catalog, server, server, BulkConfig(calculate_stats=True)
        )

        rows = {(r["TenantId"], r["ItemId"]): r["Name"] for r in server.rows("[sales].[TenantItems]")}
        assert rows == {(1, 2): "kept", (1, 3): "new"}
        assert result.stats == StatsInfo(inserted=1, updated=1, deleted=1)

    def test_update_without_key_rejected(self, catalog, server):
        class Loose:
            pass

        catalog.register(Loose, table_name="Items")
        with pytest.raises(ConfigurationError):
            bulk_update([Loose()], Loose, catalog, server, server)
        assert server.statements == []


class TestRead:
    def test_fills_entities_by_key(self, catalog, server):
        seed_items(server, "a", "b")
        entities = [Item(item_id=2), Item(item_id=1), Item(item_id=9)]

        op, result = run_operation(entities, Item, OperationType.READ, catalog, server)

        assert result.rows_affected == 2
        assert [e.name for e in entities] == ["b", "a", ""]
        assert entities[0].version is not None
        assert server.sql_containing("MERGE") == []
        assert BulkState.STATS_COMPUTED not in op.history
        assert server.loads[0]["mapping"] == {"item_id": "ItemId", "BulkSyncRowSeq": "BulkSyncRowSeq"}

    def test_read_composite_key(self, catalog, server):
        server.seed("[sales].[TenantItems]", [{"TenantId": 2, "ItemId": 5, "Name": "n", "Quantity": 9}])
        entity = TenantItem(tenant_id=2, item_id=5)

        bulk_read([entity], TenantItem, catalog, server, server)

        assert entity.quantity == 9
        assert entity.name == "n"


class TestFailureAndCleanup:
    def test_load_failure_drops_staging(self, catalog, server):
        server.fail_load = True

        with pytest.raises(TransferError):
            run_operation(
                [TenantItem(1, 1)], TenantItem, OperationType.INSERT_OR_UPDATE, catalog, server,
                BulkConfig(calculate_stats=True),
            )

        assert set(server.tables) == ORIGINAL_TABLES
        assert len(server.sql_containing("DROP TABLE IF EXISTS")) == 2

    def test_merge_failure_wraps_database_error(self, catalog, server):
        server.fail_on = "MERGE"
        op = BulkOperation(
            [TenantItem(1, 1)], TenantItem, OperationType.INSERT_OR_UPDATE, catalog, server, server
        )

        with pytest.raises(ReconciliationError) as exc_info:
            op.run()

        assert isinstance(exc_info.value.original_error, FakeDatabaseError)
        assert exc_info.value.__cause__ is exc_info.value.original_error
        assert "[sales].[TenantItems]" in str(exc_info.value)
        assert op.state == BulkState.FAILED
        assert set(server.tables) == ORIGINAL_TABLES

    def test_placeholders_reset_on_failure(self, catalog, server):
        server.fail_on = "MERGE"
        entities = new_items()

        with pytest.raises(ReconciliationError):
            bulk_insert(entities, Item, catalog, server, server, BulkConfig(set_output_identity=True))

        assert [e.item_id for e in entities] == [0, 0, 0]

    def test_drop_failure_does_not_fail_operation(self, catalog, server):
        server.fail_drop = True

        op, result = run_operation(
            [TenantItem(1, 1)], TenantItem, OperationType.INSERT_OR_UPDATE, catalog, server
        )

        assert op.state == BulkState.DONE
        assert result.rows_affected == 1

    def test_duplicate_key_in_direct_insert(self, catalog, server):
        server.seed("[sales].[TenantItems]", [{"TenantId": 1, "ItemId": 1}])

        with pytest.raises(TransferError, match="PRIMARY KEY"):
            bulk_insert([TenantItem(1, 1)], TenantItem, catalog, server, server)


class TestCancellation:
    def test_cancelled_before_start(self, catalog, server):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled) as exc_info:
            bulk_insert(new_items(), Item, catalog, server, server, cancellation_token=token)

        assert exc_info.value.state == "start"
        assert server.statements == []

    def test_cancelled_during_load_stops_before_merge(self, catalog, server):
        token = CancellationToken()
        entities = new_items()

        with pytest.raises(OperationCancelled) as exc_info:
            bulk_insert_or_update(
                entities, Item, catalog, server, server,
                progress_callback=lambda fraction: token.cancel(),
                cancellation_token=token,
            )

        assert exc_info.value.state == "rows_loaded"
        assert server.sql_containing("MERGE") == []
        assert set(server.tables) == ORIGINAL_TABLES
        assert [e.item_id for e in entities] == [0, 0, 0]


class TestTempTables:
    def test_temp_db_requires_transaction(self, catalog, server):
        server.transaction_open = False

        with pytest.raises(ConfigurationError, match="transaction"):
            bulk_insert_or_update(
                new_items(), Item, catalog, server, server, BulkConfig(use_temp_db=True)
            )

        assert server.statements == []

    def test_plain_insert_into_temp_db_needs_no_transaction(self, catalog, server):
        server.transaction_open = False
        result = bulk_insert(new_items(), Item, catalog, server, server, BulkConfig(use_temp_db=True))
        assert result.rows_affected == 3

    def test_shared_staging_name_is_stable(self, catalog, server):
        config = BulkConfig(use_temp_db=True, unique_table_name_temp_db=False)

        bulk_insert_or_update(new_items(), Item, catalog, server, server, config)
        bulk_insert_or_update(new_items(), Item, catalog, server, server, config)

        creates = server.sql_containing("INTO [#ItemsTemp]\n")
        assert len(creates) == 2
        assert set(server.tables) == ORIGINAL_TABLES


class TestLoading:
    def test_rows_materialized_by_default(self, catalog, server):
        bulk_insert(new_items(), Item, catalog, server, server)
        assert server.loads[0]["rows_type"] is list

    def test_streaming_passes_generator(self, catalog, server):
        bulk_insert(new_items(), Item, catalog, server, server, BulkConfig(enable_streaming=True))
        assert server.loads[0]["rows_type"] is types.GeneratorType

    def test_load_options_forwarded(self, catalog, server):
        config = BulkConfig(batch_size=2, bulk_copy_timeout=30)
        bulk_insert(new_items(), Item, catalog, server, server, config)
        load = server.loads[0]
        assert load["batch_size"] == 2
        assert load["notify_after"] == 2
        assert load["timeout"] == 30

    def test_progress_callback(self, catalog, server):
        progress = []
        bulk_insert(
            new_items(), Item, catalog, server, server, BulkConfig(batch_size=2),
            progress_callback=progress.append,
        )
        assert progress == [0.6667, 1.0]


class TestEmptyInput:
    def test_empty_list_issues_nothing(self, catalog, server):
        op, result = run_operation(
            [], Item, OperationType.INSERT_OR_UPDATE, catalog, server, BulkConfig(calculate_stats=True)
        )
        assert result.rows_affected == 0
        assert result.stats == StatsInfo()
        assert server.statements == []
        assert server.loads == []
        assert op.state == BulkState.DONE

    def test_unknown_type_rejected(self, catalog, server):
        with pytest.raises(ConfigurationError, match="entity type"):
            bulk_insert([], str, catalog, server, server)
