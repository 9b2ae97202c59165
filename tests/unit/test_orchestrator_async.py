"""Async bulk entry points against the awaitable SQL Server fake."""

import asyncio
from decimal import Decimal

import pytest
from fakes import AsyncFakeSqlServer
from models import Item, TenantItem

from bulksync.config import BulkConfig, OperationType
from bulksync.exceptions import ReconciliationError
from bulksync.orchestrator import (
    BulkOperation,
    BulkState,
    bulk_delete_async,
    bulk_insert_async,
    bulk_insert_or_update_async,
    bulk_insert_or_update_or_delete_async,
    bulk_read_async,
    bulk_update_async,
)
from bulksync.stats import StatsInfo


@pytest.fixture
def db(server):
    return AsyncFakeSqlServer(server)


class TestAsyncBulkOperations:
    def test_insert_propagates_identity(self, catalog, server, db):
        entities = [Item(name="a"), Item(name="b")]

        result = asyncio.run(
            bulk_insert_async(entities, Item, catalog, db, db, BulkConfig(set_output_identity=True))
        )

        assert result.rows_affected == 2
        assert [e.item_id for e in entities] == [1, 2]
        assert len(server.sql_containing("DROP TABLE IF EXISTS")) == 2

    def test_direct_insert(self, catalog, server, db):
        asyncio.run(bulk_insert_async([Item(name="a")], Item, catalog, db, db))
        assert server.statements == []
        assert server.rows("[dbo].[Items]")[0]["Name"] == "a"

    def test_upsert_with_stats(self, catalog, server, db):
        server.seed("[sales].[TenantItems]", [{"TenantId": 1, "ItemId": 1, "Name": "old", "Quantity": 1}])
        entities = [TenantItem(1, 1, "new", 2), TenantItem(1, 2, "b", 3)]

        result = asyncio.run(
            bulk_insert_or_update_async(
                entities, TenantItem, catalog, db, db, BulkConfig(calculate_stats=True)
            )
        )

        assert result.stats == StatsInfo(inserted=1, updated=1, deleted=0)

    def test_update_and_delete(self, catalog, server, db):
        server.seed(
            "[dbo].[Items]",
            [{"ItemId": 1, "Name": "a", "Price": Decimal("1")}, {"ItemId": 2, "Name": "b", "Price": Decimal("2")}],
        )

        asyncio.run(bulk_update_async([Item(item_id=1, name="A")], Item, catalog, db, db))
        asyncio.run(bulk_delete_async([Item(item_id=2)], Item, catalog, db, db))

        rows = server.rows("[dbo].[Items]")
        assert [(r["ItemId"], r["Name"]) for r in rows] == [(1, "A")]

    def test_sync_stats(self, catalog, server, db):
        server.seed("[sales].[TenantItems]", [{"TenantId": 9, "ItemId": 9, "Name": "gone", "Quantity": 0}])

        result = asyncio.run(
            bulk_insert_or_update_or_delete_async(
                [TenantItem(1, 1, "a", 1)], TenantItem, catalog, db, db, BulkConfig(calculate_stats=True)
            )
        )

        assert result.stats == StatsInfo(inserted=1, updated=0, deleted=1)

    def test_read(self, catalog, server, db):
        server.seed("[sales].[TenantItems]", [{"TenantId": 1, "ItemId": 1, "Name": "x", "Quantity": 4}])
        entity = TenantItem(1, 1)

        result = asyncio.run(bulk_read_async([entity], TenantItem, catalog, db, db))

        assert result.rows_affected == 1
        assert entity.name == "x"

    def test_failure_cleans_up(self, catalog, server, db):
        server.fail_on = "MERGE"
        op = BulkOperation([TenantItem(1, 1)], TenantItem, OperationType.UPDATE, catalog, db, db)

        with pytest.raises(ReconciliationError):
            asyncio.run(op.run_async())

        assert op.state == BulkState.FAILED
        assert server.sql_containing("DROP TABLE IF EXISTS")
        assert all("Temp" not in name for name in server.tables)
