import logging

import pytest

from fakes import FakeSqlServer
from models import (
    ANIMAL_COLUMNS,
    CUSTOMER_COLUMNS,
    ITEM_COLUMNS,
    PRODUCT_COLUMNS,
    TENANT_ITEM_COLUMNS,
    build_catalog,
)

from bulksync.utils.logging_context import set_logging_context


@pytest.fixture(autouse=True)
def configure_logging():
    """Configure logging to avoid Rich Text object issues in tests."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if "Rich" in handler.__class__.__name__:
            root.removeHandler(handler)
    logging.basicConfig(level=logging.WARNING, format="%(message)s", force=True)
    set_logging_context(None)
    yield
    set_logging_context(None)
    logging.basicConfig(level=logging.INFO, force=True)


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def server():
    """Fake SQL Server with the test tables created and empty."""
    db = FakeSqlServer()
    db.create_table("[dbo].[Items]", ITEM_COLUMNS, key=["ItemId"], identity="ItemId", rowversion="Version")
    db.create_table("[sales].[TenantItems]", TENANT_ITEM_COLUMNS, key=["TenantId", "ItemId"])
    db.create_table("[dbo].[Customers]", CUSTOMER_COLUMNS, key=["CustomerId"], identity="CustomerId")
    db.create_table("[dbo].[Products]", PRODUCT_COLUMNS, key=["Code"])
    db.create_table("[dbo].[Animals]", ANIMAL_COLUMNS, key=["AnimalId"], identity="AnimalId")
    return db
