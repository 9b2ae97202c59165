"""Configuration models for bulksync."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from bulksync.exceptions import ConfigurationError


class OperationType(str, Enum):
    """Kinds of set-based reconciliation a bulk call performs."""

    INSERT = "insert"
    INSERT_OR_UPDATE = "insert_or_update"
    INSERT_OR_UPDATE_OR_DELETE = "insert_or_update_or_delete"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


# (include option, exclude option) pairs that may not both be set
PROPERTY_FILTER_AXES = [
    ("properties_to_include", "properties_to_exclude"),
    ("properties_to_include_on_compare", "properties_to_exclude_on_compare"),
    ("properties_to_include_on_update", "properties_to_exclude_on_update"),
]


class BulkConfig(BaseModel):
    """
    Options for a bulk call.

    The model is frozen: one instance can be shared by many calls, and nothing
    a call derives (operation kind, stats, staging names) is written back to it.

    Example:
    ```python
    config = BulkConfig(
        set_output_identity=True,
        calculate_stats=True,
        properties_to_include_on_update=["name", "price"],
    )
    bulk_insert_or_update(items, Item, catalog, executor, loader, config)
    ```

    Shared staging mode (`use_temp_db=True, unique_table_name_temp_db=False`)
    reuses one staging table name. Concurrent calls against the same table in
    that mode must be serialized by the caller inside an explicit transaction.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    batch_size: int = Field(default=2000, ge=1, description="Rows per bulk-load batch")
    notify_after: Optional[int] = Field(
        default=None,
        ge=1,
        description="Rows between progress notifications (defaults to batch_size)",
    )
    bulk_copy_timeout: Optional[int] = Field(
        default=None,
        ge=0,
        description="Seconds the bulk load may take before it is aborted",
    )
    enable_streaming: bool = Field(
        default=False,
        description="Feed rows to the loader lazily instead of materializing them first",
    )

    preserve_insert_order: bool = Field(
        default=True,
        description="Correlate generated values back to entities by list position",
    )
    set_output_identity: bool = Field(
        default=False,
        description="Read generated identity/timestamp values back into the entities",
    )
    calculate_stats: bool = Field(
        default=False,
        description="Count inserted/updated/deleted rows (two extra scalar queries)",
    )
    include_graph: bool = Field(
        default=False,
        description="Copy only generated keys into entities whose key was unset",
    )
    tracking_entities: bool = Field(
        default=False,
        description="Attach read-back entities to the catalog's change tracker",
    )

    use_temp_db: bool = Field(
        default=False,
        description="Use session temp tables (#name) for staging; requires a transaction",
    )
    unique_table_name_temp_db: bool = Field(
        default=True,
        description="Add a random suffix to temp staging names; False reuses one name",
    )
    custom_destination_table_name: Optional[str] = Field(
        default=None,
        description="Destination override as 'schema.table' or 'table'",
    )
    with_holdlock: bool = Field(
        default=True,
        description="Run the MERGE WITH (HOLDLOCK)",
    )

    properties_to_include: Optional[List[str]] = Field(
        default=None, description="Only these properties are written"
    )
    properties_to_exclude: Optional[List[str]] = Field(
        default=None, description="These properties are not written"
    )
    properties_to_include_on_compare: Optional[List[str]] = Field(
        default=None, description="Only these properties decide whether a matched row changed"
    )
    properties_to_exclude_on_compare: Optional[List[str]] = Field(
        default=None, description="These properties are ignored when comparing matched rows"
    )
    properties_to_include_on_update: Optional[List[str]] = Field(
        default=None, description="Only these properties appear in the UPDATE SET clause"
    )
    properties_to_exclude_on_update: Optional[List[str]] = Field(
        default=None, description="These properties are left out of the UPDATE SET clause"
    )
    update_by_properties: Optional[List[str]] = Field(
        default=None,
        description="Match rows by these properties instead of the primary key",
    )

    @model_validator(mode="after")
    def validate_property_filters(self):
        """Include and exclude lists of one axis are mutually exclusive."""
        for include_option, exclude_option in PROPERTY_FILTER_AXES:
            if getattr(self, include_option) and getattr(self, exclude_option):
                raise ConfigurationError(
                    f"'{include_option}' and '{exclude_option}' cannot both be set",
                    option=include_option,
                )
        return self

    @property
    def has_compare_filter(self) -> bool:
        return bool(self.properties_to_include_on_compare or self.properties_to_exclude_on_compare)

    @property
    def created_output_table(self) -> bool:
        return self.set_output_identity or self.calculate_stats
