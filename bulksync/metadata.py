"""Entity-to-table metadata resolution.

`resolve()` turns an entity type, the model catalog and a `BulkConfig` into a
`TableDescriptor`: destination names, key columns, the write/compare/update/
output column sets, identity and timestamp columns, flattened owned types and
one accessor per property. It only reads the catalog; no statement is issued.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bulksync.catalog import ModelCatalog, NavigationMeta, PropertyMeta, ValueGenerated
from bulksync.config import BulkConfig, OperationType
from bulksync.exceptions import ConfigurationError
from bulksync.utils.logging_context import get_logging_context

DEFAULT_SCHEMA = "dbo"

# Column types the database maintains as row versions
TIMESTAMP_COLUMN_TYPES = ("timestamp", "rowversion")


@dataclass(frozen=True)
class PropertyAccessor:
    """Getter/setter pair for one logical property name."""

    name: str
    getter: Callable[[Any], Any]
    setter: Callable[[Any, Any], None]
    python_type: type = object

    def get(self, entity: Any) -> Any:
        return self.getter(entity)

    def set(self, entity: Any, value: Any) -> None:
        self.setter(entity, value)


def attribute_accessor(name: str, python_type: type = object) -> PropertyAccessor:
    # Derived types of a polymorphic list do not all carry every property
    def getter(entity):
        return getattr(entity, name, None)

    def setter(entity, value):
        setattr(entity, name, value)

    return PropertyAccessor(name, getter, setter, python_type)


def owned_accessor(
    navigation: NavigationMeta,
    prop: PropertyMeta,
    catalog: ModelCatalog,
) -> PropertyAccessor:
    """Accessor for `Parent.Child`; the owned object is created on first write."""
    parent_name = navigation.name
    child_name = prop.name

    def getter(entity):
        owned = getattr(entity, parent_name, None)
        if owned is None:
            return None
        return getattr(owned, child_name, None)

    def setter(entity, value):
        owned = getattr(entity, parent_name, None)
        if owned is None:
            owned = catalog.new_instance(navigation.target_type)
            setattr(entity, parent_name, owned)
        setattr(owned, child_name, value)

    return PropertyAccessor(f"{parent_name}.{child_name}", getter, setter, prop.python_type)


def split_table_name(name: str) -> Tuple[Optional[str], str]:
    """Split 'schema.table' (brackets allowed); schema is None when absent."""
    if "." in name:
        schema, table_name = name.split(".", 1)
        return schema.strip("[]"), table_name.strip("[]")
    return None, name.strip("[]")


@dataclass(frozen=True)
class TableDescriptor:
    """Resolved shape of one bulk call against one table.

    Column mappings are ordered `property name -> column name` dicts. Owned
    properties appear under `Parent.Child` names.
    """

    entity_type: type
    operation: OperationType
    schema: Optional[str]
    table_name: str
    key_columns: Dict[str, str]
    write_columns: Dict[str, str]
    compare_columns: Dict[str, str]
    update_columns: Dict[str, str]
    output_columns: Dict[str, str]
    column_types: Dict[str, Optional[str]] = field(default_factory=dict)
    owned_types: Dict[str, Dict[str, str]] = field(default_factory=dict)
    accessors: Dict[str, PropertyAccessor] = field(default_factory=dict)
    identity_column: Optional[str] = None
    timestamp_column: Optional[str] = None
    has_single_primary_key: bool = False
    update_by_properties_are_nullable: bool = False
    has_abstract_list: bool = False
    column_name_contains_square_bracket: bool = False
    load_only_key_columns: bool = False
    staging_suffix: str = ""
    use_temp_db: bool = False
    number_of_entities: int = 0

    @property
    def has_identity(self) -> bool:
        return self.identity_column is not None

    @property
    def has_owned_types(self) -> bool:
        return bool(self.owned_types)

    @property
    def staging_table_name(self) -> str:
        return f"{self.table_name}{self.staging_suffix}Temp"

    @property
    def output_table_name(self) -> str:
        return f"{self.table_name}{self.staging_suffix}TempOutput"

    def property_for_column(self, column: Optional[str]) -> Optional[str]:
        if column is None:
            return None
        for name, col in self.output_columns.items():
            if col == column:
                return name
        return None

    @property
    def identity_property_name(self) -> Optional[str]:
        return self.property_for_column(self.identity_column)

    @property
    def timestamp_property_name(self) -> Optional[str]:
        return self.property_for_column(self.timestamp_column)


class MetadataResolver:
    """
    Builds `TableDescriptor`s from catalog metadata.

    Args:
        catalog: Model catalog to read entity metadata from
        config: Bulk options; defaults to `BulkConfig()`
        default_schema: Schema used when neither the config nor the catalog names one
        decimal_identity: Whether DECIMAL keys may be identity columns (SQL Server)
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        config: Optional[BulkConfig] = None,
        default_schema: Optional[str] = DEFAULT_SCHEMA,
        decimal_identity: bool = True,
    ):
        self.catalog = catalog
        self.config = config or BulkConfig()
        self.default_schema = default_schema
        self.decimal_identity = decimal_identity
        self.ctx = get_logging_context()

    def resolve(
        self,
        entity_type: type,
        operation: OperationType,
        entities: Sequence[Any] = (),
    ) -> TableDescriptor:
        config = self.config
        entity_type, has_abstract_list = self._resolve_entity_type(entity_type, entities)

        schema, table_name = self._resolve_table_name(entity_type)

        primary_keys = self._column_map(entity_type, self.catalog.primary_key_of(entity_type))
        if config.update_by_properties:
            key_columns = self._match_by_columns(entity_type, config.update_by_properties)
        else:
            key_columns = dict(primary_keys)
        if not key_columns and operation != OperationType.INSERT:
            raise ConfigurationError(
                f"Type '{entity_type.__name__}' has no primary key; "
                f"'{operation.value}' needs key columns (set update_by_properties)",
                option="update_by_properties",
            )

        all_properties = self._all_properties(entity_type)
        key_names = set(primary_keys)

        timestamp_properties = [p for p in all_properties if self._is_timestamp(p)]
        timestamp = timestamp_properties[0] if timestamp_properties else None
        non_timestamp = [p for p in all_properties if p not in timestamp_properties]
        writable = [p for p in non_timestamp if not p.is_computed]

        owned_navigations = [
            n for n in self.catalog.navigations_of(entity_type) if n.is_owned and not n.is_collection
        ]
        owned_properties = {n.name: self._owned_properties(n) for n in owned_navigations}

        accessors: Dict[str, PropertyAccessor] = {}
        for prop in all_properties:
            accessors[prop.name] = attribute_accessor(prop.name, prop.python_type)
        for navigation in owned_navigations:
            accessors[navigation.name] = attribute_accessor(navigation.name, navigation.target_type)
            for prop in owned_properties[navigation.name]:
                accessor = owned_accessor(navigation, prop, self.catalog)
                accessors[accessor.name] = accessor

        self._validate_filter_names(accessors, config)

        # Keys are always needed for the merge predicate
        match_names = list(config.update_by_properties or primary_keys)
        include = None
        if config.properties_to_include:
            include = list(config.properties_to_include)
            include += [name for name in match_names if name not in include]

        write_props = self._filter(writable, include, config.properties_to_exclude)

        if config.has_compare_filter:
            compare_props = self._filter(
                writable,
                config.properties_to_include_on_compare,
                config.properties_to_exclude_on_compare,
            )
        else:
            compare_props = write_props

        if config.properties_to_include_on_update or config.properties_to_exclude_on_update:
            update_props = self._filter(
                writable,
                config.properties_to_include_on_update,
                config.properties_to_exclude_on_update,
            )
        else:
            update_props = [p for p in write_props if p.name not in match_names]

        update_by_nullable = any(p.name in key_columns and p.is_nullable for p in write_props)
        if update_by_nullable:
            self.ctx.warning(
                "Key columns used for matching are nullable; NULL keys never match",
                table=table_name,
                keys=list(key_columns),
            )

        load_only_keys = operation in (OperationType.DELETE, OperationType.READ)

        write_columns = {p.name: p.column for p in write_props}
        compare_columns = {p.name: p.column for p in compare_props}
        update_columns = {p.name: p.column for p in update_props}
        output_columns = {p.name: p.column for p in non_timestamp}
        owned_types: Dict[str, Dict[str, str]] = {}

        for navigation in owned_navigations:
            flattened = {}
            for prop in owned_properties[navigation.name]:
                flat_name = f"{navigation.name}.{prop.name}"
                flattened[flat_name] = prop.column
                output_columns[flat_name] = prop.column
                if prop.is_computed:
                    continue
                if self._passes(flat_name, navigation.name, include, config.properties_to_exclude):
                    write_columns[flat_name] = prop.column
                if config.has_compare_filter:
                    if self._passes(
                        flat_name,
                        navigation.name,
                        config.properties_to_include_on_compare,
                        config.properties_to_exclude_on_compare,
                    ):
                        compare_columns[flat_name] = prop.column
                elif flat_name in write_columns:
                    compare_columns[flat_name] = prop.column
                if self._passes(
                    flat_name,
                    navigation.name,
                    config.properties_to_include_on_update,
                    config.properties_to_exclude_on_update,
                ) and (flat_name in write_columns or config.properties_to_include_on_update):
                    update_columns[flat_name] = prop.column
            owned_types[navigation.name] = flattened

        if load_only_keys:
            write_columns = {name: col for name, col in write_columns.items() if name in key_columns}

        if timestamp is not None:
            # The database rewrites it on every write, so it is read back last
            output_columns[timestamp.name] = timestamp.column

        if operation == OperationType.UPDATE and not update_columns:
            raise ConfigurationError(
                f"No columns left to update on '{table_name}'",
                option="properties_to_include_on_update",
            )

        column_types = {p.column: p.column_type for p in all_properties}
        for navigation in owned_navigations:
            for prop in owned_properties[navigation.name]:
                column_types[prop.column] = prop.column_type

        identity_column = self._identity_column(all_properties, key_names)

        if config.use_temp_db and not config.unique_table_name_temp_db:
            staging_suffix = ""
        else:
            staging_suffix = uuid.uuid4().hex[:8]

        descriptor = TableDescriptor(
            entity_type=entity_type,
            operation=operation,
            schema=schema,
            table_name=table_name,
            key_columns=key_columns,
            write_columns=write_columns,
            compare_columns=compare_columns,
            update_columns=update_columns,
            output_columns=output_columns,
            column_types=column_types,
            owned_types=owned_types,
            accessors=accessors,
            identity_column=identity_column,
            timestamp_column=timestamp.column if timestamp is not None else None,
            has_single_primary_key=len(primary_keys) == 1,
            update_by_properties_are_nullable=update_by_nullable,
            has_abstract_list=has_abstract_list,
            column_name_contains_square_bracket=any("]" in c for c in output_columns.values()),
            load_only_key_columns=load_only_keys,
            staging_suffix=staging_suffix,
            use_temp_db=config.use_temp_db,
            number_of_entities=len(entities),
        )

        self.ctx.debug(
            "Resolved table metadata",
            table=table_name,
            schema=schema,
            keys=list(key_columns.values()),
            write_columns=len(write_columns),
            identity=identity_column,
            timestamp=descriptor.timestamp_column,
        )
        return descriptor

    def _resolve_entity_type(self, entity_type: type, entities: Sequence[Any]) -> Tuple[type, bool]:
        if self.catalog.contains(entity_type):
            return entity_type, False
        if entities:
            fallback = type(entities[0])
            if self.catalog.contains(fallback):
                return fallback, True
        raise ConfigurationError(
            f"Catalog does not contain entity type '{entity_type.__name__}'",
            option="entity_type",
        )

    def _resolve_table_name(self, entity_type: type) -> Tuple[Optional[str], str]:
        custom_schema = None
        custom_table = None
        if self.config.custom_destination_table_name:
            custom_schema, custom_table = split_table_name(self.config.custom_destination_table_name)
        schema = custom_schema or self.catalog.schema_of(entity_type) or self.default_schema
        table_name = custom_table or self.catalog.table_name_of(entity_type)
        return schema, table_name

    def _all_properties(self, entity_type: type) -> List[PropertyMeta]:
        properties = list(self.catalog.properties_of(entity_type))
        if self.catalog.is_abstract(entity_type):
            seen = {p.name for p in properties}
            for derived in self.catalog.derived_types_of(entity_type):
                for prop in self.catalog.properties_of(derived):
                    if prop.name not in seen:
                        seen.add(prop.name)
                        properties.append(prop)
        return properties

    def _column_map(self, entity_type: type, names: Sequence[str]) -> Dict[str, str]:
        columns = {p.name: p.column for p in self.catalog.properties_of(entity_type)}
        return {name: columns.get(name, name) for name in names}

    def _match_by_columns(self, entity_type: type, names: Sequence[str]) -> Dict[str, str]:
        columns = {p.name: p.column for p in self._all_properties(entity_type)}
        for name in names:
            if name not in columns:
                raise ConfigurationError(
                    f"PropertyName '{name}' specified in 'update_by_properties' "
                    f"not found in Properties of '{entity_type.__name__}'",
                    option="update_by_properties",
                )
        return {name: columns[name] for name in names}

    def _owned_properties(self, navigation: NavigationMeta) -> List[PropertyMeta]:
        if not self.catalog.contains(navigation.target_type):
            raise ConfigurationError(
                f"Owned type '{navigation.target_type.__name__}' of navigation "
                f"'{navigation.name}' is not in the catalog",
                option="entity_type",
            )
        owned_keys = set(self.catalog.primary_key_of(navigation.target_type))
        return [
            p
            for p in self.catalog.properties_of(navigation.target_type)
            if not p.is_key and p.name not in owned_keys and not self._is_timestamp(p)
        ]

    @staticmethod
    def _is_timestamp(prop: PropertyMeta) -> bool:
        if (prop.column_type or "").lower() in TIMESTAMP_COLUMN_TYPES:
            return True
        return prop.is_concurrency_token and prop.value_generated == ValueGenerated.ON_ADD_OR_UPDATE

    def _validate_filter_names(self, accessors: Dict[str, PropertyAccessor], config: BulkConfig):
        for option in (
            "properties_to_include",
            "properties_to_exclude",
            "properties_to_include_on_compare",
            "properties_to_exclude_on_compare",
            "properties_to_include_on_update",
            "properties_to_exclude_on_update",
        ):
            for name in getattr(config, option) or []:
                if name not in accessors:
                    raise ConfigurationError(
                        f"PropertyName '{name}' specified in '{option}' not found in Properties",
                        option=option,
                    )

    @staticmethod
    def _filter(
        properties: List[PropertyMeta],
        include: Optional[Sequence[str]],
        exclude: Optional[Sequence[str]],
    ) -> List[PropertyMeta]:
        if include:
            properties = [p for p in properties if p.name in include]
        if exclude:
            properties = [p for p in properties if p.name not in exclude]
        return properties

    @staticmethod
    def _passes(
        flat_name: str,
        navigation_name: str,
        include: Optional[Sequence[str]],
        exclude: Optional[Sequence[str]],
    ) -> bool:
        if include and flat_name not in include and navigation_name not in include:
            return False
        if exclude and (flat_name in exclude or navigation_name in exclude):
            return False
        return True

    def _identity_column(self, properties: List[PropertyMeta], key_names: set) -> Optional[str]:
        candidates = [
            p
            for p in properties
            if (p.is_key or p.name in key_names)
            and p.value_generated == ValueGenerated.ON_ADD
            and self._is_identity_type(p.python_type)
        ]
        if len(candidates) > 1:
            raise ConfigurationError(
                f"More than one identity column found: {[p.column for p in candidates]}",
                option="entity_type",
            )
        return candidates[0].column if candidates else None

    def _is_identity_type(self, python_type: type) -> bool:
        if not isinstance(python_type, type):
            return False
        if issubclass(python_type, bool):
            return False
        if issubclass(python_type, int):
            return True
        return self.decimal_identity and issubclass(python_type, Decimal)


def resolve(
    entity_type: type,
    catalog: ModelCatalog,
    config: Optional[BulkConfig] = None,
    operation: OperationType = OperationType.INSERT,
    entities: Sequence[Any] = (),
    default_schema: Optional[str] = DEFAULT_SCHEMA,
) -> TableDescriptor:
    """Resolve the table descriptor for one bulk call."""
    return MetadataResolver(catalog, config, default_schema).resolve(entity_type, operation, entities)
