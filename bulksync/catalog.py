"""Model catalog: read-only entity metadata consumed by the metadata resolver.

`ModelCatalog` is the contract. `InMemoryCatalog` is a declarative
implementation for plain Python classes (dataclasses, attrs, slotted classes);
`bulksync.catalog_sqlalchemy.SqlAlchemyCatalog` reads SQLAlchemy mappers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ValueGenerated(str, Enum):
    """When the database generates a column value."""

    NEVER = "never"
    ON_ADD = "on_add"
    ON_ADD_OR_UPDATE = "on_add_or_update"


@dataclass(frozen=True)
class PropertyMeta:
    """One scalar property of an entity and the column it maps to."""

    name: str
    column_name: Optional[str] = None
    column_type: Optional[str] = None
    python_type: type = object
    is_key: bool = False
    is_nullable: bool = True
    is_concurrency_token: bool = False
    value_generated: ValueGenerated = ValueGenerated.NEVER
    computed_sql: Optional[str] = None

    @property
    def column(self) -> str:
        return self.column_name or self.name

    @property
    def is_computed(self) -> bool:
        return self.computed_sql is not None


@dataclass(frozen=True)
class NavigationMeta:
    """A reference from an entity to another type.

    Owned navigations are value objects stored in the parent's row.
    """

    name: str
    target_type: type
    is_owned: bool = False
    is_collection: bool = False


class ModelCatalog(ABC):
    """Read-only metadata oracle for entity types."""

    @abstractmethod
    def contains(self, entity_type: type) -> bool:
        """True if the type is a known entity (or owned) type."""

    @abstractmethod
    def properties_of(self, entity_type: type) -> List[PropertyMeta]:
        """Scalar properties in declaration order."""

    @abstractmethod
    def navigations_of(self, entity_type: type) -> List[NavigationMeta]:
        """Reference and owned navigations."""

    @abstractmethod
    def primary_key_of(self, entity_type: type) -> List[str]:
        """Property names of the primary key, in key order."""

    @abstractmethod
    def table_name_of(self, entity_type: type) -> str:
        """Destination table name."""

    @abstractmethod
    def schema_of(self, entity_type: type) -> Optional[str]:
        """Declared schema, or None for the dialect default."""

    def is_abstract(self, entity_type: type) -> bool:
        return False

    def derived_types_of(self, entity_type: type) -> List[type]:
        """Directly derived entity types."""
        return []

    def new_instance(self, entity_type: type) -> Any:
        """Create an empty instance to receive read-back values."""
        return entity_type.__new__(entity_type)

    def attach(self, instance: Any) -> None:
        """Hand a read-back instance to the change tracker, if there is one."""
        pass


@dataclass
class EntityModel:
    """Registration record held by `InMemoryCatalog`."""

    entity_type: type
    table_name: str
    schema: Optional[str] = None
    properties: List[PropertyMeta] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)
    navigations: List[NavigationMeta] = field(default_factory=list)
    is_abstract: bool = False
    base_type: Optional[type] = None
    is_owned: bool = False


class InMemoryCatalog(ModelCatalog):
    """Declarative catalog for plain Python classes.

    Example:
    ```python
    catalog = InMemoryCatalog()
    catalog.register(
        Item,
        table_name="Items",
        properties=[
            PropertyMeta("id", "ItemId", python_type=int, is_key=True,
                         value_generated=ValueGenerated.ON_ADD),
            PropertyMeta("name", "Name", python_type=str),
        ],
    )
    ```
    """

    def __init__(self):
        self._models: Dict[type, EntityModel] = {}
        self.attached: List[Any] = []

    def register(
        self,
        entity_type: type,
        table_name: Optional[str] = None,
        properties: Sequence[PropertyMeta] = (),
        schema: Optional[str] = None,
        primary_key: Optional[Sequence[str]] = None,
        navigations: Sequence[NavigationMeta] = (),
        is_abstract: bool = False,
        base_type: Optional[type] = None,
        is_owned: bool = False,
    ) -> EntityModel:
        """Register an entity, owned or derived type.

        The primary key defaults to the properties flagged `is_key`. Derived
        types inherit the base type's table, schema and key.
        """
        base = self._models.get(base_type) if base_type is not None else None
        if base_type is not None and base is None:
            raise ValueError(
                f"Base type '{base_type.__name__}' must be registered before "
                f"'{entity_type.__name__}'"
            )

        if primary_key is None:
            primary_key = [p.name for p in properties if p.is_key]
            if not primary_key and base is not None:
                primary_key = list(base.primary_key)

        model = EntityModel(
            entity_type=entity_type,
            table_name=table_name or (base.table_name if base else entity_type.__name__),
            schema=schema if schema is not None else (base.schema if base else None),
            properties=list(properties),
            primary_key=list(primary_key),
            navigations=list(navigations),
            is_abstract=is_abstract,
            base_type=base_type,
            is_owned=is_owned,
        )
        self._models[entity_type] = model
        return model

    def _model(self, entity_type: type) -> EntityModel:
        try:
            return self._models[entity_type]
        except KeyError:
            raise KeyError(f"Type '{entity_type.__name__}' is not registered in the catalog")

    def contains(self, entity_type: type) -> bool:
        return entity_type in self._models

    def properties_of(self, entity_type: type) -> List[PropertyMeta]:
        model = self._model(entity_type)
        if model.base_type is None:
            return list(model.properties)
        inherited = self.properties_of(model.base_type)
        own_names = {p.name for p in model.properties}
        return [p for p in inherited if p.name not in own_names] + list(model.properties)

    def navigations_of(self, entity_type: type) -> List[NavigationMeta]:
        model = self._model(entity_type)
        if model.base_type is None:
            return list(model.navigations)
        return self.navigations_of(model.base_type) + list(model.navigations)

    def primary_key_of(self, entity_type: type) -> List[str]:
        return list(self._model(entity_type).primary_key)

    def table_name_of(self, entity_type: type) -> str:
        return self._model(entity_type).table_name

    def schema_of(self, entity_type: type) -> Optional[str]:
        return self._model(entity_type).schema

    def is_abstract(self, entity_type: type) -> bool:
        return self._model(entity_type).is_abstract

    def derived_types_of(self, entity_type: type) -> List[type]:
        return [m.entity_type for m in self._models.values() if m.base_type is entity_type]

    def attach(self, instance: Any) -> None:
        self.attached.append(instance)
