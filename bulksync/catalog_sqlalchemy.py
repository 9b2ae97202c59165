"""Model catalog backed by SQLAlchemy ORM mappers."""

from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapper, Session, make_transient_to_detached

from bulksync.catalog import ModelCatalog, NavigationMeta, PropertyMeta, ValueGenerated

_INTEGER_TYPES = (int, Decimal)


class SqlAlchemyCatalog(ModelCatalog):
    """
    Reads entity metadata from SQLAlchemy declarative mappings.

    Supports:
    - Column attributes, primary keys and nullability
    - Identity / autoincrement integer keys
    - Computed columns (`Computed(...)`)
    - Server-side version columns (`version_id_col` with
      `version_id_generator=False`) and `server_onupdate` columns
    - Single-table and joined inheritance (directly derived mappers)

    Composite attributes are not mapped as owned types; declare them on an
    `InMemoryCatalog` instead.

    Args:
        session: Optional session that read-back entities are attached to when
            `tracking_entities` is enabled.
    """

    def __init__(self, session: Optional[Session] = None):
        self.session = session

    def _mapper(self, entity_type: type) -> Mapper:
        mapper = sa_inspect(entity_type, raiseerr=False)
        if not isinstance(mapper, Mapper):
            raise KeyError(f"Type '{entity_type.__name__}' is not a mapped class")
        return mapper

    def contains(self, entity_type: type) -> bool:
        return isinstance(sa_inspect(entity_type, raiseerr=False), Mapper)

    def properties_of(self, entity_type: type) -> List[PropertyMeta]:
        mapper = self._mapper(entity_type)
        version_col = mapper.version_id_col
        server_versioned = version_col is not None and mapper.version_id_generator is False

        properties = []
        for attr in mapper.column_attrs:
            col = attr.columns[0]
            try:
                python_type = col.type.python_type
            except NotImplementedError:
                python_type = object

            is_version = version_col is not None and col is version_col
            if col.computed is not None:
                generated = ValueGenerated.ON_ADD_OR_UPDATE
            elif (is_version and server_versioned) or col.server_onupdate is not None:
                generated = ValueGenerated.ON_ADD_OR_UPDATE
            elif col.primary_key and self._is_identity(mapper, col, python_type):
                generated = ValueGenerated.ON_ADD
            else:
                generated = ValueGenerated.NEVER

            properties.append(
                PropertyMeta(
                    name=attr.key,
                    column_name=col.name,
                    column_type=str(col.type).lower(),
                    python_type=python_type,
                    is_key=bool(col.primary_key),
                    is_nullable=bool(col.nullable),
                    is_concurrency_token=is_version,
                    value_generated=generated,
                    computed_sql=str(col.computed.sqltext) if col.computed is not None else None,
                )
            )
        return properties

    def _is_identity(self, mapper: Mapper, col: Any, python_type: type) -> bool:
        if col.identity is not None:
            return True
        if col.autoincrement is True:
            return True
        return (
            col.autoincrement == "auto"
            and len(mapper.primary_key) == 1
            and issubclass(python_type, _INTEGER_TYPES)
        )

    def navigations_of(self, entity_type: type) -> List[NavigationMeta]:
        mapper = self._mapper(entity_type)
        return [
            NavigationMeta(
                name=rel.key,
                target_type=rel.mapper.class_,
                is_owned=False,
                is_collection=bool(rel.uselist),
            )
            for rel in mapper.relationships
        ]

    def primary_key_of(self, entity_type: type) -> List[str]:
        mapper = self._mapper(entity_type)
        return [mapper.get_property_by_column(col).key for col in mapper.primary_key]

    def table_name_of(self, entity_type: type) -> str:
        return self._mapper(entity_type).local_table.name

    def schema_of(self, entity_type: type) -> Optional[str]:
        return self._mapper(entity_type).local_table.schema

    def is_abstract(self, entity_type: type) -> bool:
        mapper = self._mapper(entity_type)
        return mapper.polymorphic_on is not None and mapper.polymorphic_identity is None

    def derived_types_of(self, entity_type: type) -> List[type]:
        mapper = self._mapper(entity_type)
        return [m.class_ for m in mapper.self_and_descendants if m.inherits is mapper]

    def new_instance(self, entity_type: type) -> Any:
        return self._mapper(entity_type).class_manager.new_instance()

    def attach(self, instance: Any) -> None:
        if self.session is None:
            return
        make_transient_to_detached(instance)
        self.session.add(instance)
