"""Propagation of database-generated values back into submitted entities.

After a MERGE with output capture, each output row carries the identity and
timestamp values the database generated plus the sequence number of the staged
row it came from. One of three strategies copies them back:

- `PreserveOrderStrategy`: copy into the entity at the row's sequence number
- `GraphMergeStrategy`: copy keys only into entities whose key was unset
- `ReplaceCollectionStrategy`: replace the list contents with new instances
"""

import warnings
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from bulksync.config import BulkConfig, OperationType
from bulksync.exceptions import CorrelationWarning
from bulksync.metadata import TableDescriptor
from bulksync.utils.logging_context import get_logging_context
from bulksync.writers.sql_server_writer import ROW_SEQUENCE_COLUMN

OutputRow = Dict[str, Any]

# Builds a fresh entity for the staged row at `position`
Materializer = Callable[[int, OutputRow], Any]

PLACEHOLDER_OPERATIONS = (
    OperationType.INSERT,
    OperationType.INSERT_OR_UPDATE,
    OperationType.INSERT_OR_UPDATE_OR_DELETE,
)


def is_unset(value: Any) -> bool:
    return value is None or value == 0


def needs_identity_placeholders(
    descriptor: TableDescriptor,
    entities: List[Any],
    config: BulkConfig,
) -> bool:
    """
    Whether the pre-pass should number new entities with negative identities.

    Only applies when order is preserved, there is more than one row, the
    single primary key is the identity column and the first two entities
    carry no identity yet.
    """
    if not config.preserve_insert_order or len(entities) <= 1:
        return False
    if descriptor.operation not in PLACEHOLDER_OPERATIONS:
        return False
    if not descriptor.has_identity or not descriptor.has_single_primary_key:
        return False
    if list(descriptor.key_columns.values()) != [descriptor.identity_column]:
        return False
    accessor = descriptor.accessors[descriptor.identity_property_name]
    return is_unset(accessor.get(entities[0])) and is_unset(accessor.get(entities[1]))


def set_identity_for_preserve_order(
    descriptor: TableDescriptor,
    entities: List[Any],
    reset: bool = False,
) -> None:
    """
    Assign identity placeholders `-n .. -1` in list order, or reset them to 0.

    Placeholders keep each staged row distinct for the key join and never
    match an existing target row. A reset only touches entities still holding
    their placeholder, so generated keys copied back from the output stay.
    """
    accessor = descriptor.accessors[descriptor.identity_property_name]
    python_type = accessor.python_type if isinstance(accessor.python_type, type) else int
    count = len(entities)
    for i, entity in enumerate(entities):
        placeholder = i - count
        if reset and accessor.get(entity) != placeholder:
            continue
        value = 0 if reset else placeholder
        accessor.set(entity, python_type(value) if python_type is not object else value)


def split_output_row(index: int, row: OutputRow) -> Tuple[int, OutputRow]:
    """Return the entity position an output row belongs to, and its values."""
    values = dict(row)
    position = values.pop(ROW_SEQUENCE_COLUMN, None)
    if position is None:
        return index, values
    return int(position), values


class IdentityStrategy(ABC):
    """Copies output values into the caller's entities."""

    name = "base"

    def __init__(self):
        self.ctx = get_logging_context()

    @abstractmethod
    def apply(
        self,
        descriptor: TableDescriptor,
        entities: List[Any],
        output_rows: List[OutputRow],
        materialize: Optional[Materializer] = None,
    ) -> int:
        """Apply output rows; returns the number of entities updated."""

    @staticmethod
    def _correlate(
        entities: List[Any], output_rows: List[OutputRow]
    ) -> Iterator[Tuple[Any, OutputRow]]:
        for index, row in enumerate(output_rows):
            position, values = split_output_row(index, row)
            if 0 <= position < len(entities):
                yield entities[position], values


class PreserveOrderStrategy(IdentityStrategy):
    """The output row for staged row i belongs to entity i."""

    name = "preserve_order"

    def apply(self, descriptor, entities, output_rows, materialize=None):
        names = [
            n
            for n in (descriptor.identity_property_name, descriptor.timestamp_property_name)
            if n is not None
        ]
        updated = 0
        for entity, values in self._correlate(entities, output_rows):
            for name in names:
                if name in values:
                    descriptor.accessors[name].set(entity, values[name])
            updated += 1

        if updated != len(entities):
            message = (
                f"{len(output_rows)} output rows for {len(entities)} entities on "
                f"'{descriptor.table_name}'; {updated} were updated"
            )
            warnings.warn(message, CorrelationWarning, stacklevel=2)
            self.ctx.warning(
                "Output row count does not match entity count",
                entities=len(entities),
                output_rows=len(output_rows),
                updated=updated,
            )
        return updated


class GraphMergeStrategy(IdentityStrategy):
    """Only entities whose identity was unset receive the generated key."""

    name = "graph_merge"

    def apply(self, descriptor, entities, output_rows, materialize=None):
        name = descriptor.identity_property_name
        if name is None:
            return 0
        accessor = descriptor.accessors[name]
        updated = 0
        for entity, values in self._correlate(entities, output_rows):
            if is_unset(accessor.get(entity)) and name in values:
                accessor.set(entity, values[name])
                updated += 1
        return updated


class ReplaceCollectionStrategy(IdentityStrategy):
    """
    Replaces the list contents with entities built from the output rows.

    The caller's list object is kept; its items are replaced in place. When
    fewer output rows than entities come back the list is truncated.
    """

    name = "replace_collection"

    def apply(self, descriptor, entities, output_rows, materialize=None):
        if materialize is None:
            raise ValueError("ReplaceCollectionStrategy needs a materializer")
        if len(output_rows) < len(entities):
            self.ctx.warning(
                "Fewer output rows than entities; the entity list is truncated",
                entities=len(entities),
                output_rows=len(output_rows),
            )
        replacements = [
            materialize(*split_output_row(i, row)) for i, row in enumerate(output_rows)
        ]
        entities[:] = replacements
        return len(replacements)


def select_strategy(config: BulkConfig) -> IdentityStrategy:
    if config.preserve_insert_order:
        return PreserveOrderStrategy()
    if config.include_graph:
        return GraphMergeStrategy()
    return ReplaceCollectionStrategy()
