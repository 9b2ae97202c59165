"""Collaborator contracts used by the bulk orchestrator.

A bulk call talks to the database through two seams: a `SqlExecutor` that runs
the generated statements inside the caller's transaction, and a `BulkLoader`
that streams rows into a staging or destination table. Each has an async twin.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

ProgressCallback = Callable[[float], None]

Row = Dict[str, Any]


def get_progress(total: Optional[int], copied: int) -> float:
    """Fraction of rows copied, rounded to 4 places."""
    if not total:
        return 1.0
    return round(min(copied, total) / total, 4)


class SqlExecutor(ABC):
    """Runs statements on the caller's connection without committing."""

    @abstractmethod
    def execute(self, sql: str) -> int:
        """Execute a statement and return the affected row count."""

    @abstractmethod
    def execute_scalar(self, sql: str) -> Any:
        """Execute a query and return the first column of the first row."""

    @abstractmethod
    def query(self, sql: str) -> List[Row]:
        """Execute a query and return rows keyed by column name."""

    @abstractmethod
    def in_transaction(self) -> bool:
        """True if the connection has an open transaction."""


class AsyncSqlExecutor(ABC):
    """Async twin of `SqlExecutor`."""

    @abstractmethod
    async def execute(self, sql: str) -> int:
        pass

    @abstractmethod
    async def execute_scalar(self, sql: str) -> Any:
        pass

    @abstractmethod
    async def query(self, sql: str) -> List[Row]:
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        pass


class BulkLoader(ABC):
    """Moves rows into a table in batches."""

    @abstractmethod
    def load(
        self,
        destination_table: str,
        column_mapping: Dict[str, str],
        rows: Iterable[Row],
        batch_size: int = 2000,
        notify_after: Optional[int] = None,
        timeout: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        total_rows: Optional[int] = None,
    ) -> int:
        """
        Copy rows into a table.

        Args:
            destination_table: Escaped destination table name
            column_mapping: Row key -> destination column, in column order
            rows: Row dicts; may be a one-shot iterator
            batch_size: Rows per round trip
            notify_after: Rows between progress notifications
            timeout: Seconds the whole copy may take
            progress_callback: Receives the copied fraction in [0, 1]
            total_rows: Row count used for progress when rows is an iterator

        Returns:
            Number of rows copied

        Raises:
            TransferError: If the copy fails or times out
        """


class AsyncBulkLoader(ABC):
    """Async twin of `BulkLoader`."""

    @abstractmethod
    async def load(
        self,
        destination_table: str,
        column_mapping: Dict[str, str],
        rows: Iterable[Row],
        batch_size: int = 2000,
        notify_after: Optional[int] = None,
        timeout: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        total_rows: Optional[int] = None,
    ) -> int:
        pass
