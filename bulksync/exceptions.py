"""Custom exceptions for bulksync."""

from typing import List, Optional


class BulkSyncException(Exception):
    """Base exception for all bulksync errors."""

    pass


class ConfigurationError(BulkSyncException):
    """Bulk configuration is invalid or cannot be applied to the entity type.

    Always raised before any statement reaches the database.
    """

    def __init__(self, message: str, option: Optional[str] = None):
        self.message = message
        self.option = option
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = ["Bulk configuration error"]
        if self.option:
            parts.append(f"\n  Option: {self.option}")
        parts.append(f"\n  Error: {self.message}")
        return "".join(parts)


class TransferError(BulkSyncException):
    """Bulk row transfer into a destination table failed."""

    def __init__(
        self,
        destination: str,
        reason: str,
        original_error: Optional[Exception] = None,
    ):
        self.destination = destination
        self.reason = reason
        self.original_error = original_error
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Bulk transfer failed: {self.destination}", f"\n  Reason: {self.reason}"]
        if self.original_error is not None:
            parts.append(f"\n  Type: {type(self.original_error).__name__}")
        return "".join(parts)


class ReconciliationError(BulkSyncException):
    """The set-based reconciliation statement failed.

    The database error is not re-raised bare: it is wrapped so the target
    table and operation kind travel with it. Its text is kept verbatim so it
    can be diagnosed at the database level, and the original exception is
    available as ``original_error`` and as ``__cause__``.
    """

    def __init__(self, table: str, operation: str, original_error: Exception):
        self.table = table
        self.operation = operation
        self.original_error = original_error
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        return (
            f"✗ Reconciliation failed: {self.table}"
            f"\n  Operation: {self.operation}"
            f"\n  Type: {type(self.original_error).__name__}"
            f"\n  Error: {self.original_error}"
        )


class OperationCancelled(BulkSyncException):
    """Bulk operation was cancelled at a collaborator boundary."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Bulk operation cancelled after state '{state}'")


class CorrelationWarning(UserWarning):
    """Output rows could not be correlated one-to-one with the submitted entities."""

    pass


class ConnectionError(BulkSyncException):
    """Connection to the database could not be established."""

    def __init__(self, connection_name: str, reason: str, suggestions: Optional[List[str]] = None):
        self.connection_name = connection_name
        self.reason = reason
        self.suggestions = suggestions or []
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [
            f"✗ Connection failed: {self.connection_name}",
            f"\n  Reason: {self.reason}",
        ]

        if self.suggestions:
            parts.append("\n\n  Suggestions:")
            for i, suggestion in enumerate(self.suggestions, 1):
                parts.append(f"\n    {i}. {suggestion}")

        return "".join(parts)
