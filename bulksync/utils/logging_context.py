"""Context-aware logging for bulk operations.

Binds the operation id, target table and operation kind to every log line and
times the individual phases of a bulk call.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from bulksync.utils.logging import StructuredLogger


class OperationPhase(str, Enum):
    """Phases of a bulk call that are timed and logged."""

    RESOLVE = "resolve"
    STAGE = "stage"
    LOAD = "load"
    RECONCILE = "reconcile"
    READ_OUTPUT = "read_output"
    PROPAGATE = "propagate"
    STATS = "stats"
    CLEANUP = "cleanup"


@dataclass
class OperationMetrics:
    """Timing and row counts collected for one phase."""

    start_time: Optional[float] = None
    end_time: Optional[float] = None
    rows_in: Optional[int] = None
    rows_out: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    @property
    def row_delta(self) -> Optional[int]:
        if self.rows_in is None or self.rows_out is None:
            return None
        return self.rows_out - self.rows_in

    def to_dict(self) -> Dict[str, Any]:
        """Only populated fields are returned."""
        result: Dict[str, Any] = {}
        if self.elapsed_ms is not None:
            result["elapsed_ms"] = round(self.elapsed_ms, 2)
        if self.rows_in is not None:
            result["rows_in"] = self.rows_in
        if self.rows_out is not None:
            result["rows_out"] = self.rows_out
        if self.row_delta is not None:
            result["row_delta"] = self.row_delta
        result.update(self.extra)
        return result


class LoggingContext:
    """Logger wrapper that carries bulk-call identifiers into every entry."""

    def __init__(
        self,
        logger: Optional[StructuredLogger] = None,
        operation_id: Optional[str] = None,
        table: Optional[str] = None,
        operation_kind: Optional[str] = None,
    ):
        self._logger = logger
        self.operation_id = operation_id
        self.table = table
        self.operation_kind = operation_kind

    @property
    def logger(self) -> StructuredLogger:
        if self._logger is not None:
            return self._logger
        from bulksync.utils import logging as logging_module

        return logging_module.logger

    def _base_context(self) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        if self.operation_id:
            context["operation_id"] = self.operation_id
        if self.table:
            context["table"] = self.table
        if self.operation_kind:
            context["operation"] = self.operation_kind
        return context

    def with_context(self, **kwargs) -> "LoggingContext":
        """Return a copy with some identifiers replaced."""
        return LoggingContext(
            logger=self._logger,
            operation_id=kwargs.get("operation_id", self.operation_id),
            table=kwargs.get("table", self.table),
            operation_kind=kwargs.get("operation_kind", self.operation_kind),
        )

    def __enter__(self) -> "LoggingContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is not None:
            self.error(
                "Bulk operation raised",
                error_type=exc_type.__name__,
                error_message=str(exc_val),
            )
        return False

    def _log(self, level: str, message: str, **kwargs):
        payload = {**self._base_context(), **kwargs}
        getattr(self.logger, level)(message, **payload)

    def info(self, message: str, **kwargs):
        self._log("info", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log("warning", message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log("error", message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log("debug", message, **kwargs)

    def log_operation_start(self, phase: OperationPhase, description: str = "") -> OperationMetrics:
        self.debug(f"Starting {phase.value}", description=description)
        return OperationMetrics(start_time=time.perf_counter())

    def log_operation_end(
        self,
        phase: OperationPhase,
        metrics: OperationMetrics,
        success: bool = True,
    ) -> None:
        metrics.end_time = time.perf_counter()
        if success:
            self.debug(f"Completed {phase.value}", **metrics.to_dict())
        else:
            self.error(f"Failed {phase.value}", **metrics.to_dict())

    @contextmanager
    def operation(self, phase: OperationPhase, description: str = "") -> Iterator[OperationMetrics]:
        """Time a phase, logging start and completion or failure."""
        metrics = self.log_operation_start(phase, description)
        try:
            yield metrics
        except Exception as e:
            metrics.extra["error_type"] = type(e).__name__
            self.log_operation_end(phase, metrics, success=False)
            raise
        self.log_operation_end(phase, metrics)

    def log_row_count_change(self, rows_in: int, rows_out: int, operation: str = "") -> None:
        if rows_in == rows_out:
            self.debug("Row count unchanged", rows=rows_in, operation=operation)
        else:
            self.info(
                f"Row count changed {rows_in} -> {rows_out}",
                rows_in=rows_in,
                rows_out=rows_out,
                operation=operation,
            )


_global_context: Optional[LoggingContext] = None


def get_logging_context() -> LoggingContext:
    """Return the process-wide logging context, creating it on first use."""
    global _global_context
    if _global_context is None:
        _global_context = LoggingContext()
    return _global_context


def set_logging_context(context: LoggingContext) -> None:
    global _global_context
    _global_context = context


def create_logging_context(
    operation_id: Optional[str] = None,
    table: Optional[str] = None,
    operation_kind: Optional[str] = None,
    logger: Optional[StructuredLogger] = None,
) -> LoggingContext:
    return LoggingContext(logger=logger, operation_id=operation_id, table=table, operation_kind=operation_kind)
