"""Utilities for bulksync.

Includes:
- Structured logging and context-aware logging
- Cooperative cancellation
"""

from .cancellation import CancellationToken
from .logging import StructuredLogger, configure_logging, logger
from .logging_context import (
    LoggingContext,
    OperationMetrics,
    OperationPhase,
    create_logging_context,
    get_logging_context,
    set_logging_context,
)

__all__ = [
    "CancellationToken",
    "StructuredLogger",
    "configure_logging",
    "logger",
    "LoggingContext",
    "OperationMetrics",
    "OperationPhase",
    "create_logging_context",
    "get_logging_context",
    "set_logging_context",
]
