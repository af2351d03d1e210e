"""Core pipeline engine components."""

from .exceptions import (
    WorkflowEngineError,
    ValidationError,
    MalformedGraphError,
    CycleDetectedError,
    UnknownNodeTypeError,
    ServiceError,
    ServiceTimeoutError,
    RateLimitedError,
    ProviderError,
    InvalidInputError,
    RunCancelledError,
    ExecutionEngineError,
    StorageError,
    WorkflowNotFoundError,
    RunNotFoundError,
    ConfigurationError,
)
from .logging import configure_logging, setup_logging, get_logger
from .graph import WorkflowGraph
from .validator import GraphValidator, ValidatedGraph, validate_workflow
from .context import ExecutionContext

__all__ = [
    "WorkflowEngineError",
    "ValidationError",
    "MalformedGraphError",
    "CycleDetectedError",
    "UnknownNodeTypeError",
    "ServiceError",
    "ServiceTimeoutError",
    "RateLimitedError",
    "ProviderError",
    "InvalidInputError",
    "RunCancelledError",
    "ExecutionEngineError",
    "StorageError",
    "WorkflowNotFoundError",
    "RunNotFoundError",
    "ConfigurationError",
    "configure_logging",
    "setup_logging",
    "get_logger",
    "WorkflowGraph",
    "GraphValidator",
    "ValidatedGraph",
    "validate_workflow",
    "ExecutionContext",
]
