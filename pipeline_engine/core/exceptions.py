"""Exception hierarchy for the pipeline execution engine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    CANCELLATION = "cancellation"


class WorkflowEngineError(Exception):
    """Base exception for all pipeline engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class ValidationError(WorkflowEngineError):
    """Raised when a workflow fails validation.

    Carries every violation found so a caller can report all problems at once.
    """

    def __init__(
        self,
        message: str,
        violations: Optional[Iterable[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)
        self.violations: List[str] = list(violations or [])
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if self.violations:
            self.add_details(violations=self.violations)


class MalformedGraphError(ValidationError):
    """Raised when edges reference unknown nodes, node ids repeat, or an edge loops on itself."""


class CycleDetectedError(ValidationError):
    """Raised when the workflow graph is not a DAG."""

    def __init__(
        self,
        message: str,
        cycle_nodes: Iterable[str],
        violations: Optional[Iterable[str]] = None,
        **kwargs
    ):
        self.cycle_nodes = frozenset(cycle_nodes)
        super().__init__(message, violations=violations, **kwargs)
        self.add_details(cycle_nodes=sorted(self.cycle_nodes))


class UnknownNodeTypeError(WorkflowEngineError):
    """Raised when no handler is registered for a node type."""

    def __init__(self, node_type: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"No handler registered for node type '{node_type}'",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            recoverable=False,
            **kwargs
        )
        self.node_type = node_type
        self.add_context(node_type=node_type)
        if node_id:
            self.add_context(node_id=node_id)


class ServiceError(WorkflowEngineError):
    """Base class for failures reported by an external generation service."""

    def __init__(self, message: str, capability: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, **kwargs)
        if capability:
            self.add_context(capability=capability)


class ServiceTimeoutError(ServiceError):
    """The service (or the engine's per-node timeout) gave up waiting."""

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        if timeout is not None:
            self.add_details(timeout=timeout)


class RateLimitedError(ServiceError):
    """The service asked the caller to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, recoverable=True, retry_after=retry_after, **kwargs)


class ProviderError(ServiceError):
    """The provider failed on its side or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, recoverable=True, severity=ErrorSeverity.HIGH, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.add_details(status_code=status_code)


class InvalidInputError(ServiceError):
    """The request was rejected as invalid; retrying cannot help."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, recoverable=False, category=ErrorCategory.VALIDATION, **kwargs)


class RunCancelledError(WorkflowEngineError):
    """Recorded on nodes interrupted by run cancellation."""

    def __init__(self, message: str = "Run cancelled", run_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CANCELLATION,
            recoverable=False,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("recoverable", True)
        kwargs.setdefault("retry_after", 3)
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class WorkflowNotFoundError(StorageError):
    """Raised when a workflow id is unknown to the store."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' not found",
            operation="load",
            recoverable=False,
            retry_after=None,
            **kwargs
        )
        self.workflow_id = workflow_id
        self.add_context(workflow_id=workflow_id)


class RunNotFoundError(StorageError):
    """Raised when a run id is neither live nor persisted."""

    def __init__(self, run_id: str, **kwargs):
        super().__init__(
            f"Run '{run_id}' not found",
            operation="get_run",
            recoverable=False,
            retry_after=None,
            **kwargs
        )
        self.run_id = run_id
        self.add_context(run_id=run_id)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
