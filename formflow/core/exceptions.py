"""Exception hierarchy of the workflow engine.

Every engine error carries a category and severity used for HTTP mapping and
logging, plus a ``context`` dict naming the workflow, execution, node or
record involved. Subclasses declare their classification as class attributes;
any extra keyword argument given when raising becomes context.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from .date_utils import utc_now


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXECUTION = "execution"
    CONDITION = "condition"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    category = ErrorCategory.EXECUTION
    severity = ErrorSeverity.MEDIUM
    recoverable = False
    retry_after: Optional[int] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        **context: Any
    ):
        """
        Args:
            message: Human readable description, also used as ``str(error)``
            error_code: Stable code for API clients; defaults to the class name
            details: Structured data describing the failure
            **context: Identifiers of the records involved; ``None`` values are dropped
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        self.context = {key: value for key, value in context.items() if value is not None}
        self.timestamp = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Error body returned by the API."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": {
                **self.details,
                "severity": self.severity.value,
                "category": self.category.value,
                "recoverable": self.recoverable,
                "retry_after": self.retry_after,
                "timestamp": self.timestamp.isoformat(),
            },
            "context": self.context,
        }


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a workflow definition fails validation."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **context: Any):
        self.validation_errors = list(validation_errors or [])
        details = {"validation_errors": self.validation_errors} if self.validation_errors else None
        super().__init__(message, details=details, **context)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow, node or execution record does not exist."""

    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node handler cannot run its node."""

    severity = ErrorSeverity.HIGH


class NodeConfigurationError(NodeExecutionError):
    """Raised when a node's config is missing or malformed."""

    category = ErrorCategory.CONFIGURATION


class ConditionEvaluationError(WorkflowEngineError):
    """Raised when a condition configuration cannot be evaluated."""

    category = ErrorCategory.CONDITION


class ExpressionError(ConditionEvaluationError):
    """Raised when a manual logical expression such as ``1 AND (2 OR 3)`` is malformed."""


class ActionRegistryError(WorkflowEngineError):
    """Raised when action delegate registration or lookup fails."""

    category = ErrorCategory.CONFIGURATION


class ExecutionEngineError(WorkflowEngineError):
    """Raised when an execution cannot be created, continued or resumed."""

    severity = ErrorSeverity.HIGH


class StorageError(WorkflowEngineError):
    """Raised when the record store cannot read or write."""

    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.HIGH
    recoverable = True
    retry_after = 3


class TransientError(StorageError):
    """Raised when the database is momentarily unavailable, e.g. locked."""

    severity = ErrorSeverity.MEDIUM
    retry_after = 5


class ConfigurationError(WorkflowEngineError):
    """Raised when application settings are unusable on this host."""

    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return error.to_dict()
