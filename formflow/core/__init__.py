"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowNotFoundError,
    NodeExecutionError,
    NodeConfigurationError,
    ConditionEvaluationError,
    ExpressionError,
    ActionRegistryError,
    ExecutionEngineError,
    StorageError,
    TransientError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "WorkflowNotFoundError",
    "NodeExecutionError",
    "NodeConfigurationError",
    "ConditionEvaluationError",
    "ExpressionError",
    "ActionRegistryError",
    "ExecutionEngineError",
    "StorageError",
    "TransientError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
