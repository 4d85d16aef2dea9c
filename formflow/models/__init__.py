"""Data models for the workflow engine."""

from .core import (
    NodeType,
    ExecutionStatusEnum,
    NodeLogStatus,
    WorkflowStatus,
    WaitType,
    NodeDefinition,
    ConnectionDefinition,
    WorkflowDefinition,
    WorkflowSummary,
    ValidationResult,
    ExecutionRecord,
    NodeExecutionLogEntry,
    NodeExecutionResult,
    ExecutionContext,
    ExecutionOutcome,
)

__all__ = [
    "NodeType",
    "ExecutionStatusEnum",
    "NodeLogStatus",
    "WorkflowStatus",
    "WaitType",
    "NodeDefinition",
    "ConnectionDefinition",
    "WorkflowDefinition",
    "WorkflowSummary",
    "ValidationResult",
    "ExecutionRecord",
    "NodeExecutionLogEntry",
    "NodeExecutionResult",
    "ExecutionContext",
    "ExecutionOutcome",
]
