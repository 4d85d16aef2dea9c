"""Workflow Manager for workflow definition handling."""

import uuid
from typing import Any, Dict, List, Optional, Set

from ..models.core import (
    NodeDefinition,
    NodeType,
    ValidationResult,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowSummary,
)
from ..storage.repository import WorkflowStore
from .exceptions import WorkflowNotFoundError, WorkflowValidationError
from .expression import extract_condition_ids, validate_expression
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, validation, and storage."""

    def __init__(self, store: Optional[WorkflowStore] = None):
        self.store = store or WorkflowStore()

    def create_workflow(self, definition: WorkflowDefinition) -> str:
        """
        Validate and store a new workflow.

        Args:
            definition: The workflow definition to create

        Returns:
            str: Unique workflow identifier

        Raises:
            WorkflowValidationError: If workflow validation fails
            StorageError: If storage operation fails
        """
        logger.info(f"Creating new workflow: {definition.name}")

        validation_result = self.validate_workflow(definition)
        if not validation_result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(validation_result.errors)}"
            logger.error(error_msg)
            raise WorkflowValidationError(
                error_msg,
                validation_errors=validation_result.errors,
                workflow_name=definition.name
            )

        if validation_result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(validation_result.warnings)}")

        workflow_id = str(uuid.uuid4())
        self.store.save_workflow(workflow_id, definition)

        logger.info(f"Successfully created workflow '{definition.name}' with ID: {workflow_id}")
        return workflow_id

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Raises:
            WorkflowNotFoundError: If no workflow has this id
        """
        definition = self.store.get_workflow(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(
                f"Workflow with ID '{workflow_id}' not found",
                resource="workflow",
                resource_id=workflow_id
            )
        return definition

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[WorkflowSummary]:
        summaries = self.store.list_workflows(status)
        logger.debug(f"Retrieved {len(summaries)} workflow summaries")
        return summaries

    def set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        """Activate or deactivate a workflow; only active workflows are triggered."""
        if not self.store.set_workflow_status(workflow_id, status):
            raise WorkflowNotFoundError(
                f"Workflow with ID '{workflow_id}' not found",
                resource="workflow",
                resource_id=workflow_id
            )
        logger.info(f"Workflow {workflow_id} is now {status.value}")

    def delete_workflow(self, workflow_id: str) -> bool:
        logger.info(f"Deleting workflow with ID: {workflow_id}")
        deleted = self.store.delete_workflow(workflow_id)
        if not deleted:
            logger.warning(f"Workflow with ID '{workflow_id}' not found for deletion")
        return deleted

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition for structural correctness.

        Cycles are reported as warnings only; loops are bounded at run time.

        Args:
            definition: The workflow definition to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not definition.nodes:
            errors.append("Workflow must contain at least one node")
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        node_ids: Set[str] = set()
        for node in definition.nodes:
            if node.id in node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            node_ids.add(node.id)

        for connection in definition.connections:
            if connection.source_node_id not in node_ids:
                errors.append(f"Connection references non-existent source node: '{connection.source_node_id}'")
            if connection.target_node_id not in node_ids:
                errors.append(f"Connection references non-existent target node: '{connection.target_node_id}'")

        start_nodes = [node.id for node in definition.nodes if node.node_type is NodeType.START]
        if not start_nodes:
            errors.append("Workflow must contain a start node")

        adjacency = self._adjacency(definition)
        if self._has_cycles(adjacency):
            warnings.append(
                "Workflow contains cycles. Each node runs at most the configured "
                "loop limit per execution."
            )

        if start_nodes:
            unreachable = node_ids - self._reachable(start_nodes, adjacency)
            if unreachable:
                warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")

        for node in definition.nodes:
            if node.node_type is NodeType.CONDITION:
                warnings.extend(self._manual_expression_warnings(node))

        logger.debug(f"Workflow validation completed. Valid: {not errors}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def _manual_expression_warnings(node: NodeDefinition) -> List[str]:
        """Manual expressions that would fall back to sequential evaluation at run time."""
        found: List[str] = []
        pending: List[Any] = [node.config]
        while pending:
            item = pending.pop(0)
            if isinstance(item, list):
                pending.extend(item)
                continue
            if not isinstance(item, dict):
                continue
            pending.extend(item.values())

            expression = item.get("manualExpression")
            if not item.get("useManualExpression") or not expression:
                continue
            check = validate_expression(expression)
            if not check["valid"]:
                found.append(f"Condition node '{node.id}' has an invalid manual expression: {check['error']}")
                continue
            count = len(item.get("conditions") or [])
            unknown = []
            for condition_id in extract_condition_ids(expression):
                in_range = condition_id.isdigit() and 1 <= int(condition_id) <= count
                if not in_range and condition_id not in unknown:
                    unknown.append(condition_id)
            if unknown:
                found.append(
                    f"Condition node '{node.id}' manual expression references unknown conditions: "
                    f"{', '.join(unknown)}"
                )
        return found

    @staticmethod
    def _adjacency(definition: WorkflowDefinition) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
        for connection in definition.connections:
            if connection.source_node_id in adjacency:
                adjacency[connection.source_node_id].append(connection.target_node_id)
        return adjacency

    @staticmethod
    def _reachable(start_nodes: List[str], adjacency: Dict[str, List[str]]) -> Set[str]:
        reachable: Set[str] = set()
        stack = list(start_nodes)
        while stack:
            node_id = stack.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            stack.extend(adjacency.get(node_id, []))
        return reachable

    @staticmethod
    def _has_cycles(adjacency: Dict[str, List[str]]) -> bool:
        # Iterative three-colour DFS
        white, grey, black = 0, 1, 2
        colour = {node_id: white for node_id in adjacency}
        for root in adjacency:
            if colour[root] != white:
                continue
            stack = [(root, iter(adjacency[root]))]
            colour[root] = grey
            while stack:
                node_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    colour[node_id] = black
                    stack.pop()
                elif colour.get(child, black) == grey:
                    return True
                elif colour.get(child, black) == white:
                    colour[child] = grey
                    stack.append((child, iter(adjacency[child])))
        return False
