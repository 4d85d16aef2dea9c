"""Workflow orchestrator: drives one execution through its graph."""

import time
from typing import Any, Dict, List, Optional, Tuple

from ..config import AppConfig, get_config
from ..models.core import (
    ExecutionContext,
    ExecutionOutcome,
    ExecutionStatusEnum,
    NodeDefinition,
    NodeExecutionResult,
    NodeLogStatus,
    NodeType,
)
from ..storage.repository import WorkflowStore
from .action_registry import ActionRegistry
from .exceptions import (
    ExecutionEngineError,
    StorageError,
    WorkflowEngineError,
    WorkflowNotFoundError,
)
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_executors import NodeExecutors

logger = get_logger(__name__)

Frame = Tuple[str, Dict[str, Any]]


class ExecutionRun:
    """
    Depth-first walk of one execution from a set of root nodes.

    The run owns its pending frames and its per-node visit counter, so
    concurrent executions share no mutable state.
    """

    def __init__(self, orchestrator: "WorkflowOrchestrator", context: ExecutionContext):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.executors = orchestrator.node_executors
        self.context = context
        self.max_visits = orchestrator.config.max_loop_iterations
        self.cancel_siblings = orchestrator.config.cancel_siblings_on_terminal

        self.visit_counts: Dict[str, int] = {}
        self.pending: List[Frame] = []
        self.first_error: Optional[str] = None
        self.reached_terminal = False
        self.paused = False

    def run(self, root_node_ids: List[str], input_data: Dict[str, Any]) -> None:
        self._push(root_node_ids, input_data)

        while self.pending:
            node_id, node_input = self.pending.pop()
            terminal = self._visit(node_id, node_input)
            if terminal:
                self.reached_terminal = True
                if self.cancel_siblings and self.pending:
                    logger.info(f"Terminal path reached, skipping {len(self.pending)} pending node(s)")
                    self.pending.clear()

    def _push(self, node_ids: List[str], input_data: Dict[str, Any]) -> None:
        # Reversed so the first successor is popped first.
        for node_id in reversed(node_ids):
            self.pending.append((node_id, input_data))

    def _fail(self, error: str) -> None:
        if self.first_error is None:
            self.first_error = error

    def _visit(self, node_id: str, node_input: Dict[str, Any]) -> bool:
        """Execute one node. Returns True when its path ended in a terminal state."""
        visits = self.visit_counts.get(node_id, 0)
        self.visit_counts[node_id] = visits + 1
        if visits >= self.max_visits:
            logger.warning(f"Max loop iterations ({self.max_visits}) reached for node {node_id}, stopping loop")
            return True
        if visits > 0:
            logger.debug(f"Loop-back: executing node {node_id} again (iteration {visits + 1})")

        try:
            node = self.store.get_node(self.context.workflow_id, node_id)
        except (WorkflowEngineError, ValueError) as e:
            logger.error(f"Error fetching node {node_id}: {str(e)}")
            node = None
        if node is None:
            self._fail(f"Node not found: {node_id}")
            return False

        self.store.update_current_node(self.context.execution_id, node.id)
        log_id = self.store.create_node_log(self.context.execution_id, node, node_input)

        started = time.perf_counter()
        try:
            result = self.executors.execute(node, self.context)
        except Exception as e:
            logger.error(f"Error executing node {node.id}: {str(e)}")
            result = NodeExecutionResult(success=False, error=str(e) or "Node execution failed")
        duration_ms = int((time.perf_counter() - started) * 1000)

        return self._record(node, result, log_id, duration_ms, node_input)

    def _record(
        self,
        node: NodeDefinition,
        result: NodeExecutionResult,
        log_id: Optional[int],
        duration_ms: int,
        node_input: Dict[str, Any]
    ) -> bool:
        if result.waiting:
            self.store.update_node_log(log_id, NodeLogStatus.WAITING, result.output, duration_ms=duration_ms)
            self.paused = True
            logger.info(f"Execution paused at {node.node_type.value} node {node.id}")
            return False

        if not result.success:
            self.store.update_node_log(
                log_id, NodeLogStatus.FAILED, result.output, result.error, duration_ms
            )
            logger.error(f"Node {node.id} failed: {result.error}")
            self._fail(result.error or f"Node {node.id} failed")
            return False

        self.store.update_node_log(log_id, NodeLogStatus.COMPLETED, result.output, duration_ms=duration_ms)

        if node.node_type is NodeType.END:
            logger.info("Workflow completed - end node reached")
            return True
        if not result.next_node_ids:
            logger.info(f"No successors after node {node.id}, branch completed")
            return True

        self._push(result.next_node_ids, result.output or node_input)
        return False


class WorkflowOrchestrator:
    """Creates executions, runs them and writes their final status."""

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        node_executors: Optional[NodeExecutors] = None,
        action_registry: Optional[ActionRegistry] = None,
        config: Optional[AppConfig] = None
    ):
        """
        Args:
            store: Record store; defaults to one on the global database
            node_executors: Handler dispatch; built from the other arguments if omitted
            action_registry: Delegates for action and approval nodes
            config: Engine settings; defaults to the global configuration
        """
        self.config = config or get_config()
        self.store = store or WorkflowStore()
        self.node_executors = node_executors or NodeExecutors(
            self.store, action_registry=action_registry, config=self.config
        )

    def execute_workflow(
        self,
        workflow_id: str,
        start_node_id: str,
        payload: Dict[str, Any],
        submission_id: Optional[str] = None,
        submitter_id: Optional[str] = None,
        form_owner_id: Optional[str] = None
    ) -> ExecutionOutcome:
        """
        Create an execution and run it from ``start_node_id``.

        Returns:
            ExecutionOutcome: Final or waiting status of the new execution

        Raises:
            ExecutionEngineError: If the execution record cannot be created
        """
        try:
            execution_id = self.store.create_execution(
                workflow_id,
                start_node_id,
                trigger_data=payload,
                form_submission_id=submission_id,
                submitter_id=submitter_id,
                form_owner_id=form_owner_id,
            )
        except StorageError as e:
            raise ExecutionEngineError(
                f"Failed to create workflow execution: {e.message}",
                workflow_id=workflow_id
            )

        logger.info(f"Created execution {execution_id} for workflow {workflow_id}")
        context = ExecutionContext(
            execution_id=execution_id,
            workflow_id=workflow_id,
            trigger_data=payload or {},
            submission_id=submission_id,
            submitter_id=submitter_id,
            form_owner_id=form_owner_id,
        )
        return self._run(context, [start_node_id], payload or {})

    def continue_from_node(
        self,
        execution_id: str,
        workflow_id: str,
        node_id: str,
        payload: Dict[str, Any],
        submission_id: Optional[str] = None,
        submitter_id: Optional[str] = None
    ) -> ExecutionOutcome:
        """
        Resume an existing execution by running ``node_id`` itself.

        A waiting execution is moved back to running first; completed or
        failed executions are refused.

        Raises:
            WorkflowNotFoundError: If the execution does not exist
            ExecutionEngineError: If the execution is finished or was resumed elsewhere
        """
        context = self._prepare_continuation(execution_id, workflow_id, payload, submission_id, submitter_id)
        return self._run(context, [node_id], payload or {})

    def continue_after_node(
        self,
        execution_id: str,
        workflow_id: str,
        node_id: str,
        payload: Dict[str, Any],
        submission_id: Optional[str] = None,
        submitter_id: Optional[str] = None
    ) -> ExecutionOutcome:
        """Resume an execution with the unconditional successors of ``node_id``."""
        context = self._prepare_continuation(execution_id, workflow_id, payload, submission_id, submitter_id)
        next_nodes = self.node_executors.connections.get_next_nodes(workflow_id, node_id)
        return self._run(context, next_nodes, payload or {})

    def _prepare_continuation(
        self,
        execution_id: str,
        workflow_id: str,
        payload: Dict[str, Any],
        submission_id: Optional[str],
        submitter_id: Optional[str]
    ) -> ExecutionContext:
        record = self.store.get_execution(execution_id)
        if record is None:
            raise WorkflowNotFoundError(
                f"Execution {execution_id} not found",
                resource="execution",
                resource_id=execution_id
            )

        if record.status in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.FAILED):
            raise ExecutionEngineError(
                f"Execution {execution_id} is already {record.status.value}",
                execution_id=execution_id,
                workflow_id=workflow_id
            )

        if record.status is ExecutionStatusEnum.WAITING and not self.store.resume_execution(execution_id):
            raise ExecutionEngineError(
                f"Execution {execution_id} was resumed by another caller",
                execution_id=execution_id,
                workflow_id=workflow_id
            )

        return ExecutionContext(
            execution_id=execution_id,
            workflow_id=workflow_id,
            trigger_data=payload or {},
            submission_id=submission_id or record.form_submission_id,
            submitter_id=submitter_id or record.submitter_id,
            form_owner_id=record.form_owner_id,
        )

    def _run(self, context: ExecutionContext, root_node_ids: List[str], input_data: Dict[str, Any]) -> ExecutionOutcome:
        set_logging_context(execution_id=context.execution_id, workflow_id=context.workflow_id)
        try:
            run = ExecutionRun(self, context)
            run.run(root_node_ids, input_data)
            return self._finalize(context, run)
        finally:
            clear_logging_context("execution_id", "workflow_id")

    def _finalize(self, context: ExecutionContext, run: ExecutionRun) -> ExecutionOutcome:
        """Write completed or failed, unless a node already parked the execution."""
        status = ExecutionStatusEnum.FAILED if run.first_error else ExecutionStatusEnum.COMPLETED
        if self.store.finalize_execution(context.execution_id, status, run.first_error):
            logger.info(f"Execution {context.execution_id} {status.value}")
        else:
            record = self.store.get_execution(context.execution_id)
            status = record.status if record else status
            if status is ExecutionStatusEnum.WAITING:
                logger.info(f"Execution {context.execution_id} is waiting, preserving waiting status")

        return ExecutionOutcome(
            execution_id=context.execution_id,
            success=run.first_error is None,
            status=status,
            error=run.first_error,
            is_waiting=status is ExecutionStatusEnum.WAITING,
        )
