"""Per-type node handlers.

Every handler returns a NodeExecutionResult. Handlers never raise for
configuration or delegate problems; those become failed results so the
orchestrator can stop the branch and record the error on the node log.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import AppConfig, ConditionWaitingPolicy, get_config
from ..models.conditions import ConditionEvaluationContext
from ..models.core import (
    ActionContext,
    ExecutionContext,
    NodeDefinition,
    NodeExecutionResult,
    NodeType,
    WaitType,
)
from ..storage.repository import WorkflowStore
from .action_registry import ActionRegistry, DelegateKind
from .condition_evaluator import ConditionEvaluator
from .connections import DEFAULT_BRANCH, BranchDiscovery, NodeConnections
from .date_utils import parse_datetime, utc_now
from .exceptions import NodeConfigurationError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

DURATION_UNITS = {
    "minute": timedelta(minutes=1),
    "minutes": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
    "week": timedelta(weeks=1),
    "weeks": timedelta(weeks=1),
}

NodeHandler = Callable[[NodeDefinition, ExecutionContext], NodeExecutionResult]


def build_evaluation_context(context: ExecutionContext) -> ConditionEvaluationContext:
    """Condition namespaces for one execution: submission data, submitter and status fields."""
    trigger_data = context.trigger_data or {}
    form_data = trigger_data.get("submissionData") or trigger_data
    return ConditionEvaluationContext(
        form_data=form_data if isinstance(form_data, dict) else {},
        user_properties={
            "id": context.submitter_id,
            "role": trigger_data.get("userRole") or "user",
            "email": trigger_data.get("userEmail") or "",
        },
        system_data={
            "approvalStatus": trigger_data.get("approvalStatus"),
            "submissionStatus": trigger_data.get("submissionStatus"),
            "formStatus": trigger_data.get("formStatus"),
            "currentUserId": context.submitter_id,
            "submissionId": context.submission_id,
            "workflowExecutionId": context.execution_id,
        },
    )


class NodeExecutors:
    """Dispatches a node to the handler for its type."""

    def __init__(
        self,
        store: WorkflowStore,
        action_registry: Optional[ActionRegistry] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        config: Optional[AppConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            store: Record store used for successor lookups and wait state
            action_registry: Delegates for action and approval nodes
            condition_evaluator: Evaluator for condition nodes
            config: Engine settings; defaults to the global configuration
            clock: Callable returning the current naive UTC instant
        """
        self.store = store
        self.connections = NodeConnections(store)
        self.branch_discovery = BranchDiscovery(store)
        self.action_registry = action_registry or ActionRegistry()
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.condition_evaluator = condition_evaluator or ConditionEvaluator(clock=self.clock)

        self._handlers: Dict[NodeType, NodeHandler] = {
            NodeType.START: self.execute_start,
            NodeType.ACTION: self.execute_action,
            NodeType.APPROVAL: self.execute_approval,
            NodeType.FORM_ASSIGNMENT: self.execute_form_assignment,
            NodeType.NOTIFICATION: self.execute_notification,
            NodeType.CONDITION: self.execute_condition,
            NodeType.WAIT: self.execute_wait,
            NodeType.END: self.execute_end,
        }

    def execute(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        """
        Run the handler for ``node.node_type``.

        Returns:
            NodeExecutionResult: Failed result for unknown types or lookup errors
        """
        handler = self._handlers.get(node.node_type)
        if handler is None:
            return NodeExecutionResult(success=False, error=f"Unknown node type: {node.node_type}")

        logger.info(f"Executing {node.node_type.value} node '{node.label or node.id}'")
        try:
            return handler(node, context)
        except StorageError as e:
            logger.error(f"Storage failure while executing node {node.id}: {str(e)}")
            return NodeExecutionResult(success=False, error=e.message)

    def _next(self, node: NodeDefinition, context: ExecutionContext) -> List[str]:
        return self.connections.get_next_nodes(context.workflow_id, node.id)

    def execute_start(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        next_nodes = self._next(node, context)
        logger.debug(f"Start node {node.id} leads to {len(next_nodes)} node(s)")
        return NodeExecutionResult(
            success=True,
            output={
                "message": "Workflow started successfully",
                "triggerData": context.trigger_data,
                "triggerType": node.config.get("triggerType"),
                "formId": context.trigger_data.get("formId"),
            },
            next_node_ids=next_nodes
        )

    def _action_context(self, node: NodeDefinition, context: ExecutionContext) -> ActionContext:
        return ActionContext(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node.id,
            config=node.config,
            trigger_data=context.trigger_data,
            submission_id=context.submission_id,
            submitter_id=context.submitter_id,
        )

    def execute_action(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        action_type = node.config.get("actionType")
        result = self.action_registry.execute(DelegateKind.ACTION, action_type, self._action_context(node, context))

        # Successors are reported even on failure; the orchestrator will not follow them.
        return NodeExecutionResult(
            success=result.success,
            output=result.output or {"action": action_type, "executed": result.success},
            error=result.error,
            next_node_ids=self._next(node, context)
        )

    def execute_approval(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        approval_action = node.config.get("approvalAction")
        result = self.action_registry.execute(
            DelegateKind.APPROVAL, approval_action, self._action_context(node, context)
        )
        return NodeExecutionResult(
            success=result.success,
            output=result.output or {"approval": approval_action, "executed": result.success},
            error=result.error,
            next_node_ids=self._next(node, context)
        )

    def execute_form_assignment(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult(
            success=True,
            output={"assigned": True, "targetForm": node.config.get("targetFormId")},
            next_node_ids=self._next(node, context)
        )

    def execute_notification(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        notification_config = node.config.get("notificationConfig") or {}
        return NodeExecutionResult(
            success=True,
            output={"notificationSent": True, "type": notification_config.get("type")},
            next_node_ids=self._next(node, context)
        )

    def execute_end(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult(success=True, output={"message": "Workflow completed successfully"})

    def execute_condition(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        """
        Evaluate the node's condition and route to the matching branch.

        ``enhancedCondition`` is evaluated as an If condition, ``conditionConfig``
        as stored (If or Switch). Without either the condition is true.
        """
        config = node.config
        if config.get("enhancedCondition"):
            condition_kind = "enhanced"
            condition_config: Optional[Dict[str, Any]] = {
                "type": "if",
                "condition": config["enhancedCondition"],
                "truePath": "true",
                "falsePath": "false",
            }
        elif config.get("conditionConfig"):
            condition_kind = "legacy"
            condition_config = config["conditionConfig"]
        else:
            condition_kind = "default"
            condition_config = None

        evaluated_conditions: Dict[str, Any] = {}
        if condition_config is None:
            logger.warning(f"No condition configured on node {node.id}, defaulting to true")
            branch = "true"
        else:
            evaluation = self.condition_evaluator.evaluate(condition_config, build_evaluation_context(context))
            if not evaluation.success:
                error = evaluation.error or f"{condition_kind.capitalize()} condition evaluation failed"
                logger.error(f"Condition node {node.id} could not be evaluated: {error}")
                return NodeExecutionResult(success=False, error=error)

            evaluated_conditions = evaluation.evaluated_conditions
            if evaluation.waiting_for_value:
                if self.config.condition_waiting_policy is ConditionWaitingPolicy.SUSPEND:
                    return self._suspend_condition(node, context, condition_kind, evaluation.waiting_fields)
                logger.info(f"Condition {node.id} is waiting for data; taking the false branch")
                branch = "false"
            elif isinstance(evaluation.result, str):
                branch = evaluation.result
            else:
                branch = "true" if evaluation.result else "false"

        if branch in ("true", "false"):
            true_nodes, false_nodes = self.branch_discovery.get_conditional_branches(context.workflow_id, node.id)
            untaken = false_nodes if branch == "true" else true_nodes
        else:
            branches = self.branch_discovery.get_branch_nodes(context.workflow_id, node.id, DEFAULT_BRANCH)
            untaken = []
            for label, nodes in branches.items():
                if label != branch:
                    untaken.extend(n for n in nodes if n not in untaken)

        next_nodes = self.connections.get_next_nodes(context.workflow_id, node.id, branch)
        ignored = self._ignored_nodes(context.workflow_id, node.id, next_nodes, untaken)
        if ignored:
            self._mark_ignored(context.execution_id, ignored, f"Condition {branch.upper()} - branch ignored")

        logger.info(
            f"Condition {node.id} took the '{branch}' branch: "
            f"{len(next_nodes)} next node(s), {len(ignored)} ignored"
        )
        return NodeExecutionResult(
            success=True,
            output={
                "conditionType": condition_kind,
                "conditionResult": branch != "false",
                "nextPath": branch,
                "nextNodes": len(next_nodes),
                "ignoredNodes": len(ignored),
                "evaluationDetails": {
                    "type": condition_kind,
                    "evaluatedConditions": evaluated_conditions,
                },
            },
            next_node_ids=next_nodes
        )

    def _ignored_nodes(
        self,
        workflow_id: str,
        condition_node_id: str,
        taken_roots: List[str],
        untaken: List[str]
    ) -> List[str]:
        if not untaken:
            return []
        try:
            reachable = set(self.branch_discovery.get_reachable_nodes(workflow_id, taken_roots))
        except StorageError as e:
            logger.error(f"Could not walk the taken branch of {condition_node_id}: {str(e)}")
            reachable = set()
        return [n for n in untaken if n not in reachable and n != condition_node_id]

    def _mark_ignored(self, execution_id: str, node_ids: List[str], reason: str) -> None:
        try:
            self.store.insert_ignored_logs(execution_id, node_ids, reason)
        except StorageError as e:
            logger.error(f"Error marking nodes as ignored: {str(e)}")

    def _suspend_condition(
        self,
        node: NodeDefinition,
        context: ExecutionContext,
        condition_kind: str,
        waiting_fields: List[str]
    ) -> NodeExecutionResult:
        wait_config = {"waitType": WaitType.CONDITION_VALUE.value, "waitingFields": waiting_fields}
        if not self.store.mark_execution_waiting(context.execution_id, node.id, wait_config):
            return NodeExecutionResult(success=False, error="Execution is no longer running")

        logger.info(f"Condition {node.id} suspended the execution, waiting for: {', '.join(waiting_fields)}")
        return NodeExecutionResult(
            success=True,
            output={
                "conditionType": condition_kind,
                "conditionResult": None,
                "waitingForValue": True,
                "waitingFields": waiting_fields,
            },
            waiting=True
        )

    def execute_wait(self, node: NodeDefinition, context: ExecutionContext) -> NodeExecutionResult:
        """
        Park the execution until a duration elapses, a date passes or an event arrives.

        An ``until_date`` that is not strictly in the future is skipped and the
        node's successors run immediately.
        """
        now = self.clock()
        try:
            wait_type, resume_at, details = self._plan_wait(node.config, now)
        except NodeConfigurationError as e:
            logger.error(f"Invalid wait configuration on node {node.id}: {e.message}")
            return NodeExecutionResult(success=False, error=e.message)

        if resume_at <= now:
            logger.info(f"Wait node {node.id} target is not in the future, continuing immediately")
            return NodeExecutionResult(
                success=True,
                output={"waited": False, "waitType": wait_type.value, **details},
                next_node_ids=self._next(node, context)
            )

        wait_config = {**node.config, "waitType": wait_type.value}
        if not self.store.mark_execution_waiting(context.execution_id, node.id, wait_config, resume_at):
            return NodeExecutionResult(success=False, error="Execution is no longer running")

        logger.info(f"Execution {context.execution_id} waiting at node {node.id} until {resume_at.isoformat()}")
        return NodeExecutionResult(
            success=True,
            output={
                "waited": True,
                "waitType": wait_type.value,
                "scheduledResumeAt": resume_at.isoformat(),
                **details,
            },
            waiting=True
        )

    def _plan_wait(self, config: Dict[str, Any], now: datetime) -> Tuple[WaitType, datetime, Dict[str, Any]]:
        raw_type = config.get("waitType") or WaitType.DURATION.value
        try:
            wait_type = WaitType(raw_type)
        except ValueError:
            raise NodeConfigurationError(f"Unknown wait type: {raw_type}", config_key="waitType")

        if wait_type is WaitType.DURATION:
            value = config.get("durationValue", config.get("waitDuration"))
            unit = str(config.get("durationUnit") or config.get("waitUnit") or "minutes").lower()
            if value is None:
                raise NodeConfigurationError("Wait duration is not configured", config_key="durationValue")
            try:
                amount = float(value)
            except (TypeError, ValueError):
                raise NodeConfigurationError(f"Invalid wait duration: {value}", config_key="durationValue")
            if amount <= 0:
                raise NodeConfigurationError("Wait duration must be positive", config_key="durationValue")
            if unit not in DURATION_UNITS:
                raise NodeConfigurationError(f"Unknown duration unit: {unit}", config_key="durationUnit")
            return wait_type, now + DURATION_UNITS[unit] * amount, {"durationValue": value, "durationUnit": unit}

        if wait_type is WaitType.UNTIL_DATE:
            until = parse_datetime(config.get("untilDate"))
            if until is None:
                raise NodeConfigurationError(
                    f"Invalid untilDate: {config.get('untilDate')}", config_key="untilDate"
                )
            return wait_type, until, {"untilDate": until.isoformat()}

        if wait_type is WaitType.UNTIL_EVENT:
            event_type = config.get("eventType")
            ceiling = now + timedelta(days=self.config.until_event_ceiling_days)
            if not event_type:
                # Only the due sweep or a manual resume can wake it
                logger.warning(f"until_event wait has no eventType; parking until {ceiling.isoformat()}")
                return wait_type, ceiling, {}
            return wait_type, ceiling, {"eventType": event_type}

        raise NodeConfigurationError(f"Wait type {wait_type.value} cannot be configured on a wait node", config_key="waitType")
