"""Persistence of workflow definitions, executions and node execution logs."""

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.date_utils import utc_now
from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import StorageError, TransientError
from ..core.logging import get_logger
from ..models.core import (
    ConnectionDefinition,
    ExecutionRecord,
    ExecutionStatusEnum,
    NodeDefinition,
    NodeExecutionLogEntry,
    NodeLogStatus,
    NodeType,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowSummary,
)
from . import database
from .models import (
    FormModel,
    NodeExecutionLogModel,
    UserProfileModel,
    WorkflowConnectionModel,
    WorkflowExecutionModel,
    WorkflowModel,
    WorkflowNodeModel,
)

logger = get_logger(__name__)

IGNORED_NODE_TYPE = "ignored"
IGNORED_NODE_LABEL = "Ignored Node"


def json_safe(value: Any) -> Any:
    """Round-trip through JSON so datetimes and other objects store cleanly."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def audit_safe(value: Any) -> Any:
    """Like ``json_safe``, but a payload JSON cannot hold becomes a placeholder."""
    try:
        return json_safe(value)
    except (TypeError, ValueError) as e:
        logger.warning(f"Audit payload is not JSON serializable: {str(e)}")
        return {"unserializable": type(value).__name__, "error": str(e)}


class WorkflowStore:
    """Reads and writes the records the engine works with.

    Every public method opens its own short-lived session, so one store can be
    shared by concurrent executions.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        """
        Args:
            session_factory: Callable returning a new Session. Defaults to the
                global session factory from ``formflow.storage.database``.
        """
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._session_factory is not None:
            session = self._session_factory()
        else:
            database.get_database_engine()
            session = database.SessionLocal()
        try:
            yield session
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    # Workflow definitions

    def save_workflow(self, workflow_id: str, definition: WorkflowDefinition) -> None:
        """
        Store a new workflow with its nodes and connections.

        Raises:
            StorageError: If the workflow cannot be written
        """
        try:
            with self._session() as db:
                workflow = WorkflowModel(
                    id=workflow_id,
                    name=definition.name,
                    description=definition.description,
                    status=definition.status.value,
                    created_by=definition.created_by,
                )
                db.add(workflow)
                for position, node in enumerate(definition.nodes):
                    db.add(WorkflowNodeModel(
                        workflow_id=workflow_id,
                        id=node.id,
                        node_type=node.node_type.value,
                        label=node.label,
                        config=json_safe(node.config),
                        position=position,
                    ))
                for position, connection in enumerate(definition.connections):
                    db.add(WorkflowConnectionModel(
                        workflow_id=workflow_id,
                        source_node_id=connection.source_node_id,
                        target_node_id=connection.target_node_id,
                        condition_type=connection.condition_type,
                        source_handle=connection.source_handle,
                        position=position,
                    ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while saving workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="save_workflow", table="workflows")

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        try:
            with self._session() as db:
                workflow = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
                if workflow is None:
                    return None
                nodes = sorted(workflow.nodes, key=lambda node: node.position or 0)
                return WorkflowDefinition(
                    name=workflow.name,
                    description=workflow.description or "",
                    status=WorkflowStatus(workflow.status),
                    created_by=workflow.created_by,
                    nodes=[self._node_from_row(node) for node in nodes],
                    connections=[self._connection_from_row(edge) for edge in workflow.connections],
                )
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_workflow", table="workflows")

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[WorkflowSummary]:
        try:
            with self._session() as db:
                query = db.query(WorkflowModel)
                if status is not None:
                    query = query.filter(WorkflowModel.status == status.value)
                rows = query.order_by(WorkflowModel.created_at.asc(), WorkflowModel.id.asc()).all()
                return [
                    WorkflowSummary(
                        id=row.id,
                        name=row.name,
                        description=row.description or "",
                        status=WorkflowStatus(row.status),
                        created_at=row.created_at,
                        node_count=len(row.nodes),
                    )
                    for row in rows
                ]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows", table="workflows")

    def list_active_workflows(self) -> List[WorkflowSummary]:
        return self.list_workflows(status=WorkflowStatus.ACTIVE)

    def set_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> bool:
        try:
            with self._session() as db:
                updated = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).update(
                    {WorkflowModel.status: status.value, WorkflowModel.updated_at: utc_now()},
                    synchronize_session=False
                )
                db.commit()
                return updated > 0
        except SQLAlchemyError as e:
            logger.error(f"Database error while updating workflow status: {str(e)}")
            raise StorageError(f"Failed to update workflow status: {str(e)}", operation="set_workflow_status")

    def delete_workflow(self, workflow_id: str) -> bool:
        try:
            with self._session() as db:
                workflow = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
                if workflow is None:
                    return False
                db.delete(workflow)
                db.commit()
                return True
        except SQLAlchemyError as e:
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete_workflow")

    # Nodes and connections

    def get_node(self, workflow_id: str, node_id: str) -> Optional[NodeDefinition]:
        try:
            with self._session() as db:
                row = db.query(WorkflowNodeModel).filter(
                    WorkflowNodeModel.workflow_id == workflow_id,
                    WorkflowNodeModel.id == node_id
                ).first()
                return self._node_from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while fetching node {node_id}: {str(e)}")
            raise StorageError(f"Failed to fetch node: {str(e)}", operation="get_node", table="workflow_nodes")

    def get_start_nodes(self, workflow_id: str) -> List[NodeDefinition]:
        try:
            with self._session() as db:
                rows = db.query(WorkflowNodeModel).filter(
                    WorkflowNodeModel.workflow_id == workflow_id,
                    WorkflowNodeModel.node_type == NodeType.START.value
                ).order_by(WorkflowNodeModel.position.asc()).all()
                return [self._node_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error while fetching start nodes: {str(e)}")
            raise StorageError(f"Failed to fetch start nodes: {str(e)}", operation="get_start_nodes")

    def get_connections(self, workflow_id: str, source_node_id: str) -> List[ConnectionDefinition]:
        """Outgoing edges of a node in their stored order."""
        try:
            with self._session() as db:
                rows = db.query(WorkflowConnectionModel).filter(
                    WorkflowConnectionModel.workflow_id == workflow_id,
                    WorkflowConnectionModel.source_node_id == source_node_id
                ).order_by(WorkflowConnectionModel.position.asc(), WorkflowConnectionModel.id.asc()).all()
                return [self._connection_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error while fetching connections: {str(e)}")
            raise StorageError(
                f"Failed to fetch connections: {str(e)}",
                operation="get_connections",
                table="workflow_connections"
            )

    # Executions

    @with_retry(RetryConfig(max_attempts=3))
    def create_execution(
        self,
        workflow_id: str,
        start_node_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        form_submission_id: Optional[str] = None,
        submitter_id: Optional[str] = None,
        form_owner_id: Optional[str] = None,
    ) -> str:
        """
        Create an execution row in the running status.

        Returns:
            str: The new execution id

        Raises:
            StorageError: If the row cannot be written after retries
        """
        execution_id = str(uuid.uuid4())
        try:
            with self._session() as db:
                db.add(WorkflowExecutionModel(
                    id=execution_id,
                    workflow_id=workflow_id,
                    status=ExecutionStatusEnum.RUNNING.value,
                    current_node_id=start_node_id,
                    trigger_data=json_safe(trigger_data or {}),
                    form_submission_id=form_submission_id,
                    submitter_id=submitter_id,
                    form_owner_id=form_owner_id,
                    started_at=utc_now(),
                ))
                db.commit()
            return execution_id
        except OperationalError as e:
            logger.warning(f"Database unavailable while creating execution: {str(e)}")
            raise TransientError(
                f"Failed to create execution: {str(e)}",
                operation="create_execution",
                table="workflow_executions"
            )
        except SQLAlchemyError as e:
            logger.error(f"Database error while creating execution: {str(e)}")
            raise StorageError(
                f"Failed to create execution: {str(e)}",
                operation="create_execution",
                table="workflow_executions"
            )

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        try:
            with self._session() as db:
                row = db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.id == execution_id).first()
                return ExecutionRecord.model_validate(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while fetching execution: {str(e)}")
            raise StorageError(f"Failed to fetch execution: {str(e)}", operation="get_execution")

    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatusEnum] = None,
        limit: int = 100
    ) -> List[ExecutionRecord]:
        try:
            with self._session() as db:
                query = db.query(WorkflowExecutionModel)
                if workflow_id:
                    query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
                if status is not None:
                    query = query.filter(WorkflowExecutionModel.status == status.value)
                rows = query.order_by(WorkflowExecutionModel.started_at.desc()).limit(limit).all()
                return [ExecutionRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing executions: {str(e)}")
            raise StorageError(f"Failed to list executions: {str(e)}", operation="list_executions")

    def list_due_executions(self, now: datetime) -> List[ExecutionRecord]:
        """Waiting executions whose scheduled resume time has passed."""
        try:
            with self._session() as db:
                rows = db.query(WorkflowExecutionModel).filter(
                    WorkflowExecutionModel.status == ExecutionStatusEnum.WAITING.value,
                    WorkflowExecutionModel.scheduled_resume_at.isnot(None),
                    WorkflowExecutionModel.scheduled_resume_at <= now
                ).order_by(WorkflowExecutionModel.scheduled_resume_at.asc()).all()
                return [ExecutionRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing due executions: {str(e)}")
            raise StorageError(f"Failed to list due executions: {str(e)}", operation="list_due_executions")

    def list_waiting_executions(self) -> List[ExecutionRecord]:
        try:
            with self._session() as db:
                rows = db.query(WorkflowExecutionModel).filter(
                    WorkflowExecutionModel.status == ExecutionStatusEnum.WAITING.value
                ).order_by(WorkflowExecutionModel.started_at.asc()).all()
                return [ExecutionRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing waiting executions: {str(e)}")
            raise StorageError(f"Failed to list waiting executions: {str(e)}", operation="list_waiting_executions")

    def update_trigger_data(self, execution_id: str, trigger_data: Dict[str, Any]) -> None:
        try:
            with self._session() as db:
                db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.id == execution_id).update(
                    {WorkflowExecutionModel.trigger_data: json_safe(trigger_data)},
                    synchronize_session=False
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while updating trigger data: {str(e)}")
            raise StorageError(f"Failed to update trigger data: {str(e)}", operation="update_trigger_data")

    def update_current_node(self, execution_id: str, node_id: str) -> None:
        try:
            with self._session() as db:
                db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.id == execution_id).update(
                    {WorkflowExecutionModel.current_node_id: node_id},
                    synchronize_session=False
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to record current node for execution {execution_id}: {str(e)}")

    def mark_execution_waiting(
        self,
        execution_id: str,
        node_id: str,
        wait_config: Dict[str, Any],
        scheduled_resume_at: Optional[datetime] = None
    ) -> bool:
        """
        Park a running execution at ``node_id``.

        Returns:
            bool: False when the execution was no longer running
        """
        try:
            with self._session() as db:
                updated = db.query(WorkflowExecutionModel).filter(
                    WorkflowExecutionModel.id == execution_id,
                    WorkflowExecutionModel.status == ExecutionStatusEnum.RUNNING.value
                ).update({
                    WorkflowExecutionModel.status: ExecutionStatusEnum.WAITING.value,
                    WorkflowExecutionModel.current_node_id: node_id,
                    WorkflowExecutionModel.wait_node_id: node_id,
                    WorkflowExecutionModel.wait_config: json_safe(wait_config),
                    WorkflowExecutionModel.scheduled_resume_at: scheduled_resume_at,
                }, synchronize_session=False)
                db.commit()
                return updated > 0
        except SQLAlchemyError as e:
            logger.error(f"Database error while parking execution: {str(e)}")
            raise StorageError(f"Failed to set execution waiting: {str(e)}", operation="mark_execution_waiting")

    def resume_execution(self, execution_id: str) -> bool:
        """
        Move a waiting execution back to running and clear its wait fields.

        Returns:
            bool: True only for the caller that won the transition
        """
        try:
            with self._session() as db:
                updated = db.query(WorkflowExecutionModel).filter(
                    WorkflowExecutionModel.id == execution_id,
                    WorkflowExecutionModel.status == ExecutionStatusEnum.WAITING.value
                ).update({
                    WorkflowExecutionModel.status: ExecutionStatusEnum.RUNNING.value,
                    WorkflowExecutionModel.scheduled_resume_at: None,
                    WorkflowExecutionModel.wait_node_id: None,
                    WorkflowExecutionModel.wait_config: None,
                }, synchronize_session=False)
                db.commit()
                return updated > 0
        except SQLAlchemyError as e:
            logger.error(f"Database error while resuming execution: {str(e)}")
            raise StorageError(f"Failed to resume execution: {str(e)}", operation="resume_execution")

    def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatusEnum,
        error_message: Optional[str] = None
    ) -> bool:
        """
        Write a terminal status, only if the execution is still running.

        The check and the write are one conditional UPDATE, so a waiting
        status set by a wait node is never overwritten.
        """
        try:
            with self._session() as db:
                updated = db.query(WorkflowExecutionModel).filter(
                    WorkflowExecutionModel.id == execution_id,
                    WorkflowExecutionModel.status == ExecutionStatusEnum.RUNNING.value
                ).update({
                    WorkflowExecutionModel.status: status.value,
                    WorkflowExecutionModel.completed_at: utc_now(),
                    WorkflowExecutionModel.error_message: error_message,
                }, synchronize_session=False)
                db.commit()
                return updated > 0
        except SQLAlchemyError as e:
            logger.error(f"Database error while finalizing execution: {str(e)}")
            raise StorageError(f"Failed to finalize execution: {str(e)}", operation="finalize_execution")

    # Node execution logs

    def create_node_log(
        self,
        execution_id: str,
        node: NodeDefinition,
        input_data: Optional[Dict[str, Any]] = None
    ) -> Optional[int]:
        """Insert a running log row; returns None if the write failed."""
        try:
            with self._session() as db:
                row = NodeExecutionLogModel(
                    execution_id=execution_id,
                    node_id=node.id,
                    node_type=node.node_type.value,
                    node_label=node.label,
                    status=NodeLogStatus.RUNNING.value,
                    input_data=audit_safe(input_data or {}),
                    started_at=utc_now(),
                    execution_order=self._next_log_order(db, execution_id),
                )
                db.add(row)
                db.commit()
                return row.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to write node log for {node.id}: {str(e)}")
            return None

    def update_node_log(
        self,
        log_id: Optional[int],
        status: NodeLogStatus,
        output_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None
    ) -> None:
        """Move a running log row to its final status; failures are logged only."""
        if log_id is None:
            return
        values = {
            NodeExecutionLogModel.status: status.value,
            NodeExecutionLogModel.output_data: audit_safe(output_data),
            NodeExecutionLogModel.error_message: error_message,
            NodeExecutionLogModel.duration_ms: duration_ms,
        }
        if status is not NodeLogStatus.WAITING:
            values[NodeExecutionLogModel.completed_at] = utc_now()
        try:
            with self._session() as db:
                db.query(NodeExecutionLogModel).filter(NodeExecutionLogModel.id == log_id).update(
                    values, synchronize_session=False
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update node log {log_id}: {str(e)}")

    def complete_waiting_log(self, execution_id: str, node_id: str, output_data: Dict[str, Any]) -> bool:
        """Mark the latest waiting log row of a node completed after a resume."""
        try:
            with self._session() as db:
                row = db.query(NodeExecutionLogModel).filter(
                    NodeExecutionLogModel.execution_id == execution_id,
                    NodeExecutionLogModel.node_id == node_id,
                    NodeExecutionLogModel.status == NodeLogStatus.WAITING.value
                ).order_by(NodeExecutionLogModel.id.desc()).first()
                if row is None:
                    return False
                row.status = NodeLogStatus.COMPLETED.value
                row.output_data = audit_safe({**(row.output_data or {}), **output_data})
                row.completed_at = utc_now()
                db.commit()
                return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to complete waiting log for node {node_id}: {str(e)}")
            return False

    def insert_ignored_logs(self, execution_id: str, node_ids: List[str], reason: str) -> int:
        """
        Record nodes of an untaken branch.

        Raises:
            StorageError: If the rows cannot be written
        """
        if not node_ids:
            return 0
        now = utc_now()
        try:
            with self._session() as db:
                order = self._next_log_order(db, execution_id)
                for offset, node_id in enumerate(node_ids):
                    db.add(NodeExecutionLogModel(
                        execution_id=execution_id,
                        node_id=node_id,
                        node_type=IGNORED_NODE_TYPE,
                        node_label=IGNORED_NODE_LABEL,
                        status=NodeLogStatus.IGNORED.value,
                        input_data={},
                        output_data={"reason": reason},
                        started_at=now,
                        completed_at=now,
                        duration_ms=0,
                        execution_order=order + offset,
                    ))
                db.commit()
            return len(node_ids)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write ignored node logs: {str(e)}",
                operation="insert_ignored_logs",
                table="node_execution_logs"
            )

    def get_node_logs(self, execution_id: str) -> List[NodeExecutionLogEntry]:
        try:
            with self._session() as db:
                rows = db.query(NodeExecutionLogModel).filter(
                    NodeExecutionLogModel.execution_id == execution_id
                ).order_by(NodeExecutionLogModel.id.asc()).all()
                return [NodeExecutionLogEntry.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error while fetching node logs: {str(e)}")
            raise StorageError(f"Failed to fetch node logs: {str(e)}", operation="get_node_logs")

    # Forms and users

    def get_form_creator(self, form_id: str) -> Optional[str]:
        try:
            with self._session() as db:
                form = db.query(FormModel).filter(FormModel.id == form_id).first()
                return form.created_by if form else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while fetching form {form_id}: {str(e)}")
            raise StorageError(f"Failed to fetch form: {str(e)}", operation="get_form_creator", table="forms")

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        try:
            with self._session() as db:
                profile = db.query(UserProfileModel).filter(
                    func.lower(UserProfileModel.email) == email.strip().lower()
                ).first()
                return profile.id if profile else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while looking up user profile: {str(e)}")
            raise StorageError(f"Failed to look up user profile: {str(e)}", operation="find_user_id_by_email")

    @staticmethod
    def _next_log_order(db: Session, execution_id: str) -> int:
        current = db.query(func.max(NodeExecutionLogModel.execution_order)).filter(
            NodeExecutionLogModel.execution_id == execution_id
        ).scalar()
        return (current or 0) + 1

    @staticmethod
    def _node_from_row(row: WorkflowNodeModel) -> NodeDefinition:
        return NodeDefinition(
            id=row.id,
            node_type=row.node_type,
            label=row.label or "",
            config=row.config,
            workflow_id=row.workflow_id,
        )

    @staticmethod
    def _connection_from_row(row: WorkflowConnectionModel) -> ConnectionDefinition:
        return ConnectionDefinition(
            source_node_id=row.source_node_id,
            target_node_id=row.target_node_id,
            condition_type=row.condition_type,
            source_handle=row.source_handle,
        )
