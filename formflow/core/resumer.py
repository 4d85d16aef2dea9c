"""Resuming waiting executions from a scheduler, an operator or an event."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    ResumeSummary,
    WaitType,
)
from ..storage.repository import WorkflowStore
from .date_utils import utc_now
from .exceptions import ExecutionEngineError, WorkflowEngineError, WorkflowNotFoundError
from .logging import get_logger
from .orchestrator import WorkflowOrchestrator

logger = get_logger(__name__)


def merge_event_data(trigger_data: Dict[str, Any], event_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Overlay event data on the stored trigger data.

    When the trigger carries ``submissionData`` the event values are merged
    into it, since that is where condition nodes read form fields from.
    """
    merged = dict(trigger_data or {})
    if not event_data:
        return merged
    submission = merged.get("submissionData")
    if isinstance(submission, dict):
        merged["submissionData"] = {**submission, **event_data}
    else:
        merged.update(event_data)
    return merged


class WorkflowResumer:
    """Moves waiting executions back to running and continues them."""

    def __init__(
        self,
        orchestrator: Optional[WorkflowOrchestrator] = None,
        store: Optional[WorkflowStore] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.orchestrator = orchestrator or WorkflowOrchestrator(store=store)
        self.store = store or self.orchestrator.store
        self.clock = clock or utc_now

    def resume_due_executions(self, now: Optional[datetime] = None) -> ResumeSummary:
        """Resume every waiting execution whose scheduled resume time has passed."""
        now = now or self.clock()
        due = self.store.list_due_executions(now)
        logger.info(f"Found {len(due)} waiting execution(s) due at {now.isoformat()}")
        return self._resume_all(due)

    def resume_execution(self, execution_id: str, event_data: Optional[Dict[str, Any]] = None) -> ResumeSummary:
        """
        Resume one waiting execution immediately.

        Raises:
            WorkflowNotFoundError: If the execution does not exist
            ExecutionEngineError: If the execution is not waiting
        """
        record = self.store.get_execution(execution_id)
        if record is None:
            raise WorkflowNotFoundError(
                f"Execution {execution_id} not found",
                resource="execution",
                resource_id=execution_id
            )
        if record.status is not ExecutionStatusEnum.WAITING:
            raise ExecutionEngineError(
                f"Execution {execution_id} is not waiting (status: {record.status.value})",
                execution_id=execution_id,
                workflow_id=record.workflow_id
            )
        return self._resume_all([record], event_data)

    def resume_on_event(self, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> ResumeSummary:
        """Resume executions parked by an ``until_event`` wait for ``event_type``."""
        matching = [
            record for record in self.store.list_waiting_executions()
            if (record.wait_config or {}).get("waitType") == WaitType.UNTIL_EVENT.value
            and (record.wait_config or {}).get("eventType") == event_type
        ]
        logger.info(f"Found {len(matching)} execution(s) waiting for event: {event_type}")
        return self._resume_all(matching, event_data)

    def _resume_all(self, records: List[ExecutionRecord], event_data: Optional[Dict[str, Any]] = None) -> ResumeSummary:
        summary = ResumeSummary(total_waiting=len(records))
        for record in records:
            try:
                self._resume(record, event_data)
                summary.resumed_count += 1
                summary.resumed_executions.append(record.id)
            except WorkflowEngineError as e:
                logger.error(f"Failed to resume execution {record.id}: {e.message}")
                summary.errors.append(f"{record.id}: {e.message}")
        return summary

    def _resume(self, record: ExecutionRecord, event_data: Optional[Dict[str, Any]]) -> None:
        node_id = record.wait_node_id or record.current_node_id
        wait_type = (record.wait_config or {}).get("waitType")
        if not node_id:
            raise ExecutionEngineError(
                f"Execution {record.id} has no wait node to resume from",
                execution_id=record.id,
                workflow_id=record.workflow_id
            )

        if not self.store.resume_execution(record.id):
            raise ExecutionEngineError(
                f"Execution {record.id} is no longer waiting",
                execution_id=record.id,
                workflow_id=record.workflow_id
            )

        payload = merge_event_data(record.trigger_data, event_data)
        if event_data:
            self.store.update_trigger_data(record.id, payload)

        self.store.complete_waiting_log(record.id, node_id, {
            "resumed": True,
            "resumedAt": self.clock().isoformat(),
        })
        logger.info(f"Resuming execution {record.id} at node {node_id} ({wait_type})")

        if wait_type == WaitType.CONDITION_VALUE.value:
            # Evaluate the condition again with whatever data has arrived.
            self.orchestrator.continue_from_node(
                record.id, record.workflow_id, node_id, payload,
                submission_id=record.form_submission_id,
                submitter_id=record.submitter_id
            )
        else:
            self.orchestrator.continue_after_node(
                record.id, record.workflow_id, node_id, payload,
                submission_id=record.form_submission_id,
                submitter_id=record.submitter_id
            )
