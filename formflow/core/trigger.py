"""Matching form submissions to workflows and starting their executions."""

import re
from typing import Any, Dict, List, Optional

from ..models.core import SUBMISSION_TRIGGER_TYPES, TriggerResult, WorkflowMatch
from ..storage.repository import WorkflowStore
from .exceptions import StorageError, WorkflowEngineError
from .logging import get_logger
from .orchestrator import WorkflowOrchestrator

logger = get_logger(__name__)

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class WorkflowTrigger:
    """Finds the workflows a form submission should start."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    def find_matching_workflows(self, form_id: str, payload: Optional[Dict[str, Any]] = None) -> List[WorkflowMatch]:
        """
        Active workflows with a start node triggered by ``form_id``.

        The first matching start node of each workflow is used. A start node
        matches when its ``triggerFormId`` is the form and its ``triggerType``
        (``form_submission`` when unset) is a submission trigger.
        """
        try:
            workflows = self.store.list_active_workflows()
        except StorageError as e:
            logger.error(f"Could not list active workflows: {str(e)}")
            return []

        matches: List[WorkflowMatch] = []
        for workflow in workflows:
            try:
                start_nodes = self.store.get_start_nodes(workflow.id)
            except (StorageError, ValueError) as e:
                logger.warning(f"Skipping workflow {workflow.id}, start nodes unreadable: {str(e)}")
                continue

            for node in start_nodes:
                trigger_type = node.config.get("triggerType") or "form_submission"
                if trigger_type in SUBMISSION_TRIGGER_TYPES and node.config.get("triggerFormId") == form_id:
                    matches.append(WorkflowMatch(
                        workflow_id=workflow.id,
                        workflow_name=workflow.name,
                        start_node=node
                    ))
                    break

        logger.info(f"Form {form_id} triggers {len(matches)} workflow(s)")
        return matches

    def resolve_form_owner(self, form_id: str) -> Optional[str]:
        """The form author's user id; email authors are looked up in user profiles."""
        created_by = self.store.get_form_creator(form_id)
        if not created_by:
            return None
        if UUID_PATTERN.match(created_by):
            return created_by
        return self.store.find_user_id_by_email(created_by)


class WorkflowExecutionService:
    """Entry point for starting workflows from form submissions."""

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        orchestrator: Optional[WorkflowOrchestrator] = None
    ):
        self.store = store or (orchestrator.store if orchestrator else WorkflowStore())
        self.orchestrator = orchestrator or WorkflowOrchestrator(store=self.store)
        self.trigger = WorkflowTrigger(self.store)

    def trigger_workflows_for_form_submission(
        self,
        form_id: str,
        payload: Dict[str, Any],
        submission_id: Optional[str] = None,
        submitter_id: Optional[str] = None
    ) -> List[TriggerResult]:
        """
        Start one execution per matching workflow.

        Args:
            form_id: Submitted form
            payload: Submission data
            submission_id: Submission record id
            submitter_id: Submitting user id

        Returns:
            List[TriggerResult]: One entry per matching workflow; a failing
            workflow never prevents the others from running
        """
        payload = payload or {}
        matches = self.trigger.find_matching_workflows(form_id, payload)
        if not matches:
            return []

        results: List[TriggerResult] = []
        for match in matches:
            try:
                form_owner_id = self.trigger.resolve_form_owner(form_id)
                trigger_data = build_trigger_data(form_id, payload, submission_id, submitter_id, form_owner_id)
                outcome = self.orchestrator.execute_workflow(
                    match.workflow_id,
                    match.start_node.id,
                    trigger_data,
                    submission_id=submission_id,
                    submitter_id=submitter_id,
                    form_owner_id=form_owner_id,
                )
                results.append(TriggerResult(
                    workflow_id=match.workflow_id,
                    workflow_name=match.workflow_name,
                    execution_id=outcome.execution_id,
                    success=outcome.success,
                    status=outcome.status,
                    error=outcome.error,
                ))
            except WorkflowEngineError as e:
                logger.error(f"Workflow {match.workflow_id} failed to start: {e.message}")
                results.append(TriggerResult(
                    workflow_id=match.workflow_id,
                    workflow_name=match.workflow_name,
                    success=False,
                    error=e.message,
                ))

        return results


def build_trigger_data(
    form_id: str,
    payload: Dict[str, Any],
    submission_id: Optional[str],
    submitter_id: Optional[str],
    form_owner_id: Optional[str]
) -> Dict[str, Any]:
    first_name = payload.get("firstName") or ""
    last_name = payload.get("lastName") or ""
    return {
        "formId": form_id,
        "submissionData": payload,
        "submissionId": submission_id,
        "submitterId": submitter_id,
        "formOwnerId": form_owner_id,
        "userEmail": payload.get("userEmail") or payload.get("email"),
        "submitterName": payload.get("submitterName") or f"{first_name} {last_name}".strip(),
    }
