"""FastAPI REST endpoints for the workflow engine.

The engine, its delegates and the store are synchronous, so the handlers are
plain functions that FastAPI runs in its threadpool, off the event loop.
"""

from typing import Any, Dict, List, NoReturn, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.condition_evaluator import ConditionEvaluator
from ..core.date_utils import utc_now
from ..core.exceptions import WorkflowEngineError, WorkflowNotFoundError, create_error_response
from ..core.logging import get_logger
from ..core.middleware import get_status_code_for_error
from ..core.resumer import WorkflowResumer
from ..core.trigger import WorkflowExecutionService
from ..core.workflow_manager import WorkflowManager
from ..models.conditions import ConditionEvaluationContext, ConditionEvaluationResult
from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    NodeExecutionLogEntry,
    ResumeSummary,
    TriggerResult,
    ValidationResult,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowSummary,
)
from ..storage.repository import WorkflowStore

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_workflow_manager: Optional[WorkflowManager] = None
_execution_service: Optional[WorkflowExecutionService] = None
_resumer: Optional[WorkflowResumer] = None
_store: Optional[WorkflowStore] = None
_condition_evaluator: Optional[ConditionEvaluator] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    execution_service: WorkflowExecutionService,
    resumer: WorkflowResumer,
    store: WorkflowStore,
    condition_evaluator: Optional[ConditionEvaluator] = None
):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_service, _resumer, _store, _condition_evaluator
    _workflow_manager = workflow_manager
    _execution_service = execution_service
    _resumer = resumer
    _store = store
    _condition_evaluator = condition_evaluator or ConditionEvaluator()


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get workflow manager."""
    if _workflow_manager is None:
        raise _not_initialized("Workflow manager")
    return _workflow_manager


def get_execution_service() -> WorkflowExecutionService:
    """Dependency to get the execution service."""
    if _execution_service is None:
        raise _not_initialized("Execution service")
    return _execution_service


def get_resumer() -> WorkflowResumer:
    """Dependency to get the workflow resumer."""
    if _resumer is None:
        raise _not_initialized("Workflow resumer")
    return _resumer


def get_store() -> WorkflowStore:
    """Dependency to get the record store."""
    if _store is None:
        raise _not_initialized("Workflow store")
    return _store


def get_condition_evaluator() -> ConditionEvaluator:
    if _condition_evaluator is None:
        raise _not_initialized("Condition evaluator")
    return _condition_evaluator


def _raise_http(error: Exception, action: str) -> NoReturn:
    """Translate an exception raised while handling a request into an HTTPException."""
    if isinstance(error, WorkflowEngineError):
        logger.warning(f"Workflow engine error while {action}: {str(error)}")
        raise HTTPException(
            status_code=get_status_code_for_error(error),
            detail=create_error_response(error)
        )

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": utc_now().isoformat()
        }
    )


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow."""
    workflow: WorkflowDefinition = Field(..., description="Workflow definition to create")


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Unique identifier of the created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class SetStatusRequest(BaseModel):
    status: WorkflowStatus = Field(..., description="New lifecycle status")


class FormSubmissionRequest(BaseModel):
    """A form submission that may trigger workflows."""
    payload: Dict[str, Any] = Field(default_factory=dict, description="Submitted field values")
    submission_id: Optional[str] = Field(None, description="Submission record ID")
    submitter_id: Optional[str] = Field(None, description="Submitting user ID")


class FormSubmissionResponse(BaseModel):
    form_id: str
    triggered: int = Field(..., description="Number of workflows started")
    results: List[TriggerResult] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    event_data: Optional[Dict[str, Any]] = Field(None, description="Data merged into the trigger data before resuming")


class EventRequest(BaseModel):
    event_type: str = Field(..., description="Event that waiting executions may be waiting for")
    event_data: Optional[Dict[str, Any]] = Field(None, description="Event payload")


class EvaluateConditionRequest(BaseModel):
    config: Dict[str, Any] = Field(..., description="If or Switch condition config")
    context: ConditionEvaluationContext = Field(
        default_factory=ConditionEvaluationContext,
        description="Evaluation namespaces"
    )


# Workflow definitions

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new workflow"
)
def create_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Create a new workflow.

    Raises:
        HTTPException: 400 if validation fails, 500 on storage errors
    """
    try:
        validation_result = workflow_manager.validate_workflow(request.workflow)
        workflow_id = workflow_manager.create_workflow(request.workflow)
        return CreateWorkflowResponse(
            workflow_id=workflow_id,
            message=f"Workflow '{request.workflow.name}' created successfully",
            validation_warnings=validation_result.warnings
        )
    except Exception as e:
        _raise_http(e, "creating the workflow")


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow without storing it"
)
def validate_workflow(
    request: CreateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    return workflow_manager.validate_workflow(request.workflow)


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List workflows"
)
def list_workflows(
    status_filter: Optional[WorkflowStatus] = Query(None, alias="status"),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowSummary]:
    try:
        return workflow_manager.list_workflows(status_filter)
    except Exception as e:
        _raise_http(e, "listing workflows")


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition"
)
def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except Exception as e:
        _raise_http(e, "retrieving the workflow")


@router.put(
    "/workflows/{workflow_id}/status",
    summary="Activate or deactivate a workflow"
)
def set_workflow_status(
    workflow_id: str,
    request: SetStatusRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Dict[str, str]:
    try:
        workflow_manager.set_status(workflow_id, request.status)
        return {"workflow_id": workflow_id, "status": request.status.value}
    except Exception as e:
        _raise_http(e, "updating the workflow status")


@router.delete(
    "/workflows/{workflow_id}",
    summary="Delete a workflow"
)
def delete_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Dict[str, str]:
    try:
        if not workflow_manager.delete_workflow(workflow_id):
            raise WorkflowNotFoundError(
                f"Workflow with ID '{workflow_id}' not found",
                resource="workflow",
                resource_id=workflow_id
            )
        return {"message": f"Workflow '{workflow_id}' deleted successfully"}
    except Exception as e:
        _raise_http(e, "deleting the workflow")


# Triggers

@router.post(
    "/forms/{form_id}/submissions",
    response_model=FormSubmissionResponse,
    summary="Start the workflows triggered by a form submission"
)
def submit_form(
    form_id: str,
    request: FormSubmissionRequest,
    execution_service: WorkflowExecutionService = Depends(get_execution_service)
) -> FormSubmissionResponse:
    try:
        results = execution_service.trigger_workflows_for_form_submission(
            form_id,
            request.payload,
            submission_id=request.submission_id,
            submitter_id=request.submitter_id
        )
        return FormSubmissionResponse(form_id=form_id, triggered=len(results), results=results)
    except Exception as e:
        _raise_http(e, "triggering workflows")


# Executions

@router.get(
    "/executions",
    response_model=List[ExecutionRecord],
    summary="List executions"
)
def list_executions(
    workflow_id: Optional[str] = None,
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    limit: int = 100,
    store: WorkflowStore = Depends(get_store)
) -> List[ExecutionRecord]:
    try:
        return store.list_executions(workflow_id=workflow_id, status=status_filter, limit=limit)
    except Exception as e:
        _raise_http(e, "listing executions")


@router.post(
    "/executions/resume-due",
    response_model=ResumeSummary,
    summary="Resume every waiting execution whose resume time has passed"
)
def resume_due_executions(resumer: WorkflowResumer = Depends(get_resumer)) -> ResumeSummary:
    try:
        return resumer.resume_due_executions()
    except Exception as e:
        _raise_http(e, "resuming due executions")


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionRecord,
    summary="Get an execution"
)
def get_execution(execution_id: str, store: WorkflowStore = Depends(get_store)) -> ExecutionRecord:
    try:
        record = store.get_execution(execution_id)
        if record is None:
            raise WorkflowNotFoundError(
                f"Execution {execution_id} not found",
                resource="execution",
                resource_id=execution_id
            )
        return record
    except Exception as e:
        _raise_http(e, "retrieving the execution")


@router.get(
    "/executions/{execution_id}/logs",
    response_model=List[NodeExecutionLogEntry],
    summary="List node execution logs of an execution"
)
def get_execution_logs(
    execution_id: str,
    store: WorkflowStore = Depends(get_store)
) -> List[NodeExecutionLogEntry]:
    try:
        if store.get_execution(execution_id) is None:
            raise WorkflowNotFoundError(
                f"Execution {execution_id} not found",
                resource="execution",
                resource_id=execution_id
            )
        return store.get_node_logs(execution_id)
    except Exception as e:
        _raise_http(e, "retrieving execution logs")


@router.post(
    "/executions/{execution_id}/resume",
    response_model=ResumeSummary,
    summary="Resume a waiting execution now"
)
def resume_execution(
    execution_id: str,
    request: Optional[ResumeRequest] = None,
    resumer: WorkflowResumer = Depends(get_resumer)
) -> ResumeSummary:
    try:
        return resumer.resume_execution(execution_id, request.event_data if request else None)
    except Exception as e:
        _raise_http(e, "resuming the execution")


@router.post(
    "/events",
    response_model=ResumeSummary,
    summary="Publish an event to executions waiting for it"
)
def publish_event(request: EventRequest, resumer: WorkflowResumer = Depends(get_resumer)) -> ResumeSummary:
    try:
        return resumer.resume_on_event(request.event_type, request.event_data)
    except Exception as e:
        _raise_http(e, "publishing the event")


# Conditions

@router.post(
    "/conditions/evaluate",
    response_model=ConditionEvaluationResult,
    summary="Evaluate a condition config against an ad hoc context"
)
def evaluate_condition(
    request: EvaluateConditionRequest,
    evaluator: ConditionEvaluator = Depends(get_condition_evaluator)
) -> ConditionEvaluationResult:
    return evaluator.evaluate(request.config, request.context)
