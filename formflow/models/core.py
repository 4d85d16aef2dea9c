"""Core Pydantic models for the workflow engine."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Enumeration of workflow node types."""
    START = "start"
    ACTION = "action"
    APPROVAL = "approval"
    FORM_ASSIGNMENT = "form-assignment"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    WAIT = "wait"
    END = "end"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeLogStatus(str, Enum):
    """Status of a single node execution log row."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"
    IGNORED = "ignored"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class WaitType(str, Enum):
    """Reasons an execution can be parked in the waiting status."""
    DURATION = "duration"
    UNTIL_DATE = "until_date"
    UNTIL_EVENT = "until_event"
    CONDITION_VALUE = "condition_value"


SUBMISSION_TRIGGER_TYPES = ("form_submission", "form_completion")


def parse_node_config(config: Any) -> Dict[str, Any]:
    """Coerce a stored node config into a dict; JSON strings are decoded."""
    if config is None:
        return {}
    if isinstance(config, str):
        try:
            decoded = json.loads(config)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    if isinstance(config, dict):
        return config
    return {}


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    node_type: NodeType = Field(..., description="Type of the node")
    label: str = Field(default="", description="Human readable label")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    workflow_id: Optional[str] = Field(None, description="Owning workflow, set once stored")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    @field_validator('config', mode='before')
    @classmethod
    def validate_config(cls, config):
        """Accept JSON-encoded configs as stored by older editors."""
        return parse_node_config(config)


class ConnectionDefinition(BaseModel):
    """Directed edge between two nodes, optionally tagged with a branch."""
    source_node_id: str = Field(..., description="Source node ID")
    target_node_id: str = Field(..., description="Target node ID")
    condition_type: Optional[str] = Field(None, description="Legacy branch tag")
    source_handle: Optional[str] = Field(None, description="Branch tag of the source handle")

    @field_validator('source_node_id', 'target_node_id')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class WorkflowDefinition(BaseModel):
    """Complete definition of a workflow graph."""
    name: str = Field(..., description="Name of the workflow")
    description: str = Field(default="", description="Description of the workflow")
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT, description="Lifecycle status")
    created_by: Optional[str] = Field(None, description="Author user id")
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Nodes in the graph")
    connections: List[ConnectionDefinition] = Field(default_factory=list, description="Edges between nodes")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field(default="", description="Workflow description")
    status: WorkflowStatus = Field(..., description="Lifecycle status")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    node_count: int = Field(..., description="Number of nodes in the workflow")


class ExecutionRecord(BaseModel):
    """Persisted state of one workflow execution."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    status: ExecutionStatusEnum
    current_node_id: Optional[str] = None
    scheduled_resume_at: Optional[datetime] = None
    wait_node_id: Optional[str] = None
    wait_config: Optional[Dict[str, Any]] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    form_submission_id: Optional[str] = None
    submitter_id: Optional[str] = None
    form_owner_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @field_validator('trigger_data', mode='before')
    @classmethod
    def default_trigger_data(cls, value):
        return value or {}


class NodeExecutionLogEntry(BaseModel):
    """One audit row for a node visit."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    execution_id: str
    node_id: str
    node_type: str
    node_label: Optional[str] = None
    status: NodeLogStatus
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    execution_order: int = 0


class NodeExecutionResult(BaseModel):
    """Uniform result returned by every node handler."""
    success: bool = Field(..., description="Whether the node ran successfully")
    output: Dict[str, Any] = Field(default_factory=dict, description="Node output recorded in the log")
    error: Optional[str] = Field(None, description="Error message when success is False")
    next_node_ids: List[str] = Field(default_factory=list, description="Successors to visit next")
    waiting: bool = Field(default=False, description="Node parked the execution in the waiting status")


class ExecutionContext(BaseModel):
    """Per-execution data shared by all node handlers of one run."""
    execution_id: str
    workflow_id: str
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    submission_id: Optional[str] = None
    submitter_id: Optional[str] = None
    form_owner_id: Optional[str] = None


class ActionContext(BaseModel):
    """Input handed to an action or approval delegate."""
    execution_id: str
    workflow_id: str
    node_id: str
    config: Dict[str, Any] = Field(default_factory=dict)
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    submission_id: Optional[str] = None
    submitter_id: Optional[str] = None


class ActionResult(BaseModel):
    """Output of an action or approval delegate."""
    success: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ExecutionOutcome(BaseModel):
    """Result of running or continuing an execution."""
    execution_id: str
    success: bool
    status: ExecutionStatusEnum
    error: Optional[str] = None
    is_waiting: bool = False


class TriggerResult(BaseModel):
    """Per-workflow summary of a trigger fan-out."""
    workflow_id: str
    workflow_name: str
    execution_id: Optional[str] = None
    success: bool
    status: Optional[ExecutionStatusEnum] = None
    error: Optional[str] = None


class ResumeSummary(BaseModel):
    """Result of a resume sweep."""
    resumed_count: int = 0
    total_waiting: int = 0
    resumed_executions: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class WorkflowMatch(BaseModel):
    """An active workflow whose start node is triggered by a form."""
    workflow_id: str
    workflow_name: str
    start_node: NodeDefinition
