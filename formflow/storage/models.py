"""SQLAlchemy database models for the workflow engine."""

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship

from ..core.date_utils import utc_now
from .database import Base


class WorkflowModel(Base):
    """Workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")  # draft, active, inactive
    created_by = Column(String)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    nodes = relationship("WorkflowNodeModel", back_populates="workflow", cascade="all, delete-orphan")
    connections = relationship(
        "WorkflowConnectionModel",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowConnectionModel.position"
    )


class WorkflowNodeModel(Base):
    """Nodes of a workflow graph."""
    __tablename__ = "workflow_nodes"

    workflow_id = Column(String, ForeignKey("workflows.id"), primary_key=True)
    id = Column(String, primary_key=True)
    node_type = Column(String, nullable=False)
    label = Column(String)
    config = Column(JSON)  # Older editors stored a JSON string here
    position = Column(Integer, default=0)

    workflow = relationship("WorkflowModel", back_populates="nodes")


class WorkflowConnectionModel(Base):
    """Directed, optionally branch-tagged edges between nodes."""
    __tablename__ = "workflow_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    source_node_id = Column(String, nullable=False)
    target_node_id = Column(String, nullable=False)
    condition_type = Column(String)
    source_handle = Column(String)
    position = Column(Integer, default=0)

    workflow = relationship("WorkflowModel", back_populates="connections")

    __table_args__ = (
        Index("idx_workflow_connections_source", "workflow_id", "source_node_id"),
    )


class WorkflowExecutionModel(Base):
    """One triggered run of a workflow."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    status = Column(String, nullable=False)  # running, waiting, completed, failed
    current_node_id = Column(String)
    scheduled_resume_at = Column(DateTime)
    wait_node_id = Column(String)
    wait_config = Column(JSON)
    trigger_data = Column(JSON)
    form_submission_id = Column(String)
    submitter_id = Column(String)
    form_owner_id = Column(String)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime)

    logs = relationship("NodeExecutionLogModel", back_populates="execution", order_by="NodeExecutionLogModel.id")

    __table_args__ = (
        Index("idx_workflow_executions_status_resume", "status", "scheduled_resume_at"),
    )


class NodeExecutionLogModel(Base):
    """Append-only audit trail of node visits."""
    __tablename__ = "node_execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    node_label = Column(String)
    status = Column(String, nullable=False)  # running, completed, failed, waiting, ignored
    input_data = Column(JSON)
    output_data = Column(JSON)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    execution_order = Column(Integer, default=0)

    execution = relationship("WorkflowExecutionModel", back_populates="logs")

    __table_args__ = (
        Index("idx_node_execution_logs_execution", "execution_id", "id"),
    )


class FormModel(Base):
    """Minimal form record; only the author is used by the engine."""
    __tablename__ = "forms"

    id = Column(String, primary_key=True)
    name = Column(String)
    created_by = Column(String)  # user id or, for older forms, an email address


class UserProfileModel(Base):
    """Minimal user profile used to resolve email authors to ids."""
    __tablename__ = "user_profiles"

    id = Column(String, primary_key=True)
    email = Column(String, index=True)
    role = Column(String)
