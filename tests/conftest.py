"""Pytest configuration and fixtures."""

import os
import tempfile
import uuid
from datetime import datetime
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from formflow.config import AppConfig, LogLevel
from formflow.core.action_registry import ActionRegistry
from formflow.core.node_executors import NodeExecutors
from formflow.core.orchestrator import WorkflowOrchestrator
from formflow.core.resumer import WorkflowResumer
from formflow.models.core import (
    ConnectionDefinition,
    NodeDefinition,
    WorkflowDefinition,
    WorkflowStatus,
)
from formflow.storage import models  # noqa: F401  registers the tables on Base.metadata
from formflow.storage.database import Base
from formflow.storage.repository import WorkflowStore


FIXED_NOW = datetime(2024, 6, 12, 9, 30, 0)  # a Wednesday


@pytest.fixture(scope="function")
def session_factory():
    """Create a temporary test database."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    yield TestingSessionLocal

    engine.dispose()
    os.unlink(db_path)


@pytest.fixture
def store(session_factory):
    return WorkflowStore(session_factory)


@pytest.fixture
def engine_config():
    """Engine settings used by the tests."""
    return AppConfig(database_url="sqlite:///:memory:", log_level=LogLevel.WARNING)


@pytest.fixture
def action_registry():
    return ActionRegistry()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def node_executors(store, action_registry, engine_config, clock):
    return NodeExecutors(store, action_registry=action_registry, config=engine_config, clock=clock)


@pytest.fixture
def orchestrator(store, node_executors, engine_config):
    return WorkflowOrchestrator(store=store, node_executors=node_executors, config=engine_config)


@pytest.fixture
def resumer(orchestrator, store, clock):
    return WorkflowResumer(orchestrator=orchestrator, store=store, clock=clock)


def node(node_id: str, node_type: str, label: str = "", **config) -> NodeDefinition:
    return NodeDefinition(id=node_id, node_type=node_type, label=label or node_id, config=config)


def edge(source: str, target: str, handle: Optional[str] = None,
         condition_type: Optional[str] = None) -> ConnectionDefinition:
    return ConnectionDefinition(
        source_node_id=source,
        target_node_id=target,
        source_handle=handle,
        condition_type=condition_type
    )


def save_workflow(
    store: WorkflowStore,
    nodes: List[NodeDefinition],
    connections: List[ConnectionDefinition],
    name: str = "Test workflow",
    status: WorkflowStatus = WorkflowStatus.ACTIVE
) -> str:
    """Store a workflow directly, bypassing validation."""
    workflow_id = str(uuid.uuid4())
    store.save_workflow(
        workflow_id,
        WorkflowDefinition(name=name, status=status, nodes=nodes, connections=connections)
    )
    return workflow_id


def amount_condition(threshold: int = 100) -> dict:
    """If config: form field ``amount`` greater than ``threshold``."""
    return {
        "type": "if",
        "condition": {
            "leftOperand": {"type": "form", "path": "amount"},
            "operator": ">",
            "rightOperand": {"type": "static", "value": threshold},
        },
        "truePath": "true",
        "falsePath": "false",
    }
