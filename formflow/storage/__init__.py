"""Storage layer for workflow definitions, executions and node logs."""

from .database import Base, get_database_engine, get_db, create_tables, drop_tables, configure_database
from .repository import WorkflowStore

__all__ = [
    "Base",
    "get_database_engine",
    "get_db",
    "create_tables",
    "drop_tables",
    "configure_database",
    "WorkflowStore",
]
