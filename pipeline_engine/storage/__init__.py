"""Database models and storage layer."""

from .base import WorkflowStore
from .database import Base, create_tables, get_database_engine, get_session_factory
from .models import RunEventModel, RunModel, SavedArtifactModel, WorkflowModel
from .sql_store import SqlWorkflowStore

__all__ = [
    "WorkflowStore",
    "SqlWorkflowStore",
    "Base",
    "create_tables",
    "get_database_engine",
    "get_session_factory",
    "WorkflowModel",
    "RunModel",
    "RunEventModel",
    "SavedArtifactModel",
]
