"""
Persistence layer for workflow engine.
"""

from .store import ExecutionStore, InMemoryExecutionStore
from .postgres import PostgresExecutionStore
from .repository import WorkflowRepository, InMemoryWorkflowRepository

__all__ = [
    "ExecutionStore",
    "InMemoryExecutionStore",
    "PostgresExecutionStore",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
]
