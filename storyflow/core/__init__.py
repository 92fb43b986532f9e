"""Core modules for the storyflow workflow engine."""

from storyflow.core.executor import (
    EventType,
    ExecutionEvent,
    ExecutionResult,
    ExecutorStatus,
    WorkflowExecutor,
)
from storyflow.core.models import Execution, ExecutionStatus, NodeResult, NodeResultStatus
from storyflow.core.recorder import ExecutionRecorder, SQLiteRecorder
from storyflow.core.state import Database
from storyflow.core.variables import VariableStore
from storyflow.core.workflow_schema import Node, NodeType, Workflow

__all__ = [
    "Database",
    "EventType",
    "Execution",
    "ExecutionEvent",
    "ExecutionRecorder",
    "ExecutionResult",
    "ExecutionStatus",
    "ExecutorStatus",
    "Node",
    "NodeResult",
    "NodeResultStatus",
    "NodeType",
    "SQLiteRecorder",
    "VariableStore",
    "Workflow",
    "WorkflowExecutor",
]
