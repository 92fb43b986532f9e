"""Data models for executions and per-node results.

Uses Pydantic for the persisted record shapes.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of one workflow execution. Exactly these six values exist."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }
)


class NodeResultStatus(str, Enum):
    """Status of one (node, iteration) record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Untaken condition branch or node consumed by a batch


class Execution(BaseModel):
    """One run of a workflow."""

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    input: str | None = None
    final_output: str | None = None
    variables_snapshot: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None


class NodeResult(BaseModel):
    """Trace record for a single node run."""

    id: str
    execution_id: str
    node_id: str
    iteration: int = 1
    input: str | None = None
    output: str | None = None
    resolved_config: dict[str, Any] = Field(default_factory=dict)
    status: NodeResultStatus = NodeResultStatus.PENDING
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
