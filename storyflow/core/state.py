"""SQLite persistence for executions and their per-node trace.

The events table is an append-only log of everything the executor reported.
``executions`` and ``node_results`` are the read models the CLI and recorder
query. Terminal statuses are guarded: once an execution or node result is
finished, later updates to its status are ignored.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from storyflow.core.models import (
    Execution,
    ExecutionStatus,
    NodeResult,
    NodeResultStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

_FINISHED_NODE_STATUSES = (
    NodeResultStatus.COMPLETED.value,
    NodeResultStatus.FAILED.value,
    NodeResultStatus.SKIPPED.value,
)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and Paths."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder, ensure_ascii=False)


def _loads(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


class StoredEvent(BaseModel):
    """Immutable entry of the event log."""

    id: int | None = None
    execution_id: str
    event_type: str
    node_id: str | None = None
    iteration: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class Database:
    """SQLite database holding execution history."""

    SCHEMA = """
    -- Event log (append-only)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        node_id TEXT,
        iteration INTEGER,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        input TEXT,
        final_output TEXT,
        variables_snapshot JSON,
        error TEXT,
        started_at TIMESTAMP NOT NULL,
        finished_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS node_results (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL REFERENCES executions(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        iteration INTEGER NOT NULL DEFAULT 1,
        input TEXT,
        output TEXT,
        resolved_config JSON,
        status TEXT NOT NULL,
        error TEXT,
        started_at TIMESTAMP NOT NULL,
        finished_at TIMESTAMP,
        UNIQUE(execution_id, node_id, iteration)
    );

    CREATE INDEX IF NOT EXISTS idx_events_execution ON events(execution_id, id);
    CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions(workflow_id, started_at);
    CREATE INDEX IF NOT EXISTS idx_node_results_execution ON node_results(execution_id, started_at);
    """

    def __init__(self, db_path: str | Path = ".storyflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode for concurrent readers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Event log ---

    def append_event(self, event: StoredEvent) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (execution_id, event_type, node_id, iteration, payload, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.execution_id,
                    event.event_type,
                    event.node_id,
                    event.iteration,
                    _safe_json_dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore

    def get_events(
        self, execution_id: str, event_types: list[str] | None = None
    ) -> list[StoredEvent]:
        """Get events for an execution, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE execution_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [execution_id] + list(event_types),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE execution_id = ? ORDER BY id",
                    (execution_id,),
                ).fetchall()
            return [
                StoredEvent(
                    id=row["id"],
                    execution_id=row["execution_id"],
                    event_type=row["event_type"],
                    node_id=row["node_id"],
                    iteration=row["iteration"],
                    payload=_loads(row["payload"], {}),
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                )
                for row in rows
            ]

    # --- Executions ---

    def create_execution(self, execution: Execution) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (id, workflow_id, status, input, final_output,
                                        variables_snapshot, error, started_at, finished_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.workflow_id,
                    execution.status.value,
                    execution.input,
                    execution.final_output,
                    _safe_json_dumps(execution.variables_snapshot),
                    execution.error,
                    execution.started_at.isoformat(),
                    execution.finished_at.isoformat() if execution.finished_at else None,
                ),
            )

    def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        final_output: str | None = None,
        variables_snapshot: dict[str, Any] | None = None,
        error: str | None = None,
        finished_at: datetime | None = None,
    ) -> bool:
        """Update an execution unless it already reached a terminal status.

        Returns True if the update was applied.
        """
        terminal = tuple(s.value for s in ExecutionStatus if s.is_terminal)
        placeholders = ",".join("?" * len(terminal))
        with self._connect() as conn:
            result = conn.execute(
                f"""
                UPDATE executions SET
                    status = ?,
                    final_output = COALESCE(?, final_output),
                    variables_snapshot = COALESCE(?, variables_snapshot),
                    error = COALESCE(?, error),
                    finished_at = COALESCE(?, finished_at)
                WHERE id = ? AND status NOT IN ({placeholders})
                """,
                (
                    status.value,
                    final_output,
                    _safe_json_dumps(variables_snapshot) if variables_snapshot is not None else None,
                    error,
                    finished_at.isoformat() if finished_at else None,
                    execution_id,
                    *terminal,
                ),
            )
            if result.rowcount == 0:
                logger.debug(f"Ignored update of finished execution {execution_id} to {status.value}")
            return result.rowcount > 0

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
            return self._row_to_execution(row) if row else None

    def list_executions(self, workflow_id: str | None = None, limit: int = 50) -> list[Execution]:
        """Most recent executions first."""
        with self._connect() as conn:
            if workflow_id:
                rows = conn.execute(
                    """
                    SELECT * FROM executions WHERE workflow_id = ?
                    ORDER BY started_at DESC LIMIT ?
                    """,
                    (workflow_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM executions ORDER BY started_at DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._row_to_execution(row) for row in rows]

    def _row_to_execution(self, row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=ExecutionStatus(row["status"]),
            input=row["input"],
            final_output=row["final_output"],
            variables_snapshot=_loads(row["variables_snapshot"], {}),
            error=row["error"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
        )

    # --- Node results ---

    def create_node_result(self, result: NodeResult) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO node_results (id, execution_id, node_id, iteration, input, output,
                                          resolved_config, status, error, started_at, finished_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.id,
                    result.execution_id,
                    result.node_id,
                    result.iteration,
                    result.input,
                    result.output,
                    _safe_json_dumps(result.resolved_config),
                    result.status.value,
                    result.error,
                    result.started_at.isoformat(),
                    result.finished_at.isoformat() if result.finished_at else None,
                ),
            )

    def update_node_result(
        self,
        result_id: str,
        status: NodeResultStatus,
        input: str | None = None,
        output: str | None = None,
        resolved_config: dict[str, Any] | None = None,
        error: str | None = None,
        finished_at: datetime | None = None,
    ) -> bool:
        """Finish a node result; a result that already finished is left untouched."""
        placeholders = ",".join("?" * len(_FINISHED_NODE_STATUSES))
        with self._connect() as conn:
            result = conn.execute(
                f"""
                UPDATE node_results SET
                    status = ?,
                    input = COALESCE(?, input),
                    output = COALESCE(?, output),
                    resolved_config = COALESCE(?, resolved_config),
                    error = COALESCE(?, error),
                    finished_at = COALESCE(?, finished_at)
                WHERE id = ? AND status NOT IN ({placeholders})
                """,
                (
                    status.value,
                    input,
                    output,
                    _safe_json_dumps(resolved_config) if resolved_config is not None else None,
                    error,
                    finished_at.isoformat() if finished_at else None,
                    result_id,
                    *_FINISHED_NODE_STATUSES,
                ),
            )
            return result.rowcount > 0

    def set_node_output(self, result_id: str, output: str) -> None:
        """Overwrite the output of a finished node (user edit during a pause)."""
        with self._connect() as conn:
            conn.execute("UPDATE node_results SET output = ? WHERE id = ?", (output, result_id))

    def get_node_results(self, execution_id: str, node_id: str | None = None) -> list[NodeResult]:
        """Node results in the order the nodes started."""
        with self._connect() as conn:
            query = "SELECT * FROM node_results WHERE execution_id = ?"
            params: list[Any] = [execution_id]
            if node_id:
                query += " AND node_id = ?"
                params.append(node_id)
            query += " ORDER BY started_at, rowid"
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_node_result(row) for row in rows]

    def _row_to_node_result(self, row: sqlite3.Row) -> NodeResult:
        return NodeResult(
            id=row["id"],
            execution_id=row["execution_id"],
            node_id=row["node_id"],
            iteration=row["iteration"],
            input=row["input"],
            output=row["output"],
            resolved_config=_loads(row["resolved_config"], {}),
            status=NodeResultStatus(row["status"]),
            error=row["error"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
        )
