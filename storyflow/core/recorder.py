"""Execution recorder: turns executor events into persisted records.

The executor only publishes events; it never waits on a single write. Inside
a running event loop the recorder queues events and one writer task drains
them through ``asyncio.to_thread`` in arrival order, so a node result is
always created before the update that finishes it. The executor awaits
``flush()`` before ``execute`` returns. A failed write is logged and the run
carries on.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Protocol

from storyflow.core.executor import EventType, ExecutionEvent
from storyflow.core.models import Execution, ExecutionStatus, NodeResult, NodeResultStatus
from storyflow.core.state import Database, StoredEvent

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = {
    EventType.EXECUTION_COMPLETED: ExecutionStatus.COMPLETED,
    EventType.EXECUTION_FAILED: ExecutionStatus.FAILED,
    EventType.EXECUTION_CANCELLED: ExecutionStatus.CANCELLED,
    EventType.EXECUTION_TIMEOUT: ExecutionStatus.TIMEOUT,
}


class ExecutionRecorder(Protocol):
    """Persistence boundary of the engine."""

    def create_execution(self, execution: Execution) -> None: ...

    def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        final_output: str | None = None,
        variables_snapshot: dict[str, Any] | None = None,
        error: str | None = None,
        finished_at: datetime | None = None,
    ) -> bool: ...

    def create_node_result(self, result: NodeResult) -> None: ...

    def update_node_result(
        self,
        result_id: str,
        status: NodeResultStatus,
        input: str | None = None,
        output: str | None = None,
        resolved_config: dict[str, Any] | None = None,
        error: str | None = None,
        finished_at: datetime | None = None,
    ) -> bool: ...


class SQLiteRecorder:
    """Event listener that records one execution into a ``Database``.

    USAGE:
        recorder = SQLiteRecorder(Database(path))
        executor.add_sink(recorder)

    Streaming chunks are not persisted; the completed event carries the full
    output. Outside an event loop ``handle`` writes synchronously.
    """

    def __init__(self, db: Database):
        self.db = db
        # (execution_id, node_id, iteration) -> node result id
        self._result_ids: dict[tuple[str, str, int], str] = {}
        self._pending: deque[ExecutionEvent] = deque()
        self._writer: asyncio.Task | None = None

    def handle(self, event: ExecutionEvent) -> None:
        if event.type == EventType.NODE_STREAMING:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.write(event)
            return

        self._pending.append(event)
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain())

    async def flush(self) -> None:
        """Wait until every queued event is written."""
        while self._writer is not None and not self._writer.done():
            await asyncio.shield(self._writer)

    async def _drain(self) -> None:
        while self._pending:
            event = self._pending.popleft()
            try:
                await asyncio.to_thread(self.write, event)
            except Exception:
                logger.exception(f"Failed to record {event.type.value} of {event.execution_id}")

    def write(self, event: ExecutionEvent) -> None:
        """Persist one event (blocking)."""
        self.db.append_event(
            StoredEvent(
                execution_id=event.execution_id,
                event_type=event.type.value,
                node_id=event.node_id,
                iteration=event.iteration,
                payload=event.model_dump(
                    mode="json",
                    exclude={"type", "execution_id", "node_id", "iteration", "timestamp"},
                    exclude_none=True,
                ),
                timestamp=event.timestamp,
            )
        )

        match event.type:
            case EventType.EXECUTION_STARTED:
                self.db.create_execution(
                    Execution(
                        id=event.execution_id,
                        workflow_id=event.workflow_id,
                        status=ExecutionStatus.RUNNING,
                        input=event.input,
                        started_at=event.timestamp,
                    )
                )
            case EventType.EXECUTION_PAUSED:
                self.db.update_execution(
                    event.execution_id,
                    ExecutionStatus.PAUSED,
                    variables_snapshot=event.data.get("variables_snapshot"),
                )
            case EventType.EXECUTION_RESUMED:
                self.db.update_execution(event.execution_id, ExecutionStatus.RUNNING)
            case EventType.NODE_STARTED:
                self._start_node(event)
            case EventType.NODE_COMPLETED:
                self._finish_node(event, NodeResultStatus.COMPLETED)
            case EventType.NODE_FAILED:
                self._finish_node(event, NodeResultStatus.FAILED)
            case EventType.NODE_SKIPPED:
                self.db.create_node_result(
                    NodeResult(
                        id=self._new_result_id(event),
                        execution_id=event.execution_id,
                        node_id=event.node_id,
                        iteration=event.iteration or 1,
                        status=NodeResultStatus.SKIPPED,
                        error=event.data.get("reason"),
                        started_at=event.timestamp,
                        finished_at=event.timestamp,
                    )
                )
            case EventType.NODE_OUTPUT_MODIFIED:
                result_id = self._result_ids.get(self._key(event))
                if result_id is None:
                    logger.warning(f"No recorded result for modified node '{event.node_id}'")
                else:
                    self.db.set_node_output(result_id, event.output or "")
            case _ if event.type in _TERMINAL_EVENTS:
                self.db.update_execution(
                    event.execution_id,
                    _TERMINAL_EVENTS[event.type],
                    final_output=event.output,
                    variables_snapshot=event.data.get("variables_snapshot"),
                    error=event.error,
                    finished_at=event.timestamp,
                )

    def _key(self, event: ExecutionEvent) -> tuple[str, str, int]:
        return (event.execution_id, event.node_id or "", event.iteration or 1)

    def _new_result_id(self, event: ExecutionEvent) -> str:
        result_id = f"nr-{uuid.uuid4().hex[:12]}"
        self._result_ids[self._key(event)] = result_id
        return result_id

    def _start_node(self, event: ExecutionEvent) -> None:
        self.db.create_node_result(
            NodeResult(
                id=self._new_result_id(event),
                execution_id=event.execution_id,
                node_id=event.node_id,
                iteration=event.iteration or 1,
                resolved_config=event.resolved_config or {},
                status=NodeResultStatus.RUNNING,
                started_at=event.timestamp,
            )
        )

    def _finish_node(self, event: ExecutionEvent, status: NodeResultStatus) -> None:
        result_id = self._result_ids.get(self._key(event))
        if result_id is None:
            logger.warning(
                f"Node '{event.node_id}' iteration {event.iteration} finished without a start"
            )
            return
        self.db.update_node_result(
            result_id,
            status,
            input=event.input,
            output=event.output,
            resolved_config=event.resolved_config,
            error=event.error,
            finished_at=event.timestamp,
        )
