"""Workflow executor: the interpreter for flat, block-annotated node lists.

One ``WorkflowExecutor`` drives one execution:

- The Block Resolver builds the jump table once, before anything runs.
- A cursor walks the node list; block frames (loop / condition / parallel /
  legacy loop) are pushed and popped as markers are reached.
- Every node boundary is a checkpoint for cancel, timeout and pause.
- Parallel blocks and legacy batch nodes run item-runs concurrently, each
  against a cloned variable scope, joined at the end of the block.
- Progress is published as ``ExecutionEvent`` objects to listeners (the
  recorder is one); listeners never influence control flow.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from storyflow.core.ai import AbortSignal, AIAdapter
from storyflow.core.blocks import BlockMap, concurrency_of, validate_structure
from storyflow.core.conditions import ConditionConfigError, evaluate_condition
from storyflow.core.errors import (
    ExecutionCancelled,
    ExecutionTimedOut,
    InvalidStateError,
    LoopMaxExceededError,
    NodeExecutionError,
)
from storyflow.core.handlers import (
    HANDLERS,
    ControlSignal,
    Handler,
    HandlerResult,
    NodeContext,
    SignalKind,
    make_judge,
)
from storyflow.core.injection import SettingsLibrary
from storyflow.core.models import ExecutionStatus, NodeResultStatus, utc_now
from storyflow.core.parallel import (
    AggregatedItemResult,
    SplitError,
    merge_outputs,
    run_items,
    split_items,
)
from storyflow.core.variables import VariableStore
from storyflow.core.workflow_schema import (
    BLOCK_MARKER_TYPES,
    CONTROL_TYPES,
    LOOP_CEILING_MAX,
    LOOP_CEILING_MIN,
    BatchConfig,
    ConditionSpec,
    LoopConfig,
    LoopStartConfig,
    Node,
    NodeType,
    ParallelStartConfig,
    SplitConfig,
    Workflow,
    clamp,
)

logger = logging.getLogger(__name__)


class ExecutorStatus(str, Enum):
    """Executor lifecycle; the last four match the terminal execution statuses."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class EventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"
    EXECUTION_TIMEOUT = "execution_timeout"
    NODE_STARTED = "node_started"
    NODE_STREAMING = "node_streaming"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"
    NODE_OUTPUT_MODIFIED = "node_output_modified"


class ExecutionEvent(BaseModel):
    """One progress notification from a running execution."""

    type: EventType
    execution_id: str
    workflow_id: str
    node_id: str | None = None
    node_type: str | None = None
    node_name: str | None = None
    iteration: int | None = None
    item_index: int | None = None  # Set for nodes run inside an item-run
    content: str | None = None  # Streamed chunk
    input: str | None = None
    output: str | None = None
    resolved_config: dict[str, Any] | None = None
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


EventListener = Callable[[ExecutionEvent], None]


class EventSink(Protocol):
    """Listener with buffered side effects, flushed before ``execute`` returns."""

    def handle(self, event: ExecutionEvent) -> None: ...

    async def flush(self) -> None: ...


@dataclass
class NodeState:
    """Latest known state of one node in this execution."""

    status: NodeResultStatus
    iteration: int
    output: str | None = None
    error: str | None = None


@dataclass
class ExecutionResult:
    execution_id: str
    status: ExecutionStatus
    output: str | None = None
    error: str | None = None
    failed_node_id: str | None = None
    node_states: dict[str, NodeState] = field(default_factory=dict)
    variables_snapshot: dict[str, Any] = field(default_factory=dict)
    elapsed_seconds: float = 0.0


@dataclass
class _Frame:
    """Executor record of an active block."""

    block_id: str
    kind: str  # "loop" | "condition" | "parallel" | "legacy_loop"
    start_index: int
    end_index: int
    iteration: int = 1
    max_iterations: int = 1
    else_index: int | None = None
    branch_taken: bool | None = None
    config: Any = None
    items_result: AggregatedItemResult | None = None

    def contains(self, index: int) -> bool:
        if self.kind == "legacy_loop":
            return self.start_index <= index <= self.end_index
        return self.start_index < index <= self.end_index


@dataclass
class _Scope:
    """A contiguous node range being interpreted, with its own frames and variables."""

    store: VariableStore
    start: int
    end: int  # Exclusive
    frames: list[_Frame] = field(default_factory=list)
    consumed: set[str] = field(default_factory=set)  # Batch targets already run
    item_index: int | None = None

    @property
    def is_main(self) -> bool:
        return self.item_index is None


# Node types whose output does not replace the "previous output"
_PASS_THROUGH = (BLOCK_MARKER_TYPES - {NodeType.PARALLEL_END}) | {
    NodeType.CONDITION,
    NodeType.LOOP,
}

StepFn = Callable[[_Scope, int, Node], Awaitable[int | None]]


class WorkflowExecutor:
    """Runs one workflow once.

    USAGE:
        executor = WorkflowExecutor(workflow, adapter=CLIAdapter())
        executor.add_sink(SQLiteRecorder(db))
        result = await executor.execute("a knight and a dragon")

    ``pause()``, ``resume()``, ``cancel()`` and ``modify_node_output()`` may be
    called from listeners or other tasks while ``execute()`` is running.
    """

    def __init__(
        self,
        workflow: Workflow,
        adapter: AIAdapter | None = None,
        settings: SettingsLibrary | None = None,
        execution_id: str | None = None,
        listeners: list[EventListener] | None = None,
    ):
        self.workflow = workflow
        self.adapter = adapter
        self.settings = settings or SettingsLibrary()
        self.execution_id = execution_id or f"exec-{uuid.uuid4().hex[:12]}"
        self.status = ExecutorStatus.IDLE

        self._listeners: list[EventListener] = list(listeners or [])
        self._sinks: list[EventSink] = []
        self._nodes: list[Node] = workflow.ordered_nodes()
        self._block_map: BlockMap | None = None
        self._ceiling = clamp(workflow.loop_max_count, LOOP_CEILING_MIN, LOOP_CEILING_MAX)

        self._store = VariableStore()
        self._input = ""
        self._final_output: str | None = None
        self._final_output_node: str | None = None
        self._last_output_node: str | None = None
        self._iterations: dict[str, int] = {}
        self._node_states: dict[str, NodeState] = {}

        self._abort = AbortSignal()
        self._cancel_requested = False
        self._pause_requested = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()

        self._started_at = 0.0
        self._pause_started_at = 0.0
        self._paused_seconds = 0.0

        self._steps: dict[NodeType, StepFn] = {
            NodeType.LOOP_START: self._step_loop_start,
            NodeType.LOOP_END: self._step_loop_end,
            NodeType.CONDITION_IF: self._step_condition_if,
            NodeType.CONDITION_ELSE: self._step_condition_else,
            NodeType.CONDITION_END: self._step_condition_end,
            NodeType.PARALLEL_START: self._step_parallel_start,
            NodeType.PARALLEL_END: self._step_parallel_end,
            NodeType.LOOP: self._step_legacy_loop,
            NodeType.BATCH: self._step_batch,
        }

    # ========== Listeners ==========

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def add_sink(self, sink: EventSink) -> None:
        """Register ``sink.handle`` as a listener and await ``sink.flush()`` at the end."""
        self._listeners.append(sink.handle)
        self._sinks.append(sink)

    async def _flush_sinks(self) -> None:
        for sink in self._sinks:
            try:
                await sink.flush()
            except Exception:
                logger.exception(f"Flushing {type(sink).__name__} failed")

    def _emit(self, event_type: EventType, node: Node | None = None, **fields: Any) -> None:
        event = ExecutionEvent(
            type=event_type,
            execution_id=self.execution_id,
            workflow_id=self.workflow.id,
            node_id=node.id if node else None,
            node_type=node.type if node else None,
            node_name=node.display_name if node else None,
            **fields,
        )
        if node is not None:
            self._track_node_state(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event_type.value}")

    def _track_node_state(self, event: ExecutionEvent) -> None:
        status = {
            EventType.NODE_STARTED: NodeResultStatus.RUNNING,
            EventType.NODE_COMPLETED: NodeResultStatus.COMPLETED,
            EventType.NODE_FAILED: NodeResultStatus.FAILED,
            EventType.NODE_SKIPPED: NodeResultStatus.SKIPPED,
        }.get(event.type)
        if status is not None:
            self._node_states[event.node_id] = NodeState(
                status=status,
                iteration=event.iteration or 1,
                output=event.output,
                error=event.error,
            )
        elif event.type == EventType.NODE_OUTPUT_MODIFIED and event.node_id in self._node_states:
            self._node_states[event.node_id].output = event.output

    # ========== Control API ==========

    def pause(self) -> None:
        """Request a pause at the next node boundary."""
        if self.status != ExecutorStatus.RUNNING:
            raise InvalidStateError(f"Cannot pause an execution that is {self.status.value}")
        self._pause_requested = True
        self._resume_event.clear()

    def resume(self) -> None:
        if self.status == ExecutorStatus.PAUSED:
            self._paused_seconds += time.monotonic() - self._pause_started_at
            self.status = ExecutorStatus.RUNNING
            self._emit(EventType.EXECUTION_RESUMED)
        elif not (self.status == ExecutorStatus.RUNNING and self._pause_requested):
            raise InvalidStateError(f"Cannot resume an execution that is {self.status.value}")
        self._pause_requested = False
        self._resume_event.set()

    def cancel(self) -> None:
        """Cancel cooperatively; in-flight AI calls are aborted immediately."""
        if self.status not in (ExecutorStatus.RUNNING, ExecutorStatus.PAUSED):
            raise InvalidStateError(f"Cannot cancel an execution that is {self.status.value}")
        self._cancel_requested = True
        self._abort.abort()
        self._resume_event.set()

    def modify_node_output(self, node_id: str, output: str) -> None:
        """Replace a finished node's output while paused.

        The new text is what later ``{{@node_id}}`` references (and the previous
        output, when this node produced it) resolve to.
        """
        if self.status != ExecutorStatus.PAUSED:
            raise InvalidStateError("Node output can only be modified while paused")
        if self._store.get_node_output(node_id) is None:
            raise InvalidStateError(f"Node '{node_id}' has no output in this execution")

        self._store.replace_output(node_id, output)
        if self._last_output_node == node_id:
            self._store.last_output = output
        if self._final_output_node == node_id:
            self._final_output = output

        node = next(n for n in self._nodes if n.id == node_id)
        self._emit(
            EventType.NODE_OUTPUT_MODIFIED,
            node=node,
            iteration=self._iterations.get(node_id, 1),
            output=output,
        )
        logger.info(f"Output of node '{node_id}' modified during pause")

    # ========== Timing ==========

    def _elapsed(self) -> float:
        paused = self._paused_seconds
        if self.status == ExecutorStatus.PAUSED:
            paused += time.monotonic() - self._pause_started_at
        return time.monotonic() - self._started_at - paused

    def _remaining(self) -> float:
        return self.workflow.timeout_seconds - self._elapsed()

    async def _checkpoint(self) -> None:
        """Node-boundary check for cancel, timeout and pause, in that order."""
        if self._cancel_requested:
            raise ExecutionCancelled("Execution cancelled")
        if self._remaining() <= 0:
            raise ExecutionTimedOut(
                f"Execution exceeded its {self.workflow.timeout_seconds}s budget"
            )
        if self._pause_requested:
            if self.status != ExecutorStatus.PAUSED:
                self.status = ExecutorStatus.PAUSED
                self._pause_started_at = time.monotonic()
                self._emit(
                    EventType.EXECUTION_PAUSED,
                    data={"variables_snapshot": self._store.snapshot()},
                )
                logger.info(f"Execution {self.execution_id} paused")
            await self._resume_event.wait()
            if self._cancel_requested:
                raise ExecutionCancelled("Execution cancelled")

    # ========== Entry point ==========

    async def execute(self, input: str = "") -> ExecutionResult:
        """Run the workflow to a terminal status.

        Raises:
            StructuralError: the node list is invalid; nothing was executed.
            InvalidStateError: this executor already ran.
        """
        if self.status != ExecutorStatus.IDLE:
            raise InvalidStateError("An executor runs a workflow only once")

        self._block_map = validate_structure(self.workflow)
        self._input = input
        self._started_at = time.monotonic()
        self.status = ExecutorStatus.RUNNING
        self._emit(
            EventType.EXECUTION_STARTED,
            input=input,
            data={"workflow_name": self.workflow.name, "node_count": len(self._nodes)},
        )
        logger.info(f"Execution {self.execution_id} of workflow '{self.workflow.id}' started")

        error: str | None = None
        failed_node_id: str | None = None
        try:
            await self._run_range(_Scope(store=self._store, start=0, end=len(self._nodes)))
            status = ExecutionStatus.COMPLETED
        except NodeExecutionError as e:
            status = ExecutionStatus.FAILED
            error = e.reason
            failed_node_id = e.node_id
        except ExecutionCancelled:
            status = ExecutionStatus.CANCELLED
            error = "cancelled"
        except ExecutionTimedOut as e:
            status = ExecutionStatus.TIMEOUT
            error = str(e)
        except asyncio.CancelledError:
            # The task itself was cancelled, e.g. Ctrl-C under asyncio.run
            self._cancel_requested = True
            self._abort.abort()
            logger.info(f"Execution {self.execution_id} task cancelled")
            await self._finish(ExecutionStatus.CANCELLED, "cancelled", None)
            raise

        return await self._finish(status, error, failed_node_id)

    async def _finish(
        self, status: ExecutionStatus, error: str | None, failed_node_id: str | None
    ) -> ExecutionResult:
        """Emit the terminal event, flush sinks and build the result."""
        output = self._final_output
        if output is None and status == ExecutionStatus.COMPLETED:
            output = self._store.last_output
        elapsed = self._elapsed()
        self.status = ExecutorStatus(status.value)
        snapshot = self._store.snapshot()

        terminal_event = {
            ExecutionStatus.COMPLETED: EventType.EXECUTION_COMPLETED,
            ExecutionStatus.FAILED: EventType.EXECUTION_FAILED,
            ExecutionStatus.CANCELLED: EventType.EXECUTION_CANCELLED,
            ExecutionStatus.TIMEOUT: EventType.EXECUTION_TIMEOUT,
        }[status]
        self._emit(
            terminal_event,
            output=output,
            error=error,
            data={
                "failed_node_id": failed_node_id,
                "variables_snapshot": snapshot,
                "elapsed_seconds": elapsed,
            },
        )
        if status == ExecutionStatus.FAILED:
            logger.warning(f"Execution {self.execution_id} failed at '{failed_node_id}': {error}")
        else:
            logger.info(f"Execution {self.execution_id} finished: {status.value}")
        await self._flush_sinks()

        return ExecutionResult(
            execution_id=self.execution_id,
            status=status,
            output=output,
            error=error,
            failed_node_id=failed_node_id,
            node_states=dict(self._node_states),
            variables_snapshot=snapshot,
            elapsed_seconds=elapsed,
        )

    # ========== Interpreter loop ==========

    async def _run_range(self, scope: _Scope) -> bool:
        """Interpret ``scope`` until the cursor leaves it. True if an END signal stopped it."""
        cursor = scope.start
        while cursor < scope.end:
            await self._checkpoint()
            node = self._nodes[cursor]

            if node.id in scope.consumed:
                self._skip_node(node, scope, "already run by a batch node")
                next_cursor: int | None = cursor + 1
            else:
                step = self._steps.get(node.kind)
                if step is not None:
                    next_cursor = await step(scope, cursor, node)
                else:
                    result = await self._run_node(node, scope, HANDLERS[node.kind])
                    next_cursor = self._apply_signal(scope, cursor, node, result.signal)

            if next_cursor is None:
                return True
            if next_cursor == cursor + 1:
                next_cursor = self._loop_back(scope, cursor, next_cursor)
            cursor = next_cursor
        return False

    def _apply_signal(
        self, scope: _Scope, cursor: int, node: Node, signal: ControlSignal
    ) -> int | None:
        if signal.kind == SignalKind.END:
            return None
        if signal.kind == SignalKind.JUMP:
            return self._jump(scope, node, signal.target)
        return cursor + 1

    def _jump(self, scope: _Scope, node: Node, target_id: str) -> int:
        target = self._block_map.index_of(target_id)
        if target is None or not scope.start <= target < scope.end:
            raise NodeExecutionError(node.id, f"jump target '{target_id}' is outside this scope")
        while scope.frames and not scope.frames[-1].contains(target):
            scope.frames.pop()
        return target

    def _loop_back(self, scope: _Scope, current: int, proposed: int) -> int:
        """After a legacy loop's last body node, return to the loop node."""
        if scope.frames:
            top = scope.frames[-1]
            if top.kind == "legacy_loop" and current == top.end_index:
                return top.start_index
        return proposed

    # ========== Node running ==========

    def _next_iteration(self, node_id: str) -> int:
        self._iterations[node_id] = self._iterations.get(node_id, 0) + 1
        return self._iterations[node_id]

    async def _run_node(
        self,
        node: Node,
        scope: _Scope,
        handler: Handler,
        record: bool | None = None,
    ) -> HandlerResult:
        """Run one handler with events; every failure becomes ``NodeExecutionError``."""
        if record is None:
            record = node.kind not in _PASS_THROUGH
        iteration = self._next_iteration(node.id)
        resolved = scope.store.resolve_config(node.config)
        self._emit(
            EventType.NODE_STARTED,
            node=node,
            iteration=iteration,
            item_index=scope.item_index,
            resolved_config=resolved,
        )

        def on_chunk(chunk: str) -> None:
            self._emit(
                EventType.NODE_STREAMING,
                node=node,
                iteration=iteration,
                item_index=scope.item_index,
                content=chunk,
            )

        ctx = NodeContext(
            node=node,
            store=scope.store,
            resolved_config=resolved,
            run_input=self._input,
            adapter=self.adapter,
            settings=self.settings,
            on_chunk=on_chunk,
            remaining=self._remaining,
            abort=self._abort,
        )

        def failed(reason: str) -> None:
            self._emit(
                EventType.NODE_FAILED,
                node=node,
                iteration=iteration,
                item_index=scope.item_index,
                resolved_config=resolved,
                error=reason,
            )

        try:
            result = await handler(ctx)
        except NodeExecutionError as e:
            failed(e.reason)
            raise
        except (ExecutionCancelled, asyncio.CancelledError):
            failed("cancelled")
            raise
        except ExecutionTimedOut:
            failed("timeout")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in node '{node.id}'")
            failed(f"{type(e).__name__}: {e}")
            raise NodeExecutionError(node.id, f"{type(e).__name__}: {e}") from e

        if record:
            scope.store.record_output(node.id, result.output)
            if scope.is_main:
                self._last_output_node = node.id
        else:
            scope.store.replace_output(node.id, result.output)
        if result.is_final_output and scope.is_main:
            self._final_output = result.output
            self._final_output_node = node.id

        self._emit(
            EventType.NODE_COMPLETED,
            node=node,
            iteration=iteration,
            item_index=scope.item_index,
            input=result.input,
            output=result.output,
            resolved_config=result.resolved_config or resolved,
        )
        return result

    def _skip_node(self, node: Node, scope: _Scope, reason: str) -> None:
        self._emit(
            EventType.NODE_SKIPPED,
            node=node,
            iteration=self._next_iteration(node.id),
            item_index=scope.item_index,
            data={"reason": reason},
        )

    def _skip_range(self, scope: _Scope, start: int, end: int, reason: str) -> None:
        for index in range(start, end):
            self._skip_node(self._nodes[index], scope, reason)

    def _top_frame(self, scope: _Scope, node: Node, kind: str) -> _Frame:
        if not scope.frames or scope.frames[-1].block_id != node.block_id:
            raise NodeExecutionError(
                node.id, f"reached '{node.type}' of block '{node.block_id}' without entering it"
            )
        frame = scope.frames[-1]
        if frame.kind != kind:
            raise NodeExecutionError(node.id, f"expected an open {kind} block, found {frame.kind}")
        return frame

    def _block(self, node: Node):
        return self._block_map.get(node.block_id)

    # ========== Loops ==========

    async def _wants_another(
        self,
        ctx: NodeContext,
        frame: _Frame,
        condition: ConditionSpec | None,
    ) -> bool:
        """Decide whether a loop runs again, enforcing the workflow ceiling."""
        if frame.iteration >= frame.max_iterations:
            return False
        if condition is not None:
            text = (
                ctx.store.lookup(condition.input_variable)
                if condition.input_variable
                else ctx.store.last_output
            )
            try:
                wants = await evaluate_condition(condition, text, judge=make_judge(ctx))
            except ConditionConfigError as e:
                raise ctx.fail(str(e)) from e
        else:
            wants = True
        if wants and frame.iteration >= self._ceiling:
            raise LoopMaxExceededError(ctx.node.id, self._ceiling)
        return wants

    async def _step_loop_start(self, scope: _Scope, cursor: int, node: Node) -> int:
        block = self._block(node)

        async def run(ctx: NodeContext) -> HandlerResult:
            config: LoopStartConfig = ctx.typed()
            requested = clamp(config.max_iterations, LOOP_CEILING_MIN, LOOP_CEILING_MAX)
            ctx.store.set("loop_iteration", "1")
            return HandlerResult(
                output=f"Loop iteration 1 of up to {min(requested, self._ceiling)}",
                signal=ControlSignal.enter_block(),
                resolved_config={
                    "loop_type": config.loop_type,
                    "max_iterations": requested,
                    "ceiling": self._ceiling,
                },
            )

        result = await self._run_node(node, scope, run)
        scope.frames.append(
            _Frame(
                block_id=node.block_id,
                kind="loop",
                start_index=cursor,
                end_index=block.end_index,
                max_iterations=result.resolved_config["max_iterations"],
            )
        )
        return cursor + 1

    async def _step_loop_end(self, scope: _Scope, cursor: int, node: Node) -> int:
        frame = self._top_frame(scope, node, "loop")
        start_node = self._nodes[frame.start_index]

        async def run(ctx: NodeContext) -> HandlerResult:
            # Re-resolve the loop config so a condition sees the current variables
            config: LoopStartConfig = start_node.typed_config(
                ctx.store.resolve_config(start_node.config)
            )
            condition = config if config.loop_type == "condition" else None
            more = await self._wants_another(ctx, frame, condition)
            return HandlerResult(
                output=f"Loop iteration {frame.iteration} finished",
                signal=ControlSignal.next() if more else ControlSignal.exit_block(),
                resolved_config={"iteration": frame.iteration, "continue": more},
            )

        result = await self._run_node(node, scope, run)
        if result.signal.kind == SignalKind.CONTINUE:
            frame.iteration += 1
            scope.store.set("loop_iteration", str(frame.iteration))
            return frame.start_index + 1
        scope.frames.pop()
        return cursor + 1

    async def _step_legacy_loop(self, scope: _Scope, cursor: int, node: Node) -> int | None:
        active = None
        if scope.frames and scope.frames[-1].kind == "legacy_loop":
            if scope.frames[-1].block_id == node.id:
                active = scope.frames[-1]

        async def run(ctx: NodeContext) -> HandlerResult:
            config: LoopConfig = ctx.typed()
            if config.body_end:
                body_end = self._block_map.index_of(config.body_end)
            else:
                body_end = scope.end - 1
            if body_end is None or not cursor < body_end < scope.end:
                raise ctx.fail("loop body must end after the loop and inside this scope")
            max_iterations = clamp(config.max_iterations, LOOP_CEILING_MIN, LOOP_CEILING_MAX)

            if active is None:
                more, iteration = True, 1
            else:
                condition = None
                if config.condition_type == "condition":
                    condition = config.condition or ConditionSpec()
                more = await self._wants_another(ctx, active, condition)
                iteration = active.iteration + 1 if more else active.iteration

            if more:
                ctx.store.set("loop_iteration", str(iteration))
            return HandlerResult(
                output=(
                    f"Loop iteration {iteration}"
                    if more
                    else f"Loop finished after {iteration} iterations"
                ),
                signal=ControlSignal.enter_block() if more else ControlSignal.exit_block(),
                resolved_config={
                    "condition_type": config.condition_type,
                    "max_iterations": max_iterations,
                    "iteration": iteration,
                    "body_end_index": body_end,
                    "exit_target": config.exit_target,
                },
            )

        result = await self._run_node(node, scope, run)
        body_end = result.resolved_config["body_end_index"]

        if result.signal.kind == SignalKind.ENTER_BLOCK:
            if active is None:
                scope.frames.append(
                    _Frame(
                        block_id=node.id,
                        kind="legacy_loop",
                        start_index=cursor,
                        end_index=body_end,
                        max_iterations=result.resolved_config["max_iterations"],
                    )
                )
            else:
                active.iteration += 1
            return cursor + 1

        if active is not None:
            scope.frames.pop()
        exit_target = result.resolved_config["exit_target"]
        if exit_target:
            return self._jump(scope, node, exit_target)
        return self._loop_back(scope, body_end, body_end + 1)

    # ========== Conditions ==========

    async def _step_condition_if(self, scope: _Scope, cursor: int, node: Node) -> int:
        block = self._block(node)
        result = await self._run_node(node, scope, HANDLERS[NodeType.CONDITION_IF])
        taken = bool(result.signal.branch)
        scope.frames.append(
            _Frame(
                block_id=node.block_id,
                kind="condition",
                start_index=cursor,
                end_index=block.end_index,
                else_index=block.else_index,
                branch_taken=taken,
            )
        )
        if taken:
            return cursor + 1
        branch_end = block.else_index if block.else_index is not None else block.end_index
        self._skip_range(scope, cursor + 1, branch_end, "condition was false")
        return branch_end

    async def _step_condition_else(self, scope: _Scope, cursor: int, node: Node) -> int:
        frame = self._top_frame(scope, node, "condition")

        async def run(ctx: NodeContext) -> HandlerResult:
            if frame.branch_taken:
                return HandlerResult(output="Else branch skipped", signal=ControlSignal.exit_block())
            return HandlerResult(output="Else branch taken", signal=ControlSignal.enter_block())

        result = await self._run_node(node, scope, run)
        if result.signal.kind == SignalKind.EXIT_BLOCK:
            self._skip_range(scope, cursor + 1, frame.end_index, "condition was true")
            return frame.end_index
        return cursor + 1

    async def _step_condition_end(self, scope: _Scope, cursor: int, node: Node) -> int:
        frame = self._top_frame(scope, node, "condition")

        async def run(ctx: NodeContext) -> HandlerResult:
            return HandlerResult(
                output="true" if frame.branch_taken else "false",
                signal=ControlSignal.exit_block(),
            )

        await self._run_node(node, scope, run)
        scope.frames.pop()
        return cursor + 1

    # ========== Parallel and batch ==========

    def _split(self, ctx: NodeContext, config: SplitConfig) -> tuple[str, list[str]]:
        text = (
            ctx.store.lookup(config.input_variable)
            if config.input_variable
            else ctx.store.last_output
        )
        try:
            return text, split_items(text, config.split_mode, config.separator)
        except SplitError as e:
            raise ctx.fail(str(e)) from e

    def _item_store(self, scope: _Scope, index: int, item: str) -> VariableStore:
        store = scope.store.clone()
        store.set("item", item)
        store.set("item_index", str(index))
        store.last_output = item
        return store

    async def _step_parallel_start(self, scope: _Scope, cursor: int, node: Node) -> int:
        block = self._block(node)
        frame = _Frame(
            block_id=node.block_id,
            kind="parallel",
            start_index=cursor,
            end_index=block.end_index,
        )

        async def run_item(index: int, item: str) -> str:
            store = self._item_store(scope, index, item)
            await self._run_range(
                _Scope(store=store, start=cursor + 1, end=block.end_index, item_index=index)
            )
            return store.last_output

        async def run(ctx: NodeContext) -> HandlerResult:
            config: ParallelStartConfig = ctx.typed()
            text, items = self._split(ctx, config)
            concurrency = concurrency_of(config.concurrency)
            logger.debug(f"Parallel block '{node.block_id}': {len(items)} items, concurrency {concurrency}")
            frame.config = config
            frame.items_result = await run_items(items, run_item, concurrency, config.retry_count)
            return HandlerResult(
                output=f"{len(items)} items processed",
                input=text,
                signal=ControlSignal.enter_block(),
                resolved_config={
                    "split_mode": config.split_mode,
                    "item_count": len(items),
                    "concurrency": concurrency,
                    "retry_count": config.retry_count,
                },
            )

        await self._run_node(node, scope, run)
        scope.frames.append(frame)
        return block.end_index

    async def _step_parallel_end(self, scope: _Scope, cursor: int, node: Node) -> int:
        frame = self._top_frame(scope, node, "parallel")
        scope.frames.pop()

        async def run(ctx: NodeContext) -> HandlerResult:
            aggregated = frame.items_result
            if not aggregated.all_succeeded:
                raise ctx.fail(aggregated.failure_summary())
            config: ParallelStartConfig = frame.config
            merged = merge_outputs(aggregated.outputs(), config.output_mode, config.output_separator)
            if config.output_variable:
                ctx.store.set(config.output_variable, merged)
            return HandlerResult(
                output=merged,
                signal=ControlSignal.exit_block(),
                resolved_config={
                    "output_mode": config.output_mode,
                    "item_count": len(aggregated.results),
                },
            )

        await self._run_node(node, scope, run)
        return cursor + 1

    async def _step_batch(self, scope: _Scope, cursor: int, node: Node) -> int:
        async def run(ctx: NodeContext) -> HandlerResult:
            config: BatchConfig = ctx.typed()
            targets: list[Node] = []
            for target_id in config.target_nodes:
                index = self._block_map.index_of(target_id)
                if index is None or not cursor < index < scope.end:
                    raise ctx.fail(f"batch target '{target_id}' is not after the batch node")
                target = self._nodes[index]
                if target.kind not in HANDLERS or target.kind in CONTROL_TYPES:
                    raise ctx.fail(f"batch target '{target_id}' is not a simple node")
                targets.append(target)

            text, items = self._split(ctx, config)

            async def run_item(index: int, item: str) -> str:
                item_scope = _Scope(
                    store=self._item_store(scope, index, item),
                    start=cursor + 1,
                    end=scope.end,
                    item_index=index,
                )
                for target in targets:
                    await self._checkpoint()
                    await self._run_node(target, item_scope, HANDLERS[target.kind])
                return item_scope.store.last_output

            concurrency = concurrency_of(config.concurrency)
            aggregated = await run_items(items, run_item, concurrency)
            if not aggregated.all_succeeded:
                raise ctx.fail(aggregated.failure_summary())
            merged = merge_outputs(aggregated.outputs(), config.output_mode, config.output_separator)
            if config.output_variable:
                ctx.store.set(config.output_variable, merged)
            return HandlerResult(
                output=merged,
                input=text,
                resolved_config={
                    "target_nodes": config.target_nodes,
                    "split_mode": config.split_mode,
                    "item_count": len(items),
                    "concurrency": concurrency,
                    "output_mode": config.output_mode,
                },
            )

        result = await self._run_node(node, scope, run)
        scope.consumed.update(result.resolved_config["target_nodes"])
        return cursor + 1
