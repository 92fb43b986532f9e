# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the storyflow test suite.

This module provides foundational fixtures used across all test modules:
- Test databases
- A scripted AI adapter standing in for real AI CLIs
- Workflow builders and a synchronous runner for the async executor

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from storyflow.core.ai import AIRequest, StreamChunk
from storyflow.core.executor import ExecutionEvent, ExecutionResult, WorkflowExecutor
from storyflow.core.state import Database
from storyflow.core.workflow_schema import Workflow


# =============================================================================
# Scripted AI adapter
# =============================================================================


@dataclass
class Reply:
    """What the scripted adapter streams for one request.

    ``error`` is reported through the error observer after the chunks; a done
    chunk follows unless ``done`` is False.
    """

    chunks: list[str] = field(default_factory=list)
    delay: float = 0.0  # Sleep before each chunk
    error: str | None = None
    done: bool = True


def user_prompt(request: AIRequest) -> str:
    """Content of the last user message of a request."""
    users = [m.content for m in request.messages if m.role == "user"]
    return users[-1] if users else ""


class ScriptedAdapter:
    """Fake AIAdapter; ``respond(request)`` returns a reply text or a ``Reply``."""

    def __init__(self, respond: Callable[[AIRequest], str | Reply] | None = None):
        self.respond = respond or (lambda request: "ok")
        self.requests: list[AIRequest] = []
        self.active = 0
        self.max_active = 0

    async def stream(self, request, on_error):
        self.requests.append(request)
        reply = self.respond(request)
        if isinstance(reply, str):
            reply = Reply(chunks=[reply])

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for chunk in reply.chunks:
                if reply.delay:
                    await asyncio.sleep(reply.delay)
                yield StreamChunk(content=chunk)
            if reply.error:
                on_error(reply.error)
            if reply.done:
                yield StreamChunk(done=True)
        finally:
            self.active -= 1

    def user_prompts(self) -> list[str]:
        return [user_prompt(r) for r in self.requests]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Returns:
        Initialized Database instance in a temporary directory.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def reply() -> type[Reply]:
    """The ``Reply`` type, for building scripted responses."""
    return Reply


@pytest.fixture
def scripted_adapter() -> type[ScriptedAdapter]:
    """The ``ScriptedAdapter`` type; instantiate with a ``respond`` callable."""
    return ScriptedAdapter


@pytest.fixture
def echo_adapter() -> ScriptedAdapter:
    """Adapter replying with the upper-cased user prompt."""
    return ScriptedAdapter(lambda request: user_prompt(request).upper())


def node(node_id: str, node_type: str, block_id: str | None = None, **config: Any) -> dict:
    data: dict[str, Any] = {"id": node_id, "type": node_type, "config": config}
    if block_id:
        data["block_id"] = block_id
    return data


@pytest.fixture
def make_node() -> Callable[..., dict]:
    """Build a node dict: ``make_node("ai", "ai_chat", user_prompt="...")``."""
    return node


@pytest.fixture
def make_workflow() -> Callable[..., Workflow]:
    """Build a workflow from node dicts, in list order."""

    def build(*nodes: dict, **kwargs: Any) -> Workflow:
        kwargs.setdefault("id", "wf-test")
        kwargs.setdefault("name", "Test workflow")
        return Workflow.model_validate({"nodes": list(nodes), **kwargs})

    return build


@pytest.fixture
def run_workflow() -> Callable[..., tuple[ExecutionResult, list[ExecutionEvent]]]:
    """Run a workflow to completion and return (result, events).

    ``setup(executor)`` may register extra listeners before the run starts.
    """

    def run(
        workflow: Workflow,
        input: str = "",
        adapter: Any = None,
        settings: Any = None,
        setup: Callable[[WorkflowExecutor], None] | None = None,
    ) -> tuple[ExecutionResult, list[ExecutionEvent]]:
        events: list[ExecutionEvent] = []

        async def main() -> ExecutionResult:
            executor = WorkflowExecutor(workflow, adapter=adapter, settings=settings)
            executor.add_listener(events.append)
            if setup is not None:
                setup(executor)
            return await executor.execute(input)

        return asyncio.run(main()), events

    return run
