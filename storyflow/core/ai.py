"""AI invocation boundary.

Adapters stream a completion as ``StreamChunk`` objects and report errors
through a separate observer callback. The two channels do not always agree (a
provider may close the stream cleanly after reporting an error), so
``invoke_streaming`` collapses both into a single ``AIOutcome``:

- an error seen by the observer (or carried on a chunk) is a failure
- a stream that ends without a ``done`` chunk is a failure
- cancellation through an ``AbortSignal`` is ``cancelled``
- running past the remaining time budget is ``timeout``
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import re
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from storyflow.core.config import DEFAULT_PROVIDERS, ProviderCommand

logger = logging.getLogger(__name__)

ErrorObserver = Callable[[str], None]


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class AIRequest(BaseModel):
    provider: str = ""
    model: str = ""
    messages: list[Message] = Field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None


@dataclass
class StreamChunk:
    content: str = ""
    done: bool = False
    error: str | None = None


class AIAdapter(Protocol):
    """Anything that can stream a completion for an ``AIRequest``."""

    def stream(self, request: AIRequest, on_error: ErrorObserver) -> AsyncIterator[StreamChunk]:
        ...


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass
class AIOutcome:
    kind: OutcomeKind
    text: str = ""
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def success(cls, text: str) -> AIOutcome:
        return cls(OutcomeKind.SUCCESS, text=text)

    @classmethod
    def failure(cls, reason: str, partial: str = "") -> AIOutcome:
        return cls(OutcomeKind.FAILURE, text=partial, reason=reason)

    @classmethod
    def cancelled(cls, partial: str = "") -> AIOutcome:
        return cls(OutcomeKind.CANCELLED, text=partial, reason="cancelled")

    @classmethod
    def timeout(cls, partial: str = "") -> AIOutcome:
        return cls(OutcomeKind.TIMEOUT, text=partial, reason="timeout")


class AbortSignal:
    """Tracks in-flight AI tasks of one execution so they can be cancelled."""

    def __init__(self) -> None:
        self._aborted = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def track(self, task: asyncio.Task) -> None:
        if self._aborted:
            task.cancel()
        self._tasks.add(task)

    def untrack(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)

    def abort(self) -> None:
        self._aborted = True
        for task in list(self._tasks):
            task.cancel()


async def invoke_streaming(
    adapter: AIAdapter,
    request: AIRequest,
    on_chunk: Callable[[str], None] | None = None,
    timeout: float | None = None,
    abort: AbortSignal | None = None,
) -> AIOutcome:
    """Drive one streaming call to a single outcome.

    Args:
        adapter: Streaming adapter.
        request: The request to send.
        on_chunk: Called with each non-empty content chunk.
        timeout: Remaining time budget in seconds (None = unbounded).
        abort: Signal whose ``abort()`` cancels the call.
    """
    if abort is not None and abort.aborted:
        return AIOutcome.cancelled()
    if timeout is not None and timeout <= 0:
        return AIOutcome.timeout()

    errors: list[str] = []
    parts: list[str] = []

    def on_error(message: str) -> None:
        errors.append(message or "unknown adapter error")

    async def consume() -> AIOutcome:
        finished = False
        stream = adapter.stream(request, on_error)
        try:
            async for chunk in stream:
                if abort is not None and abort.aborted:
                    return AIOutcome.cancelled("".join(parts))
                if chunk.error:
                    errors.append(chunk.error)
                    break
                if chunk.content:
                    parts.append(chunk.content)
                    if on_chunk is not None:
                        on_chunk(chunk.content)
                if chunk.done:
                    finished = True
                    break
        except Exception as e:
            logger.warning(f"AI stream raised {type(e).__name__}: {e}")
            errors.append(str(e) or type(e).__name__)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

        if errors:
            return AIOutcome.failure(errors[0], "".join(parts))
        if not finished:
            return AIOutcome.failure("stream ended without completion", "".join(parts))
        return AIOutcome.success("".join(parts))

    task = asyncio.create_task(consume())
    if abort is not None:
        abort.track(task)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if abort is not None:
            abort.untrack(task)

    if not done:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info(f"AI call timed out after {timeout:.1f}s")
        return AIOutcome.timeout("".join(parts))
    if task.cancelled():
        return AIOutcome.cancelled("".join(parts))
    return task.result()


def render_prompt(messages: list[Message]) -> str:
    """Flatten a chat into one prompt for CLIs that take plain text."""
    if len(messages) == 1 and messages[0].role == "user":
        return messages[0].content
    sections = []
    for message in messages:
        sections.append(f"[{message.role}]\n{message.content}")
    return "\n\n".join(sections)


class CLIAdapter:
    """Runs an AI CLI as a stateless subprocess and streams its stdout.

    A non-zero exit is reported through the error observer; a clean exit ends
    the stream with a ``done`` chunk.
    """

    # ANSI escape code pattern for stripping terminal colors
    ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

    def __init__(
        self,
        providers: dict[str, ProviderCommand] | None = None,
        default_provider: str = "claude",
        chunk_size: int = 1024,
    ):
        self.providers = dict(DEFAULT_PROVIDERS) if providers is None else providers
        self.default_provider = default_provider
        self.chunk_size = chunk_size

    def build_command(self, request: AIRequest) -> tuple[list[str], bool]:
        """Return (argv, uses_stdin) for ``request``.

        Raises:
            KeyError: if the provider has no configured command.
        """
        name = request.provider or self.default_provider
        provider = self.providers[name]
        argv = list(provider.command)
        if request.model and provider.model_flag:
            pos = provider.model_flag_position
            argv = argv[:pos] + [provider.model_flag, request.model] + argv[pos:]
        return argv, provider.uses_stdin

    async def stream(self, request: AIRequest, on_error: ErrorObserver) -> AsyncIterator[StreamChunk]:
        try:
            argv, uses_stdin = self.build_command(request)
        except KeyError:
            on_error(f"No CLI configured for provider '{request.provider or self.default_provider}'")
            return

        prompt = render_prompt(request.messages)
        if not uses_stdin:
            argv.append(prompt)

        logger.debug(f"Starting AI CLI: {argv[0]}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if uses_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            on_error(f"AI CLI not found: {argv[0]}")
            return

        stderr_task = asyncio.create_task(proc.stderr.read())
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if uses_stdin:
                proc.stdin.write(prompt.encode("utf-8"))
                await proc.stdin.drain()
                proc.stdin.close()

            while True:
                data = await proc.stdout.read(self.chunk_size)
                if not data:
                    break
                text = self.ANSI_ESCAPE.sub("", decoder.decode(data))
                if text:
                    yield StreamChunk(content=text)

            tail = self.ANSI_ESCAPE.sub("", decoder.decode(b"", final=True))
            if tail:
                yield StreamChunk(content=tail)

            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        finally:
            if proc.returncode is None:
                proc.kill()
            if not stderr_task.done():
                stderr_task.cancel()

        if returncode != 0:
            on_error(f"{argv[0]} exited with code {returncode}: {stderr[:500]}")
            return
        yield StreamChunk(done=True)
