"""Item splitting, bounded concurrent item-runs and result merging.

Shared by parallel blocks and legacy batch nodes: the input is split into
items, one item-run executes per item (at most ``concurrency`` at a time) and
the per-item outputs are joined back in item order once every run finished.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from storyflow.core.errors import ExecutionCancelled, ExecutionTimedOut, NodeExecutionError

logger = logging.getLogger(__name__)


class SplitError(ValueError):
    """Input cannot be split with the configured mode."""

    pass


@dataclass
class ItemRunResult:
    """Result from a single item-run."""

    index: int
    item: str
    output: str | None  # None on failure
    duration_seconds: float
    success: bool
    attempts: int = 1
    error: str | None = None
    failed_node_id: str | None = None


@dataclass
class AggregatedItemResult:
    """All item-runs of one parallel block or batch node, in item order."""

    results: list[ItemRunResult]

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)

    def get_failures(self) -> list[ItemRunResult]:
        return [r for r in self.results if not r.success]

    def outputs(self) -> list[str]:
        return [r.output or "" for r in self.results]

    def failure_summary(self) -> str:
        failures = self.get_failures()
        details = "; ".join(f"item {r.index}: {r.error}" for r in failures)
        return f"{len(failures)} of {len(self.results)} items failed ({details})"


def split_items(text: str, mode: str, separator: str = "\n") -> list[str]:
    """Split ``text`` into items.

    ``line`` and ``separator`` drop blank items; ``json_array`` requires a JSON
    array and serializes non-string elements back to JSON.

    Raises:
        SplitError: invalid JSON, or JSON that is not an array.
    """
    if mode == "json_array":
        try:
            data = json.loads(text) if text.strip() else []
        except json.JSONDecodeError as e:
            raise SplitError(f"Input is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise SplitError(f"Expected a JSON array, got {type(data).__name__}")
        return [v if isinstance(v, str) else json.dumps(v, ensure_ascii=False) for v in data]

    if mode == "separator":
        if not separator:
            raise SplitError("separator split mode requires a non-empty separator")
        parts = text.split(separator)
    else:
        parts = text.splitlines()
    return [p.strip() for p in parts if p.strip()]


def merge_outputs(outputs: list[str], mode: str, separator: str) -> str:
    """Join item outputs: ``array`` -> JSON array, ``concat`` -> joined text."""
    if mode == "array":
        return json.dumps(outputs, ensure_ascii=False)
    return separator.join(outputs)


async def run_items(
    items: list[str],
    run_one: Callable[[int, str], Awaitable[str]],
    concurrency: int,
    retry_count: int = 0,
) -> AggregatedItemResult:
    """Run ``run_one(index, item)`` for every item, at most ``concurrency`` at once.

    A failing item (``NodeExecutionError``) is retried up to ``retry_count``
    times and never aborts its siblings. Cancellation and timeout are
    re-raised once every item-run has stopped.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def run_with_retry(index: int, item: str) -> ItemRunResult:
        async with semaphore:
            started = time.monotonic()
            last_error: NodeExecutionError | None = None
            for attempt in range(1, retry_count + 2):
                try:
                    output = await run_one(index, item)
                    return ItemRunResult(
                        index=index,
                        item=item,
                        output=output,
                        duration_seconds=time.monotonic() - started,
                        success=True,
                        attempts=attempt,
                    )
                except NodeExecutionError as e:
                    last_error = e
                    if attempt <= retry_count:
                        logger.warning(
                            f"Item {index} failed (attempt {attempt}/{retry_count + 1}): {e.reason}"
                        )
            return ItemRunResult(
                index=index,
                item=item,
                output=None,
                duration_seconds=time.monotonic() - started,
                success=False,
                attempts=retry_count + 1,
                error=last_error.reason if last_error else "unknown error",
                failed_node_id=last_error.node_id if last_error else None,
            )

    outcomes = await asyncio.gather(
        *(run_with_retry(i, item) for i, item in enumerate(items)),
        return_exceptions=True,
    )

    results: list[ItemRunResult] = []
    stop: BaseException | None = None
    for outcome in outcomes:
        if isinstance(outcome, (ExecutionCancelled, ExecutionTimedOut)):
            stop = stop or outcome
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append(outcome)
    if stop is not None:
        raise stop

    results.sort(key=lambda r: r.index)
    return AggregatedItemResult(results=results)
