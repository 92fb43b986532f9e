"""Block resolver: rebuild nested control flow from the flat node list.

The editor stores a workflow as an ordered list where each block is a pair of
marker nodes sharing a ``block_id``. This module scans the list once with a
stack, pairs every block start with its end, and records the nesting tree.
The result is a jump table the executor consults on every step instead of
searching the node list.

All structural validation happens here, before a run starts. Nothing in this
module raises during execution.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import networkx as nx
from pydantic import BaseModel, ValidationError

from storyflow.core.errors import StructuralError
from storyflow.core.workflow_schema import (
    BLOCK_END_TYPES,
    BLOCK_PAIRS,
    CONCURRENCY_MAX,
    CONCURRENCY_MIN,
    CONTROL_TYPES,
    LOOP_CEILING_MAX,
    LOOP_CEILING_MIN,
    BatchConfig,
    ConditionConfig,
    LoopConfig,
    Node,
    NodeType,
    Workflow,
)

logger = logging.getLogger(__name__)

_BLOCK_KIND = {
    NodeType.LOOP_START: "loop",
    NodeType.PARALLEL_START: "parallel",
    NodeType.CONDITION_IF: "condition",
}


@dataclass
class BlockInfo:
    """One resolved block instance."""

    block_id: str
    kind: str  # "loop" | "parallel" | "condition"
    start_index: int
    end_index: int
    else_index: int | None = None
    parent_block_id: str | None = None


@dataclass
class BlockMap:
    """Jump table for one node list.

    ``pairs`` maps each block-start index to its block-end index; ``blocks``
    holds the per-block details; ``tree`` is the parent -> child nesting
    forest (block ids as nodes).
    """

    pairs: dict[int, int] = field(default_factory=dict)
    blocks: dict[str, BlockInfo] = field(default_factory=dict)
    tree: nx.DiGraph = field(default_factory=nx.DiGraph)
    index_by_id: dict[str, int] = field(default_factory=dict)

    def get(self, block_id: str) -> BlockInfo:
        return self.blocks[block_id]

    def roots(self) -> list[str]:
        roots = [b for b in self.tree.nodes if self.tree.in_degree(b) == 0]
        return sorted(roots, key=lambda b: self.blocks[b].start_index)

    def children(self, block_id: str) -> list[str]:
        return sorted(self.tree.successors(block_id), key=lambda b: self.blocks[b].start_index)

    def enclosing_blocks(self, index: int) -> list[str]:
        """Ids of blocks whose body holds ``index``, outermost first.

        A block's else and end markers belong to its body; its start marker
        belongs to the surrounding level.
        """
        containing = [
            b for b in self.blocks.values() if b.start_index < index <= b.end_index
        ]
        if not containing:
            return []
        innermost = max(containing, key=lambda b: b.start_index)
        chain = nx.ancestors(self.tree, innermost.block_id) | {innermost.block_id}
        return sorted(chain, key=lambda b: self.blocks[b].start_index)

    def parent_of(self, index: int, node: Node) -> str | None:
        """Innermost block a node sits in, not counting a block it marks."""
        chain = [b for b in self.enclosing_blocks(index) if b != node.block_id]
        return chain[-1] if chain else None

    def crossed_block(self, first: int, last: int) -> str | None:
        """Id of a block that the span ``[first, last]`` enters or leaves part way.

        A block must lie wholly inside the span, wholly outside it, or hold
        the whole span within one of its branches.
        """
        for block in self.blocks.values():
            start, end = block.start_index, block.end_index
            if end < first or start > last:
                continue
            if first < start and end <= last:
                continue
            if start < first and last < end:
                if block.else_index is None or (first < block.else_index) == (
                    last < block.else_index
                ):
                    continue
            return block.block_id
        return None

    def index_of(self, node_id: str) -> int | None:
        return self.index_by_id.get(node_id)


def resolve_blocks(nodes: list[Node]) -> BlockMap:
    """Pair block markers with a single left-to-right scan.

    Raises:
        StructuralError: on mismatched or unterminated blocks.
    """
    block_map = BlockMap(index_by_id={n.id: i for i, n in enumerate(nodes)})
    problems: list[str] = []
    # Stack of (block_id, start_index, start_type)
    stack: list[tuple[str, int, NodeType]] = []
    seen_blocks: set[str] = set()

    for index, node in enumerate(nodes):
        try:
            kind = node.kind
        except ValueError:
            continue  # Reported by validate_structure

        if kind in BLOCK_PAIRS:
            if not node.block_id:
                problems.append(f"Node '{node.id}' ({kind.value}) is missing block_id")
                continue
            if node.block_id in seen_blocks:
                problems.append(f"Block id '{node.block_id}' is used by more than one block")
                continue
            seen_blocks.add(node.block_id)
            stack.append((node.block_id, index, kind))

        elif kind == NodeType.CONDITION_ELSE:
            if not stack or stack[-1][0] != node.block_id or stack[-1][2] != NodeType.CONDITION_IF:
                problems.append(
                    f"condition_else '{node.id}' (block '{node.block_id}') is not directly "
                    f"inside its condition_if block"
                )
                continue
            block_id, start_index, _ = stack[-1]
            pending = block_map.blocks.get(block_id)
            if pending is not None:
                problems.append(f"Condition block '{block_id}' has more than one condition_else")
                continue
            # Placeholder, completed when the block end is seen
            block_map.blocks[block_id] = BlockInfo(
                block_id=block_id,
                kind="condition",
                start_index=start_index,
                end_index=-1,
                else_index=index,
            )

        elif kind in BLOCK_END_TYPES:
            if not stack:
                problems.append(f"Block end '{node.id}' ({kind.value}) has no matching start")
                continue
            block_id, start_index, start_kind = stack[-1]
            if node.block_id != block_id or BLOCK_PAIRS[start_kind] != kind:
                problems.append(
                    f"Block end '{node.id}' ({kind.value}, block '{node.block_id}') does not "
                    f"match open block '{block_id}' ({start_kind.value})"
                )
                continue
            stack.pop()
            parent = stack[-1][0] if stack else None
            existing = block_map.blocks.get(block_id)
            block_map.blocks[block_id] = BlockInfo(
                block_id=block_id,
                kind=_BLOCK_KIND[start_kind],
                start_index=start_index,
                end_index=index,
                else_index=existing.else_index if existing else None,
                parent_block_id=parent,
            )
            block_map.pairs[start_index] = index

    for block_id, start_index, start_kind in stack:
        problems.append(
            f"Block '{block_id}' ({start_kind.value} at position {start_index}) is never closed"
        )

    if problems:
        raise StructuralError(problems)

    for block in block_map.blocks.values():
        block_map.tree.add_node(block.block_id)
        if block.parent_block_id:
            block_map.tree.add_edge(block.parent_block_id, block.block_id)

    logger.debug(f"Resolved {len(block_map.blocks)} blocks over {len(nodes)} nodes")
    return block_map


# Range-checked literal config values per node type
_LITERAL_BOUNDS: dict[NodeType, dict[str, tuple[int, int]]] = {
    NodeType.LOOP_START: {"max_iterations": (LOOP_CEILING_MIN, LOOP_CEILING_MAX)},
    NodeType.LOOP: {"max_iterations": (LOOP_CEILING_MIN, LOOP_CEILING_MAX)},
    NodeType.PARALLEL_START: {"concurrency": (CONCURRENCY_MIN, CONCURRENCY_MAX)},
    NodeType.BATCH: {"concurrency": (CONCURRENCY_MIN, CONCURRENCY_MAX)},
}


def _is_template(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value


def _literal_config(model: type[BaseModel], node: Node) -> BaseModel:
    """Parse the non-templated part of a node's config.

    Raises:
        ValidationError: a literal value is invalid.
    """
    return model.model_validate({k: v for k, v in node.config.items() if not _is_template(v)})


def _check_config_bounds(node: Node, problems: list[str]) -> None:
    """Parse a node's typed config, reporting type errors and out-of-range literals.

    Templated values are left to run time, where they are resolved and clamped.
    """
    try:
        node.typed_config()
    except ValidationError as e:
        for err in e.errors():
            if _is_template(err.get("input")):
                continue
            loc = ".".join(str(x) for x in err["loc"]) or "config"
            problems.append(f"Node '{node.id}' ({node.type}): {loc}: {err['msg']}")

    for name, (low, high) in _LITERAL_BOUNDS.get(node.kind, {}).items():
        value = node.config.get(name)
        if isinstance(value, int) and not isinstance(value, bool) and not low <= value <= high:
            problems.append(
                f"Node '{node.id}' ({node.type}): {name} must be between {low} and {high}, "
                f"got {value}"
            )


def validate_structure(workflow: Workflow) -> BlockMap:
    """Validate a workflow completely and return its block map.

    Checks node ids, ordering and types, block pairing and declared parents,
    legacy targets against the block nesting, and literal loop/concurrency
    bounds. Collects every problem before raising.

    Raises:
        StructuralError: listing every problem found.
    """
    problems: list[str] = []
    nodes = workflow.ordered_nodes()

    if not nodes:
        raise StructuralError(["Workflow has no nodes"])

    if not LOOP_CEILING_MIN <= workflow.loop_max_count <= LOOP_CEILING_MAX:
        problems.append(
            f"loop_max_count must be between {LOOP_CEILING_MIN} and {LOOP_CEILING_MAX}, "
            f"got {workflow.loop_max_count}"
        )
    if workflow.timeout_seconds <= 0:
        problems.append(f"timeout_seconds must be positive, got {workflow.timeout_seconds}")

    seen_ids: set[str] = set()
    seen_order: set[int] = set()
    for node in nodes:
        if node.id in seen_ids:
            problems.append(f"Duplicate node ID: '{node.id}'")
        seen_ids.add(node.id)
        if node.order_index in seen_order:
            problems.append(f"Duplicate order_index {node.order_index} (node '{node.id}')")
        seen_order.add(node.order_index)

    known_types = {t.value for t in NodeType}
    unknown = [n for n in nodes if n.type not in known_types]
    for node in unknown:
        problems.append(f"Unknown node type '{node.type}' on node '{node.id}'")

    if nodes[0].type != NodeType.START.value:
        problems.append(f"First node must be a start node, got '{nodes[0].type}'")
    for node in nodes[1:]:
        if node.type == NodeType.START.value:
            problems.append(f"Start node '{node.id}' must be the first node")

    index_by_id = {n.id: i for i, n in enumerate(nodes)}
    for index, node in enumerate(nodes):
        if node.type not in known_types:
            continue
        _check_config_bounds(node, problems)
        kind = node.kind
        if kind == NodeType.CONDITION:
            _check_condition_targets(node, index_by_id, problems)
        elif kind == NodeType.LOOP:
            _check_loop_targets(node, index, index_by_id, problems)
        elif kind == NodeType.BATCH:
            _check_batch_targets(node, index, nodes, index_by_id, problems)

    block_map: BlockMap | None = None
    try:
        block_map = resolve_blocks(nodes)
    except StructuralError as e:
        problems.extend(e.problems)

    if block_map is not None:
        _check_nesting(block_map, nodes, known_types, problems)

    if problems:
        raise StructuralError(problems)
    return block_map


def _check_condition_targets(node: Node, index_by_id: dict[str, int], problems: list[str]) -> None:
    try:
        config = _literal_config(ConditionConfig, node)
    except ValidationError:
        return
    for action, target, label in (
        (config.true_action, config.true_target, "true_target"),
        (config.false_action, config.false_target, "false_target"),
    ):
        if action != "jump":
            continue
        if not target:
            problems.append(f"Condition '{node.id}': jump action without {label}")
        elif target not in index_by_id:
            problems.append(f"Condition '{node.id}': {label} '{target}' not found")


def _check_loop_targets(
    node: Node, index: int, index_by_id: dict[str, int], problems: list[str]
) -> None:
    try:
        config = _literal_config(LoopConfig, node)
    except ValidationError:
        return
    if config.body_end is not None:
        end = index_by_id.get(config.body_end)
        if end is None:
            problems.append(f"Loop '{node.id}': body_end '{config.body_end}' not found")
        elif end <= index:
            problems.append(f"Loop '{node.id}': body_end '{config.body_end}' precedes the loop")
    elif index == len(index_by_id) - 1:
        problems.append(f"Loop '{node.id}' is the last node and has no body")
    if config.exit_target is not None and config.exit_target not in index_by_id:
        problems.append(f"Loop '{node.id}': exit_target '{config.exit_target}' not found")
    if config.condition_type == "condition" and config.condition is None:
        problems.append(f"Loop '{node.id}': condition loop without a condition")


def _check_batch_targets(
    node: Node,
    index: int,
    nodes: list[Node],
    index_by_id: dict[str, int],
    problems: list[str],
) -> None:
    try:
        config = _literal_config(BatchConfig, node)
    except ValidationError:
        return
    if not config.target_nodes:
        problems.append(f"Batch '{node.id}' has no target_nodes")
    for target in config.target_nodes:
        target_index = index_by_id.get(target)
        if target_index is None:
            problems.append(f"Batch '{node.id}': target '{target}' not found")
            continue
        if target_index <= index:
            problems.append(f"Batch '{node.id}': target '{target}' precedes the batch node")
        target_type = nodes[target_index].type
        if target_type in {t.value for t in CONTROL_TYPES} or target_type == NodeType.START.value:
            problems.append(
                f"Batch '{node.id}': target '{target}' is a {target_type} node; "
                f"only simple nodes can be batch targets"
            )


def _check_nesting(
    block_map: BlockMap, nodes: list[Node], known_types: set[str], problems: list[str]
) -> None:
    """Check declared parents and legacy targets against the resolved nesting."""
    for index, node in enumerate(nodes):
        if node.parent_block_id:
            actual = block_map.parent_of(index, node)
            if node.parent_block_id not in block_map.blocks:
                problems.append(
                    f"Node '{node.id}' references unknown parent block '{node.parent_block_id}'"
                )
            elif node.parent_block_id != actual:
                where = f"block '{actual}'" if actual else "no block"
                problems.append(
                    f"Node '{node.id}' declares parent block '{node.parent_block_id}' "
                    f"but sits in {where}"
                )

        if node.type not in known_types:
            continue
        if node.kind == NodeType.CONDITION:
            try:
                config = _literal_config(ConditionConfig, node)
            except ValidationError:
                continue
            for action, target, label in (
                (config.true_action, config.true_target, "true_target"),
                (config.false_action, config.false_target, "false_target"),
            ):
                if action == "jump" and target in block_map.index_by_id:
                    _check_jump(block_map, index, node, target, label, problems)
        elif node.kind == NodeType.LOOP:
            try:
                config = _literal_config(LoopConfig, node)
            except ValidationError:
                continue
            if config.exit_target in block_map.index_by_id:
                _check_jump(block_map, index, node, config.exit_target, "exit_target", problems)
            if config.body_end is None:
                last = _scope_last_index(block_map, index, len(nodes))
            else:
                last = block_map.index_of(config.body_end)
            if last is None or last <= index:
                continue
            crossed = block_map.crossed_block(index, last)
            if crossed is not None:
                problems.append(
                    f"Loop '{node.id}': body through '{nodes[last].id}' crosses the "
                    f"boundary of block '{crossed}'"
                )


def _check_jump(
    block_map: BlockMap,
    source: int,
    node: Node,
    target_id: str,
    label: str,
    problems: list[str],
) -> None:
    """A jump may stay at its level or leave blocks, but never enter one."""
    here = block_map.enclosing_blocks(source)
    there = block_map.enclosing_blocks(block_map.index_of(target_id))
    entered = [b for b in there if b not in here]
    if entered:
        problems.append(
            f"Node '{node.id}': {label} '{target_id}' is inside block '{entered[0]}'"
        )
        return
    for block_id in here[len(there):]:
        if block_map.get(block_id).kind == "parallel":
            problems.append(
                f"Node '{node.id}': {label} '{target_id}' leaves parallel block '{block_id}'"
            )


def _scope_last_index(block_map: BlockMap, index: int, node_count: int) -> int:
    """Last node of the range a node runs in: its parallel body or the whole list."""
    for block_id in reversed(block_map.enclosing_blocks(index)):
        block = block_map.get(block_id)
        if block.kind == "parallel":
            return block.end_index - 1
    return node_count - 1


def concurrency_of(value: int) -> int:
    """Run-time re-clamp of a concurrency value."""
    return max(CONCURRENCY_MIN, min(CONCURRENCY_MAX, value))
