"""Tests for block pairing and structural validation."""

from __future__ import annotations

import pytest

from storyflow.core.blocks import concurrency_of, resolve_blocks, validate_structure
from storyflow.core.errors import StructuralError
from storyflow.core.workflow_schema import Node


def _nodes(*specs: tuple) -> list[Node]:
    """Build nodes from (id, type[, block_id]) tuples."""
    nodes = []
    for i, spec in enumerate(specs):
        node_id, node_type = spec[0], spec[1]
        block_id = spec[2] if len(spec) > 2 else None
        nodes.append(Node(id=node_id, type=node_type, block_id=block_id, order_index=i))
    return nodes


class TestResolveBlocks:
    """Tests for the single-scan pairing of block markers."""

    def test_nested_blocks_are_paired(self):
        nodes = _nodes(
            ("start", "start"),
            ("ls", "loop_start", "loop1"),
            ("ai", "ai_chat"),
            ("if", "condition_if", "cond1"),
            ("yes", "text_concat"),
            ("else", "condition_else", "cond1"),
            ("no", "text_concat"),
            ("endif", "condition_end", "cond1"),
            ("le", "loop_end", "loop1"),
            ("out", "output"),
        )
        block_map = resolve_blocks(nodes)

        assert block_map.pairs == {1: 8, 3: 7}
        cond = block_map.get("cond1")
        assert cond.kind == "condition"
        assert cond.else_index == 5
        assert cond.parent_block_id == "loop1"
        assert block_map.get("loop1").parent_block_id is None
        assert block_map.children("loop1") == ["cond1"]
        assert block_map.enclosing_blocks(4) == ["loop1", "cond1"]
        assert block_map.roots() == ["loop1"]
        assert block_map.index_of("out") == 9

    def test_sibling_blocks(self):
        nodes = _nodes(
            ("start", "start"),
            ("p1", "parallel_start", "a"),
            ("x", "ai_chat"),
            ("p1e", "parallel_end", "a"),
            ("p2", "parallel_start", "b"),
            ("y", "ai_chat"),
            ("p2e", "parallel_end", "b"),
        )
        block_map = resolve_blocks(nodes)
        assert block_map.pairs == {1: 3, 4: 6}
        assert set(block_map.tree.nodes) == {"a", "b"}
        assert block_map.tree.number_of_edges() == 0

    def test_unclosed_block(self):
        nodes = _nodes(("start", "start"), ("ls", "loop_start", "loop1"), ("ai", "ai_chat"))
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("never closed" in p for p in exc.value.problems)

    def test_end_without_start(self):
        nodes = _nodes(("start", "start"), ("le", "loop_end", "loop1"))
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("no matching start" in p for p in exc.value.problems)

    def test_mismatched_end_type(self):
        nodes = _nodes(
            ("start", "start"),
            ("ls", "loop_start", "b1"),
            ("pe", "parallel_end", "b1"),
        )
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("does not match" in p for p in exc.value.problems)

    def test_crossed_blocks(self):
        nodes = _nodes(
            ("start", "start"),
            ("ls", "loop_start", "a"),
            ("ps", "parallel_start", "b"),
            ("le", "loop_end", "a"),
            ("pe", "parallel_end", "b"),
        )
        with pytest.raises(StructuralError):
            resolve_blocks(nodes)

    def test_else_outside_its_condition(self):
        nodes = _nodes(
            ("start", "start"),
            ("if", "condition_if", "c1"),
            ("ls", "loop_start", "l1"),
            ("else", "condition_else", "c1"),
            ("le", "loop_end", "l1"),
            ("end", "condition_end", "c1"),
        )
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("not directly inside" in p for p in exc.value.problems)

    def test_duplicate_else(self):
        nodes = _nodes(
            ("start", "start"),
            ("if", "condition_if", "c1"),
            ("e1", "condition_else", "c1"),
            ("e2", "condition_else", "c1"),
            ("end", "condition_end", "c1"),
        )
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("more than one condition_else" in p for p in exc.value.problems)

    def test_missing_block_id(self):
        nodes = _nodes(("start", "start"), ("ls", "loop_start"))
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("missing block_id" in p for p in exc.value.problems)

    def test_reused_block_id(self):
        nodes = _nodes(
            ("start", "start"),
            ("l1", "loop_start", "x"),
            ("e1", "loop_end", "x"),
            ("l2", "loop_start", "x"),
            ("e2", "loop_end", "x"),
        )
        with pytest.raises(StructuralError) as exc:
            resolve_blocks(nodes)
        assert any("more than one block" in p for p in exc.value.problems)


class TestValidateStructure:
    """Tests for whole-workflow validation before a run."""

    def test_valid_workflow(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ps", "parallel_start", block_id="p", concurrency=4),
            make_node("ai", "ai_chat", user_prompt="{{item}}"),
            make_node("pe", "parallel_end", block_id="p"),
            make_node("out", "output"),
        )
        block_map = validate_structure(workflow)
        assert block_map.pairs == {1: 3}

    def test_empty_workflow(self, make_workflow):
        with pytest.raises(StructuralError):
            validate_structure(make_workflow())

    def test_first_node_must_be_start(self, make_workflow, make_node):
        workflow = make_workflow(make_node("ai", "ai_chat"), make_node("s", "start"))
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("First node must be a start node" in p for p in problems)
        assert any("must be the first node" in p for p in problems)

    def test_unknown_type_and_duplicate_id(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("x", "teleport"),
            make_node("x", "output"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("Unknown node type 'teleport'" in p for p in problems)
        assert any("Duplicate node ID" in p for p in problems)

    def test_collects_every_problem(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ps", "parallel_start", block_id="p", concurrency=11),
            make_node("ls", "loop_start", block_id="l", max_iterations=51),
            make_node("le", "loop_end", block_id="l"),
            loop_max_count=0,
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("loop_max_count" in p for p in problems)
        assert any("concurrency" in p for p in problems)
        assert any("max_iterations" in p for p in problems)
        assert any("never closed" in p for p in problems)

    def test_non_positive_timeout(self, make_workflow, make_node):
        workflow = make_workflow(make_node("start", "start"), timeout_seconds=0)
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any("timeout_seconds" in p for p in exc.value.problems)

    def test_legacy_condition_jump_target(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("c", "condition", true_action="jump", true_target="nowhere"),
            make_node("d", "condition", false_action="jump"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("'nowhere' not found" in p for p in problems)
        assert any("jump action without false_target" in p for p in problems)

    def test_legacy_loop_targets(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ai", "ai_chat"),
            make_node("loop", "loop", body_end="ai", exit_target="gone"),
            make_node("tail", "loop"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("precedes the loop" in p for p in problems)
        assert any("exit_target 'gone' not found" in p for p in problems)
        assert any("last node and has no body" in p for p in problems)

    def test_batch_targets(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ai", "ai_chat"),
            make_node("batch", "batch", target_nodes=["ai", "cond", "ghost"]),
            make_node("cond", "condition"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("'ai' precedes the batch node" in p for p in problems)
        assert any("'cond' is a condition node" in p for p in problems)
        assert any("'ghost' not found" in p for p in problems)

    def test_unknown_parent_block(self, make_workflow, make_node):
        start = make_node("start", "start")
        ai = make_node("ai", "ai_chat")
        ai["parent_block_id"] = "nope"
        with pytest.raises(StructuralError) as exc:
            validate_structure(make_workflow(start, ai))
        assert any("unknown parent block" in p for p in exc.value.problems)


def test_concurrency_is_clamped():
    assert concurrency_of(0) == 1
    assert concurrency_of(5) == 5
    assert concurrency_of(20) == 10


class TestNestingChecks:
    """Legacy targets and declared parents are checked against the block nesting."""

    def test_jump_into_loop_body(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("c", "condition", keywords=["x"], true_action="jump", true_target="inner"),
            make_node("ls", "loop_start", block_id="L"),
            make_node("inner", "text_concat"),
            make_node("le", "loop_end", block_id="L"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any("true_target 'inner' is inside block 'L'" in p for p in exc.value.problems)

    def test_jump_to_block_end_from_outside(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("c", "condition", false_action="jump", false_target="le"),
            make_node("ls", "loop_start", block_id="L"),
            make_node("le", "loop_end", block_id="L"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any("'le' is inside block 'L'" in p for p in exc.value.problems)

    def test_jump_out_of_loop_body_is_allowed(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ls", "loop_start", block_id="L"),
            make_node("c", "condition", keywords=["x"], true_action="jump", true_target="after"),
            make_node("le", "loop_end", block_id="L"),
            make_node("after", "output"),
        )
        assert validate_structure(workflow).pairs == {1: 3}

    def test_jump_out_of_parallel_body(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ps", "parallel_start", block_id="P"),
            make_node("c", "condition", true_action="jump", true_target="after"),
            make_node("pe", "parallel_end", block_id="P"),
            make_node("after", "output"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any("leaves parallel block 'P'" in p for p in exc.value.problems)

    def test_loop_body_ending_inside_condition_branch(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("loop", "loop", max_iterations=3, body_end="inside"),
            make_node("if", "condition_if", block_id="C", keywords=["never"]),
            make_node("inside", "text_concat"),
            make_node("ce", "condition_end", block_id="C"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any(
            "Loop 'loop': body through 'inside' crosses the boundary of block 'C'" in p
            for p in exc.value.problems
        )

    def test_loop_body_across_else(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("if", "condition_if", block_id="C"),
            make_node("loop", "loop", body_end="no"),
            make_node("yes", "text_concat"),
            make_node("else", "condition_else", block_id="C"),
            make_node("no", "text_concat"),
            make_node("ce", "condition_end", block_id="C"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any("block 'C'" in p for p in exc.value.problems)

    def test_loop_body_wrapping_a_whole_block(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("loop", "loop", max_iterations=2, body_end="ce"),
            make_node("if", "condition_if", block_id="C"),
            make_node("inside", "text_concat"),
            make_node("ce", "condition_end", block_id="C"),
            make_node("out", "output"),
        )
        assert validate_structure(workflow).pairs == {2: 4}

    def test_default_loop_body_stays_in_parallel_body(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ps", "parallel_start", block_id="P"),
            make_node("loop", "loop", max_iterations=2),
            make_node("work", "text_concat"),
            make_node("pe", "parallel_end", block_id="P"),
        )
        assert validate_structure(workflow).pairs == {1: 4}

    def test_parent_block_ids_match_nesting(self, make_workflow, make_node):
        nodes = [
            make_node("start", "start"),
            make_node("ls", "loop_start", block_id="outer"),
            make_node("if", "condition_if", block_id="inner"),
            make_node("ai", "ai_chat"),
            make_node("ce", "condition_end", block_id="inner"),
            make_node("le", "loop_end", block_id="outer"),
        ]
        nodes[2]["parent_block_id"] = "outer"
        nodes[3]["parent_block_id"] = "inner"
        nodes[4]["parent_block_id"] = "outer"
        assert set(validate_structure(make_workflow(*nodes)).blocks) == {"outer", "inner"}

        nodes[3]["parent_block_id"] = "outer"
        with pytest.raises(StructuralError) as exc:
            validate_structure(make_workflow(*nodes))
        assert exc.value.problems == [
            "Node 'ai' declares parent block 'outer' but sits in block 'inner'"
        ]

    def test_parent_block_id_on_top_level_node(self, make_workflow, make_node):
        nodes = [
            make_node("start", "start"),
            make_node("ls", "loop_start", block_id="L"),
            make_node("le", "loop_end", block_id="L"),
            make_node("out", "output"),
        ]
        nodes[3]["parent_block_id"] = "L"
        with pytest.raises(StructuralError) as exc:
            validate_structure(make_workflow(*nodes))
        assert any("sits in no block" in p for p in exc.value.problems)


class TestTemplatedBounds:
    def test_templated_values_pass_validation(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ls", "loop_start", block_id="l", max_iterations="{{rounds}}"),
            make_node("ps", "parallel_start", block_id="p", concurrency="{{width}}"),
            make_node("pe", "parallel_end", block_id="p"),
            make_node("le", "loop_end", block_id="l"),
        )
        assert validate_structure(workflow).pairs == {1: 4, 2: 3}

    def test_literal_values_are_range_checked(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("loop", "loop", max_iterations=0, body_end="work"),
            make_node("work", "text_concat"),
            make_node("batch", "batch", target_nodes=["tail"], concurrency=12),
            make_node("tail", "text_concat"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        problems = exc.value.problems
        assert any("max_iterations must be between 1 and 50, got 0" in p for p in problems)
        assert any("concurrency must be between 1 and 10, got 12" in p for p in problems)

    def test_non_numeric_literal_is_a_type_error(self, make_workflow, make_node):
        workflow = make_workflow(
            make_node("start", "start"),
            make_node("ls", "loop_start", block_id="l", max_iterations="many"),
            make_node("le", "loop_end", block_id="l"),
        )
        with pytest.raises(StructuralError) as exc:
            validate_structure(workflow)
        assert any("max_iterations" in p for p in exc.value.problems)
