"""Tests for workflow and node config models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from storyflow.core.workflow_schema import (
    AIChatConfig,
    BatchConfig,
    ConcatSource,
    ConditionSpec,
    Node,
    NodeType,
    TextExtractConfig,
    Workflow,
)


class TestWorkflow:
    def test_missing_order_index_uses_position(self):
        workflow = Workflow(
            id="wf",
            nodes=[Node(id="a", type="start"), Node(id="b", type="output")],
        )
        assert [n.order_index for n in workflow.nodes] == [0, 1]

    def test_ordered_nodes_sorts_by_order_index(self):
        workflow = Workflow(
            id="wf",
            nodes=[
                Node(id="out", type="output", order_index=5),
                Node(id="start", type="start", order_index=0),
            ],
        )
        assert [n.id for n in workflow.ordered_nodes()] == ["start", "out"]
        assert workflow.get_node("out").order_index == 5
        assert workflow.get_node("missing") is None

    def test_defaults(self):
        workflow = Workflow(id="wf", nodes=[])
        assert workflow.loop_max_count == 10
        assert workflow.timeout_seconds == 300


class TestNode:
    def test_kind_and_display_name(self):
        node = Node(id="n1", type="ai_chat")
        assert node.kind is NodeType.AI_CHAT
        assert node.display_name == "n1"
        assert Node(id="n1", type="ai_chat", name="Draft").display_name == "Draft"

    def test_unknown_type_is_accepted_until_used(self):
        node = Node(id="n1", type="teleport")
        with pytest.raises(ValueError):
            node.kind

    def test_typed_config_keeps_unknown_keys(self):
        node = Node(id="n1", type="ai_chat", config={"user_prompt": "hi", "ui_color": "red"})
        config = node.typed_config()
        assert isinstance(config, AIChatConfig)
        assert config.user_prompt == "hi"
        assert config.model_extra == {"ui_color": "red"}

    def test_typed_config_from_override(self):
        node = Node(id="n1", type="text_extract", config={"regex_pattern": "{{p}}"})
        config = node.typed_config({"regex_pattern": "abc"})
        assert isinstance(config, TextExtractConfig)
        assert config.regex_pattern == "abc"


class TestConfigs:
    def test_history_count_bounds(self):
        with pytest.raises(ValidationError):
            AIChatConfig(history_count=21)

    def test_condition_variable_alias(self):
        spec = ConditionSpec.model_validate({"condition_variable": "@draft"})
        assert spec.input_variable == "@draft"

    def test_batch_defaults(self):
        config = BatchConfig()
        assert config.output_mode == "concat"
        assert config.concurrency == 3
        assert config.target_nodes == []

    @pytest.mark.parametrize(
        "source,expected",
        [
            ({"mode": "manual"}, "manual"),
            ({"type": "variable", "variable": "x"}, "variable"),
            ({"type": "custom", "custom": "text"}, "manual"),
            ({}, "previous"),
        ],
    )
    def test_concat_source_mode(self, source, expected):
        assert ConcatSource.model_validate(source).effective_mode == expected
