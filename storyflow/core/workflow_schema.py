"""Workflow schema definitions using Pydantic models.

A workflow is an ordered, flat list of typed nodes. Nested control flow
(loop / parallel / condition blocks) is encoded by pairs of marker nodes that
share a ``block_id``; the Block Resolver turns that flat encoding back into a
jump table before execution.

Node ``config`` is kept as an opaque mapping so editor-only keys survive a
round trip. Handlers parse it into the typed models below on demand; every
typed model allows extra keys.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

# Literal config values are checked against these when a workflow is validated;
# templated values are clamped into them at run time
LOOP_CEILING_MIN = 1
LOOP_CEILING_MAX = 50
CONCURRENCY_MIN = 1
CONCURRENCY_MAX = 10
MAX_HISTORY_COUNT = 20

DEFAULT_LOOP_MAX_COUNT = 10
DEFAULT_TIMEOUT_SECONDS = 300.0


class NodeType(str, Enum):
    """Every node kind the engine knows how to run.

    Legacy single-node control types and their block-structured successors
    share this one enumeration and one handler interface.
    """

    START = "start"
    OUTPUT = "output"
    AI_CHAT = "ai_chat"
    TEXT_EXTRACT = "text_extract"
    TEXT_CONCAT = "text_concat"
    VAR_UPDATE = "var_update"

    # Legacy self-contained control nodes
    CONDITION = "condition"
    LOOP = "loop"
    BATCH = "batch"

    # Block markers
    LOOP_START = "loop_start"
    LOOP_END = "loop_end"
    PARALLEL_START = "parallel_start"
    PARALLEL_END = "parallel_end"
    CONDITION_IF = "condition_if"
    CONDITION_ELSE = "condition_else"
    CONDITION_END = "condition_end"


# Block-start type -> matching block-end type
BLOCK_PAIRS: dict[NodeType, NodeType] = {
    NodeType.LOOP_START: NodeType.LOOP_END,
    NodeType.PARALLEL_START: NodeType.PARALLEL_END,
    NodeType.CONDITION_IF: NodeType.CONDITION_END,
}
BLOCK_END_TYPES = frozenset(BLOCK_PAIRS.values())
BLOCK_MARKER_TYPES = frozenset(BLOCK_PAIRS) | BLOCK_END_TYPES | {NodeType.CONDITION_ELSE}
CONTROL_TYPES = BLOCK_MARKER_TYPES | {NodeType.CONDITION, NodeType.LOOP, NodeType.BATCH}


def clamp(value: int, low: int, high: int) -> int:
    """Clamp an integer into ``[low, high]``."""
    return max(low, min(high, value))


# ========== Typed node configs ==========


class NodeConfig(BaseModel):
    """Base for typed configs; unknown keys pass through untouched."""

    model_config = ConfigDict(extra="allow")


class CustomVariable(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    default_value: str = ""


class StartConfig(NodeConfig):
    """Declares workflow-scoped variables."""

    default_value: str = ""  # Used when the run is started without input
    custom_variables: list[CustomVariable] = Field(default_factory=list)


class OutputConfig(NodeConfig):
    input_variable: str | None = None  # Defaults to the previous node's output
    format: Literal["text", "markdown"] = "markdown"


class AIChatConfig(NodeConfig):
    provider: str = ""
    model: str = ""
    system_prompt: str | None = None
    prompt: str | None = None  # Older workflows stored the system prompt here
    user_prompt: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    enable_history: bool = False
    history_count: int = Field(0, ge=0, le=MAX_HISTORY_COUNT)
    setting_ids: list[str] = Field(default_factory=list)
    injection_level: Literal["minimal", "balanced", "full"] | None = None


class ConditionSpec(NodeConfig):
    """Condition shared by legacy condition/loop nodes and block forms."""

    input_variable: str | None = Field(
        None, validation_alias=AliasChoices("input_variable", "condition_variable")
    )
    condition_type: Literal["keyword", "length", "regex", "ai_judge"] = "keyword"
    keywords: list[str] = Field(default_factory=list)
    keyword_mode: Literal["any", "all", "none"] = "any"
    length_operator: Literal[">", "<", "=", ">=", "<="] = ">"
    length_value: int = 0
    regex_pattern: str | None = None
    ai_prompt: str | None = None
    ai_provider: str | None = None
    ai_model: str | None = None


class ConditionIfConfig(ConditionSpec):
    pass


class ConditionConfig(ConditionSpec):
    """Legacy single-node condition with explicit jump targets."""

    true_action: Literal["next", "jump", "end"] = "next"
    false_action: Literal["next", "jump", "end"] = "next"
    true_target: str | None = None
    false_target: str | None = None


class LoopStartConfig(ConditionSpec):
    loop_type: Literal["count", "condition"] = "count"
    max_iterations: int = 3


class LoopConfig(NodeConfig):
    """Legacy loop: the body runs from the next node through ``body_end``."""

    condition_type: Literal["count", "condition"] = "count"
    max_iterations: int = 3
    condition: ConditionSpec | None = None
    body_end: str | None = None  # Last node of the body; defaults to the last node
    exit_target: str | None = None  # Where to go when the loop finishes


class SplitConfig(NodeConfig):
    """Input splitting and result joining shared by batch and parallel."""

    input_variable: str | None = None
    split_mode: Literal["line", "separator", "json_array"] = "line"
    separator: str = "\n"
    concurrency: int = 3
    output_mode: Literal["array", "concat"] = "array"
    output_separator: str = "\n"
    output_variable: str | None = None  # Also store the merged result in this variable


class ParallelStartConfig(SplitConfig):
    retry_count: int = Field(0, ge=0, le=3)


class BatchConfig(SplitConfig):
    target_nodes: list[str] = Field(default_factory=list)
    output_mode: Literal["array", "concat"] = "concat"
    output_separator: str = "\n\n---\n\n"


class TextExtractConfig(NodeConfig):
    input_variable: str | None = None
    input_mode: Literal["variable", "manual"] = "variable"
    extract_mode: Literal["regex", "start_end", "json_path", "md_to_text"] = "regex"
    regex_pattern: str | None = None
    start_marker: str | None = None
    end_marker: str | None = None
    json_path: str | None = None
    strict: bool = False  # Treat an extraction miss as a failure


class ConcatSource(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Literal["previous", "variable", "manual"] | None = None
    type: str | None = None  # Older editor field: "variable" | "custom"
    variable: str | None = None
    manual: str | None = None
    custom: str | None = None

    @property
    def effective_mode(self) -> str:
        if self.mode:
            return self.mode
        if self.type == "variable":
            return "variable"
        if self.type == "custom":
            return "manual"
        return "previous"


class TextConcatConfig(NodeConfig):
    sources: list[ConcatSource] = Field(default_factory=list)
    separator: str = "\n"


class VarUpdateConfig(NodeConfig):
    variable_name: str
    value_source: Literal["template", "input"] = "template"
    value_template: str = ""
    input_variable: str | None = None  # Used with value_source="input"


CONFIG_MODELS: dict[NodeType, type[NodeConfig]] = {
    NodeType.START: StartConfig,
    NodeType.OUTPUT: OutputConfig,
    NodeType.AI_CHAT: AIChatConfig,
    NodeType.TEXT_EXTRACT: TextExtractConfig,
    NodeType.TEXT_CONCAT: TextConcatConfig,
    NodeType.VAR_UPDATE: VarUpdateConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.BATCH: BatchConfig,
    NodeType.LOOP_START: LoopStartConfig,
    NodeType.LOOP_END: NodeConfig,
    NodeType.PARALLEL_START: ParallelStartConfig,
    NodeType.PARALLEL_END: NodeConfig,
    NodeType.CONDITION_IF: ConditionIfConfig,
    NodeType.CONDITION_ELSE: NodeConfig,
    NodeType.CONDITION_END: NodeConfig,
}


# ========== Nodes and workflows ==========


class Node(BaseModel):
    """One executable step.

    ``type`` is kept as a plain string so an unknown type is reported as a
    structural error by the resolver instead of failing model construction.
    """

    id: str
    type: str
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    order_index: int | None = None
    block_id: str | None = None
    parent_block_id: str | None = None

    @property
    def kind(self) -> NodeType:
        return NodeType(self.type)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def typed_config(self, config: dict[str, Any] | None = None) -> NodeConfig:
        """Parse ``config`` (or the node's own config) into its typed model."""
        model = CONFIG_MODELS[self.kind]
        return model.model_validate(self.config if config is None else config)


class Workflow(BaseModel):
    """Complete workflow definition."""

    id: str
    name: str = ""
    description: str | None = None
    nodes: list[Node]
    loop_max_count: int = DEFAULT_LOOP_MAX_COUNT  # Ceiling for every loop
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @model_validator(mode="after")
    def assign_missing_order(self) -> "Workflow":
        """Nodes without ``order_index`` take their list position."""
        for position, node in enumerate(self.nodes):
            if node.order_index is None:
                node.order_index = position
        return self

    def ordered_nodes(self) -> list[Node]:
        return sorted(self.nodes, key=lambda n: n.order_index)

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)
