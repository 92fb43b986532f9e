"""Node handlers.

Every handler takes a ``NodeContext`` and returns a ``HandlerResult``: the
node's output text, the configuration it actually ran with, and a
``ControlSignal`` telling the executor where to go next. Handlers write
variables through the context's store and raise ``NodeExecutionError`` on
failure; an AI call that is cancelled or times out raises
``ExecutionCancelled`` / ``ExecutionTimedOut`` instead.

Loop, parallel and batch handling need the executor's frame stack and live in
``storyflow.core.executor``; they return the same result type.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from storyflow.core.ai import (
    AbortSignal,
    AIAdapter,
    AIOutcome,
    AIRequest,
    Message,
    OutcomeKind,
    invoke_streaming,
)
from storyflow.core.conditions import ConditionConfigError, evaluate_condition
from storyflow.core.errors import ExecutionCancelled, ExecutionTimedOut, NodeExecutionError
from storyflow.core.injection import SettingsLibrary, build_settings_injection
from storyflow.core.variables import VariableStore
from storyflow.core.workflow_schema import (
    AIChatConfig,
    ConditionConfig,
    ConditionIfConfig,
    ConditionSpec,
    Node,
    NodeConfig,
    NodeType,
    OutputConfig,
    StartConfig,
    TextConcatConfig,
    TextExtractConfig,
    VarUpdateConfig,
)

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    CONTINUE = "continue"
    JUMP = "jump"
    END = "end"
    ENTER_BLOCK = "enter_block"
    EXIT_BLOCK = "exit_block"


@dataclass
class ControlSignal:
    kind: SignalKind = SignalKind.CONTINUE
    target: str | None = None  # Node id for JUMP
    branch: bool | None = None  # Taken branch for a condition block

    @classmethod
    def next(cls) -> ControlSignal:
        return cls(SignalKind.CONTINUE)

    @classmethod
    def jump(cls, target: str) -> ControlSignal:
        return cls(SignalKind.JUMP, target=target)

    @classmethod
    def end(cls) -> ControlSignal:
        return cls(SignalKind.END)

    @classmethod
    def enter_block(cls, branch: bool | None = None) -> ControlSignal:
        return cls(SignalKind.ENTER_BLOCK, branch=branch)

    @classmethod
    def exit_block(cls) -> ControlSignal:
        return cls(SignalKind.EXIT_BLOCK)


@dataclass
class HandlerResult:
    output: str
    resolved_config: dict[str, Any] = field(default_factory=dict)
    signal: ControlSignal = field(default_factory=ControlSignal.next)
    input: str = ""
    is_final_output: bool = False  # Output nodes produce the final output candidate


@dataclass
class NodeContext:
    """Everything a handler may touch while running one node."""

    node: Node
    store: VariableStore
    resolved_config: dict[str, Any]
    run_input: str = ""
    adapter: AIAdapter | None = None
    settings: SettingsLibrary = field(default_factory=SettingsLibrary)
    on_chunk: Callable[[str], None] | None = None
    remaining: Callable[[], float | None] = lambda: None
    abort: AbortSignal | None = None

    def typed(self, config: dict[str, Any] | None = None) -> NodeConfig:
        """Typed view of the resolved config; bad values fail the node."""
        try:
            return self.node.typed_config(self.resolved_config if config is None else config)
        except ValidationError as e:
            raise NodeExecutionError(self.node.id, f"invalid config: {e}") from e

    def fail(self, reason: str) -> NodeExecutionError:
        return NodeExecutionError(self.node.id, reason)


Handler = Callable[[NodeContext], Awaitable[HandlerResult]]


# ========== AI helpers ==========


def raise_for_outcome(node_id: str, outcome: AIOutcome) -> str:
    """Return the text of a successful outcome; raise for anything else."""
    if outcome.kind == OutcomeKind.SUCCESS:
        return outcome.text
    if outcome.kind == OutcomeKind.CANCELLED:
        raise ExecutionCancelled(f"AI call of node '{node_id}' was cancelled")
    if outcome.kind == OutcomeKind.TIMEOUT:
        raise ExecutionTimedOut(f"AI call of node '{node_id}' ran out of time")
    raise NodeExecutionError(node_id, f"AI call failed: {outcome.reason}")


async def _call_ai(ctx: NodeContext, request: AIRequest, stream: bool = True) -> str:
    if ctx.adapter is None:
        raise ctx.fail("no AI adapter is configured")
    outcome = await invoke_streaming(
        ctx.adapter,
        request,
        on_chunk=ctx.on_chunk if stream else None,
        timeout=ctx.remaining(),
        abort=ctx.abort,
    )
    return raise_for_outcome(ctx.node.id, outcome)


def make_judge(ctx: NodeContext) -> Callable[[str, ConditionSpec], Awaitable[str]]:
    async def judge(prompt: str, spec: ConditionSpec) -> str:
        request = AIRequest(
            provider=spec.ai_provider or "",
            model=spec.ai_model or "",
            messages=[Message(role="user", content=prompt)],
            temperature=0,
            max_tokens=10,
        )
        return await _call_ai(ctx, request, stream=False)

    return judge


async def _evaluate(ctx: NodeContext, spec: ConditionSpec) -> tuple[bool, str]:
    text = ctx.store.lookup(spec.input_variable) if spec.input_variable else ctx.store.last_output
    try:
        return await evaluate_condition(spec, text, judge=make_judge(ctx)), text
    except ConditionConfigError as e:
        raise ctx.fail(str(e)) from e


# ========== Markdown ==========

_MD_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"__([^_]+)__"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"_([^_]+)_"), r"\1"),
    (re.compile(r"~~([^~]+)~~"), r"\1"),
    (re.compile(r"^>\s*", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*[-*+]\s+", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"^[-*_]{3,}\s*$", re.MULTILINE), ""),
    (re.compile(r"<[^>]+>"), ""),
    (re.compile(r"\\([\\`*_{}\[\]()#+\-.!])"), r"\1"),
    (re.compile(r"\n{3,}"), "\n\n"),
]
_CODE_FENCE = re.compile(r"```[^\n]*\n?(.*?)\n?```", re.DOTALL)


def strip_markdown(markdown: str) -> str:
    """Remove markdown formatting, keeping the text content."""
    text = _CODE_FENCE.sub(lambda m: m.group(1), markdown)
    for pattern, replacement in _MD_RULES:
        text = pattern.sub(replacement, text)
    return text


# ========== JSON paths ==========

_PATH_SPLIT = re.compile(r"[.\[\]]")


def json_path_value(data: Any, path: str) -> Any:
    """Follow a dotted/bracket path such as ``chapters[0].title``; None on a miss."""
    current = data
    for part in (p for p in _PATH_SPLIT.split(path) if p):
        if isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        else:
            return None
    return current


# ========== Content handlers ==========


async def handle_start(ctx: NodeContext) -> HandlerResult:
    # Custom variable defaults may reference {{input}}, so resolve them after it is set
    config: StartConfig = ctx.typed(ctx.node.config)
    value = ctx.run_input or ctx.store.resolve(config.default_value)
    ctx.store.set("input", value)
    ctx.store.initial_input = value

    declared: dict[str, str] = {}
    for variable in config.custom_variables:
        declared[variable.name] = ctx.store.resolve(variable.default_value)
        ctx.store.set(variable.name, declared[variable.name])

    return HandlerResult(
        output=value,
        input=value,
        resolved_config={"input": value, "custom_variables": declared},
    )


async def handle_output(ctx: NodeContext) -> HandlerResult:
    config: OutputConfig = ctx.typed()
    source = (
        ctx.store.lookup(config.input_variable) if config.input_variable else ctx.store.last_output
    )
    output = strip_markdown(source) if config.format == "text" else source
    return HandlerResult(
        output=output,
        input=source,
        resolved_config={"input_variable": config.input_variable, "format": config.format},
        is_final_output=True,
    )


async def handle_ai_chat(ctx: NodeContext) -> HandlerResult:
    config: AIChatConfig = ctx.typed()
    system_prompt = config.system_prompt if config.system_prompt is not None else config.prompt
    system_prompt = system_prompt or ""

    injection = build_settings_injection(ctx.settings, config.setting_ids, config.injection_level)
    if injection:
        system_prompt = injection + ("\n\n" + system_prompt if system_prompt else "")

    user_prompt = config.user_prompt
    if not system_prompt and not user_prompt:
        raise ctx.fail("ai_chat needs a system prompt or a user prompt")

    messages: list[Message] = []
    if system_prompt:
        messages.append(Message(role="system", content=system_prompt))
    if config.enable_history and config.history_count > 0:
        for item in ctx.store.get_history(ctx.node.id, config.history_count):
            messages.append(Message(role=item["role"], content=item["content"]))
    if user_prompt:
        messages.append(Message(role="user", content=user_prompt))

    request = AIRequest(
        provider=config.provider,
        model=config.model,
        messages=messages,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        top_p=config.top_p,
    )
    resolved = {
        "provider": config.provider,
        "model": config.model,
        "system_prompt": system_prompt,
        "user_prompt": user_prompt,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "top_p": config.top_p,
        "enable_history": config.enable_history,
        "history_count": config.history_count,
        "setting_names": ctx.settings.names_for(config.setting_ids),
    }

    output = await _call_ai(ctx, request)

    if config.enable_history:
        if user_prompt:
            ctx.store.add_history(ctx.node.id, "user", user_prompt)
        ctx.store.add_history(ctx.node.id, "assistant", output)

    return HandlerResult(output=output, input=user_prompt, resolved_config=resolved)


def _extract(ctx: NodeContext, config: TextExtractConfig, text: str) -> str:
    mode = config.extract_mode
    if mode == "regex":
        if not config.regex_pattern:
            raise ctx.fail("regex extraction requires regex_pattern")
        try:
            pattern = re.compile(config.regex_pattern)
        except re.error as e:
            raise ctx.fail(f"invalid regex {config.regex_pattern!r}: {e}") from e
        matches = []
        for match in pattern.finditer(text):
            if match.groups():
                matches.append("\n".join(g for g in match.groups() if g is not None))
            else:
                matches.append(match.group(0))
        return "\n".join(matches)

    if mode == "start_end":
        if not config.start_marker:
            raise ctx.fail("start_end extraction requires start_marker")
        start = text.find(config.start_marker)
        if start == -1:
            return ""
        start += len(config.start_marker)
        end = text.find(config.end_marker, start) if config.end_marker else -1
        return text[start:] if end == -1 else text[start:end]

    if mode == "json_path":
        if not config.json_path:
            raise ctx.fail("json_path extraction requires json_path")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ctx.fail(f"input is not valid JSON: {e}") from e
        value = json_path_value(data, config.json_path)
        if value is None:
            return ""
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

    return strip_markdown(text)


async def handle_text_extract(ctx: NodeContext) -> HandlerResult:
    config: TextExtractConfig = ctx.typed()
    if config.input_mode == "manual":
        text = ctx.store.resolve(config.input_variable)
    elif config.input_variable:
        text = ctx.store.lookup(config.input_variable)
    else:
        text = ctx.store.last_output

    output = _extract(ctx, config, text).strip()
    if not output and config.strict:
        raise ctx.fail(f"{config.extract_mode} extraction found nothing")

    resolved = {
        "extract_mode": config.extract_mode,
        "regex_pattern": config.regex_pattern,
        "start_marker": config.start_marker,
        "end_marker": config.end_marker,
        "json_path": config.json_path,
    }
    return HandlerResult(output=output, input=text, resolved_config=resolved)


async def handle_text_concat(ctx: NodeContext) -> HandlerResult:
    config: TextConcatConfig = ctx.typed()
    parts = []
    for source in config.sources:
        mode = source.effective_mode
        if mode == "variable":
            parts.append(ctx.store.lookup(source.variable) if source.variable else "")
        elif mode == "manual":
            parts.append(source.manual if source.manual is not None else source.custom or "")
        else:
            parts.append(ctx.store.last_output)
    output = config.separator.join(parts)
    return HandlerResult(
        output=output,
        resolved_config={"parts": parts, "separator": config.separator},
    )


async def handle_var_update(ctx: NodeContext) -> HandlerResult:
    config: VarUpdateConfig = ctx.typed()
    if not ctx.store.has(config.variable_name):
        raise ctx.fail(
            f"variable '{config.variable_name}' is not declared; declare it on the start node"
        )
    if config.value_source == "input":
        value = (
            ctx.store.lookup(config.input_variable)
            if config.input_variable
            else ctx.store.last_output
        )
    else:
        value = config.value_template
    ctx.store.set(config.variable_name, value)
    return HandlerResult(
        output=value,
        resolved_config={"variable_name": config.variable_name, "value": value},
    )


# ========== Condition handlers ==========


async def handle_condition(ctx: NodeContext) -> HandlerResult:
    """Legacy condition: the taken side's action decides the next node."""
    config: ConditionConfig = ctx.typed()
    result, text = await _evaluate(ctx, config)
    action, target = (
        (config.true_action, config.true_target)
        if result
        else (config.false_action, config.false_target)
    )
    if action == "jump" and target:
        signal = ControlSignal.jump(target)
    elif action == "end":
        signal = ControlSignal.end()
    else:
        signal = ControlSignal.next()

    return HandlerResult(
        output="true" if result else "false",
        input=text,
        signal=signal,
        resolved_config={
            "condition_type": config.condition_type,
            "result": result,
            "action": action,
            "target": target,
        },
    )


async def handle_condition_if(ctx: NodeContext) -> HandlerResult:
    config: ConditionIfConfig = ctx.typed()
    result, text = await _evaluate(ctx, config)
    return HandlerResult(
        output="true" if result else "false",
        input=text,
        signal=ControlSignal.enter_block(branch=result),
        resolved_config={"condition_type": config.condition_type, "result": result},
    )


HANDLERS: dict[NodeType, Handler] = {
    NodeType.START: handle_start,
    NodeType.OUTPUT: handle_output,
    NodeType.AI_CHAT: handle_ai_chat,
    NodeType.TEXT_EXTRACT: handle_text_extract,
    NodeType.TEXT_CONCAT: handle_text_concat,
    NodeType.VAR_UPDATE: handle_var_update,
    NodeType.CONDITION: handle_condition,
    NodeType.CONDITION_IF: handle_condition_if,
}
