"""Tests for the content and condition node handlers."""

from __future__ import annotations

import asyncio

import pytest

from storyflow.core.ai import AbortSignal
from storyflow.core.errors import ExecutionCancelled, NodeExecutionError
from storyflow.core.handlers import (
    NodeContext,
    SignalKind,
    handle_ai_chat,
    handle_condition,
    handle_condition_if,
    handle_output,
    handle_start,
    handle_text_concat,
    handle_text_extract,
    handle_var_update,
    json_path_value,
    strip_markdown,
)
from storyflow.core.injection import Setting, SettingsLibrary
from storyflow.core.variables import VariableStore
from storyflow.core.workflow_schema import Node


def _ctx(node_type: str, config: dict, store: VariableStore | None = None, **kwargs) -> NodeContext:
    store = store or VariableStore()
    node = Node(id="n1", type=node_type, config=config)
    return NodeContext(node=node, store=store, resolved_config=store.resolve_config(config), **kwargs)


def _run(handler, ctx):
    return asyncio.run(handler(ctx))


class TestMarkdown:
    def test_strip_inline_formatting(self):
        text = "# Title\n**bold** and *it* with [a link](http://x) and `code`"
        assert strip_markdown(text) == "Title\nbold and it with a link and code"

    def test_strip_lists_and_quotes(self):
        text = "> quoted\n- one\n2. two"
        assert strip_markdown(text) == "quoted\none\ntwo"

    def test_code_fence_keeps_content(self):
        assert strip_markdown("```python\nprint(1)\n```") == "print(1)"


class TestJsonPath:
    def test_nested_path(self):
        data = {"chapters": [{"title": "Dawn"}, {"title": "Dusk"}]}
        assert json_path_value(data, "chapters[1].title") == "Dusk"
        assert json_path_value(data, "chapters.0.title") == "Dawn"

    def test_missing_path(self):
        data = {"chapters": []}
        assert json_path_value(data, "chapters[3].title") is None
        assert json_path_value(data, "author") is None


class TestStartAndOutput:
    def test_start_sets_input_and_custom_variables(self):
        store = VariableStore()
        ctx = _ctx(
            "start",
            {"custom_variables": [{"name": "premise", "default_value": "Story of {{input}}"}]},
            store=store,
            run_input="a lighthouse",
        )
        result = _run(handle_start, ctx)
        assert result.output == "a lighthouse"
        assert store.get("input") == "a lighthouse"
        assert store.get("premise") == "Story of a lighthouse"

    def test_start_falls_back_to_default_value(self):
        store = VariableStore()
        result = _run(handle_start, _ctx("start", {"default_value": "fallback"}, store=store))
        assert result.output == "fallback"

    def test_output_markdown_to_text(self):
        store = VariableStore()
        store.record_output("prev", "**Hello**")
        result = _run(handle_output, _ctx("output", {"format": "text"}, store=store))
        assert result.output == "Hello"
        assert result.is_final_output

    def test_output_from_variable(self):
        store = VariableStore({"draft": "# Draft"})
        result = _run(handle_output, _ctx("output", {"input_variable": "draft"}, store=store))
        assert result.output == "# Draft"


class TestTextExtract:
    def test_regex_groups(self):
        store = VariableStore()
        store.last_output = "Title: Dawn\nTitle: Dusk"
        result = _run(handle_text_extract, _ctx("text_extract", {"regex_pattern": r"Title: (\w+)"}, store))
        assert result.output == "Dawn\nDusk"

    def test_regex_without_groups(self):
        store = VariableStore({"text": "a1 b22 c333"})
        config = {"input_variable": "text", "regex_pattern": r"\d+"}
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == "1\n22\n333"

    def test_invalid_regex_fails(self):
        with pytest.raises(NodeExecutionError):
            _run(handle_text_extract, _ctx("text_extract", {"regex_pattern": "("}))

    def test_start_end(self):
        store = VariableStore({"text": "intro <body> middle </body> outro"})
        config = {
            "input_variable": "text",
            "extract_mode": "start_end",
            "start_marker": "<body>",
            "end_marker": "</body>",
        }
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == "middle"

    def test_start_end_without_end_marker_runs_to_end(self):
        store = VariableStore({"text": "intro ### rest of text"})
        config = {
            "input_variable": "text",
            "extract_mode": "start_end",
            "start_marker": "###",
            "end_marker": "@@@",
        }
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == "rest of text"

    def test_json_path(self):
        store = VariableStore({"text": '{"a": {"b": [1, 2], "c": "deep"}}'})
        config = {"input_variable": "text", "extract_mode": "json_path", "json_path": "a.b"}
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == "[1, 2]"
        config["json_path"] = "a.c"
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == "deep"

    def test_json_path_invalid_json(self):
        store = VariableStore({"text": "not json"})
        config = {"input_variable": "text", "extract_mode": "json_path", "json_path": "a"}
        with pytest.raises(NodeExecutionError):
            _run(handle_text_extract, _ctx("text_extract", config, store))

    def test_manual_input(self):
        store = VariableStore({"name": "Ada"})
        config = {
            "input_mode": "manual",
            "input_variable": "Hello **{{name}}**",
            "extract_mode": "md_to_text",
        }
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == "Hello Ada"

    def test_strict_miss_fails(self):
        store = VariableStore({"text": "nothing"})
        config = {"input_variable": "text", "regex_pattern": r"\d+", "strict": True}
        with pytest.raises(NodeExecutionError):
            _run(handle_text_extract, _ctx("text_extract", config, store))

    def test_non_strict_miss_is_empty(self):
        store = VariableStore({"text": "nothing"})
        config = {"input_variable": "text", "regex_pattern": r"\d+"}
        assert _run(handle_text_extract, _ctx("text_extract", config, store)).output == ""


# Every form the editor writes into a reference field
REFERENCE_FORMS = ["{{@draft > Draft}}", "{{@draft}}", "@draft > Draft", "@draft", "draft"]


def _store_with_draft() -> VariableStore:
    store = VariableStore({"label": "A=9"})
    store.record_output("draft", "A=1")
    store.last_output = "unrelated"
    return store


class TestReferenceForms:
    @pytest.mark.parametrize("reference", REFERENCE_FORMS)
    def test_text_extract(self, reference):
        config = {"input_variable": reference, "regex_pattern": r"A=(\d)"}
        result = _run(handle_text_extract, _ctx("text_extract", config, _store_with_draft()))
        assert result.output == "1"
        assert result.input == "A=1"

    @pytest.mark.parametrize("reference", REFERENCE_FORMS)
    def test_output(self, reference):
        config = {"input_variable": reference}
        result = _run(handle_output, _ctx("output", config, _store_with_draft()))
        assert result.output == "A=1"

    @pytest.mark.parametrize("reference", REFERENCE_FORMS)
    def test_condition_if(self, reference):
        config = {"input_variable": reference, "condition_type": "regex", "regex_pattern": "^A=1$"}
        result = _run(handle_condition_if, _ctx("condition_if", config, _store_with_draft()))
        assert result.signal.branch is True
        assert result.input == "A=1"

    def test_legacy_condition_variable_alias(self):
        config = {"condition_variable": "{{@draft > Draft}}", "keywords": ["A=1"]}
        result = _run(handle_condition, _ctx("condition", config, _store_with_draft()))
        assert result.output == "true"

    @pytest.mark.parametrize("reference", ["{{label}}", "label"])
    def test_variable_forms(self, reference):
        config = {"sources": [{"mode": "variable", "variable": reference}]}
        result = _run(handle_text_concat, _ctx("text_concat", config, _store_with_draft()))
        assert result.output == "A=9"

    def test_reference_fields_survive_config_resolution(self):
        config = {
            "input_variable": "{{@draft > Draft}}",
            "regex_pattern": "{{label}}",
            "condition": {"input_variable": "@draft"},
        }
        resolved = _store_with_draft().resolve_config(config)
        assert resolved["input_variable"] == "{{@draft > Draft}}"
        assert resolved["condition"]["input_variable"] == "@draft"
        assert resolved["regex_pattern"] == "A=9"


class TestConcatAndVarUpdate:
    def test_concat_sources(self):
        store = VariableStore({"title": "Dawn"})
        store.record_output("draft", "It began.")
        config = {
            "separator": "\n\n",
            "sources": [
                {"mode": "variable", "variable": "title"},
                {"mode": "previous"},
                {"type": "custom", "custom": "The end"},
            ],
        }
        result = _run(handle_text_concat, _ctx("text_concat", config, store))
        assert result.output == "Dawn\n\nIt began.\n\nThe end"

    def test_var_update_template(self):
        store = VariableStore({"summary": "", "input": "x"})
        config = {"variable_name": "summary", "value_template": "Summary of {{input}}"}
        result = _run(handle_var_update, _ctx("var_update", config, store))
        assert result.output == "Summary of x"
        assert store.get("summary") == "Summary of x"

    def test_var_update_from_input(self):
        store = VariableStore({"summary": ""})
        store.record_output("ai", "generated")
        config = {"variable_name": "summary", "value_source": "input"}
        _run(handle_var_update, _ctx("var_update", config, store))
        assert store.get("summary") == "generated"

    def test_var_update_undeclared_fails(self):
        config = {"variable_name": "ghost", "value_template": "boo"}
        with pytest.raises(NodeExecutionError) as exc:
            _run(handle_var_update, _ctx("var_update", config))
        assert "not declared" in exc.value.reason


class TestAIChat:
    def test_message_order(self, echo_adapter):
        store = VariableStore({"topic": "the sea"})
        store.add_history("n1", "user", "old question")
        store.add_history("n1", "assistant", "old answer")
        store.add_history("n1", "user", "q")
        store.add_history("n1", "assistant", "a")
        config = {
            "system_prompt": "You are a poet.",
            "user_prompt": "Write about {{topic}}",
            "enable_history": True,
            "history_count": 2,
        }
        result = _run(handle_ai_chat, _ctx("ai_chat", config, store, adapter=echo_adapter))

        assert result.output == "WRITE ABOUT THE SEA"
        messages = echo_adapter.requests[0].messages
        assert [(m.role, m.content) for m in messages] == [
            ("system", "You are a poet."),
            ("user", "q"),
            ("assistant", "a"),
            ("user", "Write about the sea"),
        ]
        assert store.get_history("n1", 2) == [
            {"role": "user", "content": "Write about the sea"},
            {"role": "assistant", "content": "WRITE ABOUT THE SEA"},
        ]

    def test_legacy_prompt_is_system_prompt(self, echo_adapter):
        config = {"prompt": "Be brief.", "user_prompt": "hi"}
        _run(handle_ai_chat, _ctx("ai_chat", config, adapter=echo_adapter))
        assert echo_adapter.requests[0].messages[0].content == "Be brief."

    def test_settings_injection(self, echo_adapter):
        settings = SettingsLibrary(
            settings=[
                Setting(id="s1", name="Mira", category="character", content="A cartographer"),
                Setting(id="s2", name="Unused", category="style", content="Terse"),
            ]
        )
        config = {"system_prompt": "Write.", "user_prompt": "go", "setting_ids": ["s1"]}
        result = _run(
            handle_ai_chat, _ctx("ai_chat", config, adapter=echo_adapter, settings=settings)
        )
        system = echo_adapter.requests[0].messages[0].content
        assert system == "[Characters]\nMira: A cartographer\n\nWrite."
        assert result.resolved_config["setting_names"] == ["Mira"]

    def test_empty_prompts_fail(self, echo_adapter):
        with pytest.raises(NodeExecutionError):
            _run(handle_ai_chat, _ctx("ai_chat", {}, adapter=echo_adapter))

    def test_no_adapter_fails(self):
        with pytest.raises(NodeExecutionError) as exc:
            _run(handle_ai_chat, _ctx("ai_chat", {"user_prompt": "hi"}))
        assert "no AI adapter" in exc.value.reason

    def test_adapter_error_fails_node(self, scripted_adapter, reply):
        adapter = scripted_adapter(lambda r: reply(chunks=["partial"], error="rate limited"))
        with pytest.raises(NodeExecutionError) as exc:
            _run(handle_ai_chat, _ctx("ai_chat", {"user_prompt": "hi"}, adapter=adapter))
        assert "rate limited" in exc.value.reason

    def test_aborted_call_raises_cancelled(self, echo_adapter):
        abort = AbortSignal()
        abort.abort()
        with pytest.raises(ExecutionCancelled):
            _run(
                handle_ai_chat,
                _ctx("ai_chat", {"user_prompt": "hi"}, adapter=echo_adapter, abort=abort),
            )

    def test_history_not_recorded_when_disabled(self, echo_adapter):
        store = VariableStore()
        _run(handle_ai_chat, _ctx("ai_chat", {"user_prompt": "hi"}, store, adapter=echo_adapter))
        assert store.get_history("n1") == []


class TestConditionHandlers:
    def test_condition_if_signal(self):
        store = VariableStore({"input": "a dragon appears"})
        config = {"input_variable": "input", "keywords": ["dragon"]}
        result = _run(handle_condition_if, _ctx("condition_if", config, store))
        assert result.signal.kind == SignalKind.ENTER_BLOCK
        assert result.signal.branch is True
        assert result.output == "true"

    def test_legacy_condition_actions(self):
        store = VariableStore({"input": "nothing here"})
        config = {
            "input_variable": "input",
            "keywords": ["dragon"],
            "true_action": "end",
            "false_action": "jump",
            "false_target": "retry",
        }
        result = _run(handle_condition, _ctx("condition", config, store))
        assert result.signal.kind == SignalKind.JUMP
        assert result.signal.target == "retry"

        store.set("input", "dragon!")
        result = _run(handle_condition, _ctx("condition", config, store))
        assert result.signal.kind == SignalKind.END

    def test_ai_judge_condition(self, scripted_adapter):
        adapter = scripted_adapter(lambda r: "true")
        store = VariableStore()
        store.last_output = "The dragon sleeps."
        config = {"condition_type": "ai_judge", "ai_prompt": "Is the dragon asleep?"}
        result = _run(handle_condition_if, _ctx("condition_if", config, store, adapter=adapter))
        assert result.signal.branch is True
        request = adapter.requests[0]
        assert request.temperature == 0
        assert request.max_tokens == 10
        assert "The dragon sleeps." in request.messages[0].content

    def test_ai_judge_without_prompt_fails(self, echo_adapter):
        with pytest.raises(NodeExecutionError):
            _run(
                handle_condition_if,
                _ctx("condition_if", {"condition_type": "ai_judge"}, adapter=echo_adapter),
            )
