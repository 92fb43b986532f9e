"""Condition evaluation shared by condition blocks, loop blocks and legacy nodes."""

import logging
import re
from collections.abc import Awaitable, Callable

from storyflow.core.workflow_schema import ConditionSpec

logger = logging.getLogger(__name__)

# Async callable taking a full judgement prompt and returning the model's reply
Judge = Callable[[str, ConditionSpec], Awaitable[str]]


class ConditionConfigError(ValueError):
    """Condition cannot be evaluated with the given configuration."""

    pass


def keyword_match(text: str, keywords: list[str], mode: str) -> bool:
    """Case-sensitive substring match. An empty keyword list always matches."""
    keywords = [k for k in keywords if k]
    if not keywords:
        return True
    if mode == "all":
        return all(k in text for k in keywords)
    if mode == "none":
        return not any(k in text for k in keywords)
    return any(k in text for k in keywords)


def length_match(text: str, operator: str, value: int) -> bool:
    length = len(text)
    if operator == ">":
        return length > value
    if operator == "<":
        return length < value
    if operator == "=":
        return length == value
    if operator == ">=":
        return length >= value
    if operator == "<=":
        return length <= value
    return False


def regex_match(text: str, pattern: str | None) -> bool:
    """Search ``text`` for ``pattern``; a missing or invalid pattern is false."""
    if not pattern:
        return False
    try:
        return re.search(pattern, text) is not None
    except re.error as e:
        logger.warning(f"Invalid condition regex {pattern!r}: {e}")
        return False


def build_judge_prompt(spec: ConditionSpec, text: str) -> str:
    return (
        f"{spec.ai_prompt}\n\n"
        f"Judge the following content against the requirement above. "
        f"Reply with only true or false.\n\n"
        f"{text}"
    )


def parse_judgement(response: str) -> bool:
    """True only when the reply says true and never says false."""
    lowered = response.strip().lower()
    return "true" in lowered and "false" not in lowered


async def evaluate_condition(spec: ConditionSpec, text: str, judge: Judge | None = None) -> bool:
    """Evaluate ``spec`` against already-resolved input ``text``.

    Raises:
        ConditionConfigError: ai_judge without a prompt or without a judge.
    """
    if spec.condition_type == "keyword":
        return keyword_match(text, spec.keywords, spec.keyword_mode)
    if spec.condition_type == "length":
        return length_match(text, spec.length_operator, spec.length_value)
    if spec.condition_type == "regex":
        return regex_match(text, spec.regex_pattern)
    if spec.condition_type == "ai_judge":
        if not spec.ai_prompt:
            raise ConditionConfigError("ai_judge condition requires ai_prompt")
        if judge is None:
            raise ConditionConfigError("ai_judge condition requires an AI adapter")
        response = await judge(build_judge_prompt(spec, text), spec)
        result = parse_judgement(response)
        logger.debug(f"AI judgement {response.strip()!r} -> {result}")
        return result
    raise ConditionConfigError(f"Unknown condition type: {spec.condition_type}")
