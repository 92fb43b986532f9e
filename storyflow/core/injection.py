"""Settings injection for ai_chat system prompts.

Settings are the story bible (characters, worldview, style, outline). An
ai_chat node lists the settings it wants by id; settings marked
``injection_mode: auto`` are added to every node. Enabled settings are grouped
by category and rendered through a per-category prompt template.

Templates support two placeholders:

- ``{{items}}`` - every setting of the category as ``name: content``
- ``{{#each items}}...{{/each}}`` - the inner text repeated per setting, with
  ``{{name}}`` and ``{{content}}`` substituted
"""

import logging
import math
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES: dict[str, str] = {
    "character": "[Characters]\n{{items}}",
    "worldview": "[Worldview]\n{{items}}",
    "style": "[Writing style]\n{{items}}",
    "outline": "[Story outline]\n{{items}}",
}

# Token budget per injection level
TOKEN_BUDGETS: dict[str, int] = {
    "minimal": 500,
    "balanced": 1500,
    "full": 3000,
}

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

_EACH_RE = re.compile(r"\{\{#each items\}\}(.*?)\{\{/each\}\}", re.DOTALL)
_CJK_RE = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf]")


class Setting(BaseModel):
    id: str
    name: str
    category: str
    content: str = ""
    enabled: bool = True
    injection_mode: Literal["manual", "auto"] = "manual"
    priority: Literal["high", "medium", "low"] = "medium"
    summary: str | None = None  # Used instead of content when over budget


class SettingPrompt(BaseModel):
    category: str
    prompt_template: str
    enabled: bool = True


class SettingsLibrary(BaseModel):
    """Lookup of settings and prompt templates handed to the executor."""

    settings: list[Setting] = Field(default_factory=list)
    prompts: list[SettingPrompt] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: Path) -> "SettingsLibrary":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def names_for(self, setting_ids: list[str]) -> list[str]:
        by_id = {s.id: s.name for s in self.settings}
        return [by_id[i] for i in setting_ids if i in by_id]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: CJK characters * 1.5 + other words * 1.3."""
    cjk = len(_CJK_RE.findall(text))
    words = len(_CJK_RE.sub(" ", text).split())
    return math.ceil(cjk * 1.5 + words * 1.3)


def collect_candidates(settings: list[Setting], setting_ids: list[str]) -> list[Setting]:
    """Enabled settings that are auto-injected or explicitly selected."""
    selected = set(setting_ids)
    return [
        s for s in settings if s.enabled and (s.injection_mode == "auto" or s.id in selected)
    ]


def apply_token_budget(candidates: list[Setting], budget: int) -> list[Setting]:
    """Keep settings by priority until the budget is spent; fall back to summaries."""
    kept: list[Setting] = []
    used = 0
    for setting in sorted(candidates, key=lambda s: _PRIORITY_ORDER[s.priority]):
        tokens = estimate_tokens(setting.content)
        if used + tokens <= budget:
            kept.append(setting)
            used += tokens
        elif setting.summary:
            summary_tokens = estimate_tokens(setting.summary)
            if used + summary_tokens <= budget:
                kept.append(setting.model_copy(update={"content": setting.summary}))
                used += summary_tokens
    return kept


def render_category(template: str, settings: list[Setting]) -> str:
    match = _EACH_RE.search(template)
    if match:
        item_template = match.group(1)
        rendered = "".join(
            item_template.replace("{{name}}", s.name).replace("{{content}}", s.content)
            for s in settings
        )
        return template[: match.start()] + rendered + template[match.end() :]
    items = "\n\n".join(f"{s.name}: {s.content}" for s in settings)
    return template.replace("{{items}}", items)


def build_settings_injection(
    library: SettingsLibrary,
    setting_ids: list[str],
    injection_level: str | None = None,
) -> str:
    """Render the injection text for one ai_chat node ("" when nothing applies)."""
    candidates = collect_candidates(library.settings, setting_ids)
    if not candidates:
        return ""
    if injection_level:
        candidates = apply_token_budget(candidates, TOKEN_BUDGETS[injection_level])

    by_category: dict[str, list[Setting]] = {}
    for setting in candidates:
        by_category.setdefault(setting.category, []).append(setting)

    parts = []
    for category, settings in by_category.items():
        custom = next(
            (p for p in library.prompts if p.category == category and p.enabled), None
        )
        template = custom.prompt_template if custom else DEFAULT_TEMPLATES.get(category)
        if template is None:
            logger.debug(f"No template for setting category '{category}', using items only")
            template = "{{items}}"
        parts.append(render_category(template, settings))

    return "\n\n".join(parts)
