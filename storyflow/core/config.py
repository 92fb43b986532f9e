"""Engine configuration loaded from ``.storyflow/config.yaml``."""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from storyflow.core.workflow_schema import (
    DEFAULT_LOOP_MAX_COUNT,
    DEFAULT_TIMEOUT_SECONDS,
    LOOP_CEILING_MAX,
    LOOP_CEILING_MIN,
)

logger = logging.getLogger(__name__)

CONFIG_DIR = ".storyflow"
CONFIG_FILE = "config.yaml"


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class ProviderCommand(BaseModel):
    """How to invoke one AI CLI as a stateless subprocess.

    The prompt goes to stdin when ``uses_stdin`` is set, otherwise it is
    appended as the final argument. ``model_flag`` is inserted at
    ``model_flag_position`` when a request names a model.
    """

    command: list[str]
    uses_stdin: bool = True
    model_flag: str | None = "--model"
    model_flag_position: int = 1

    @field_validator("command")
    @classmethod
    def command_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("command must name an executable")
        return v


# Built-in CLIs; entries in config.yaml override these by name
DEFAULT_PROVIDERS: dict[str, ProviderCommand] = {
    # Claude Code CLI: prompt must be an argument, not stdin
    "claude": ProviderCommand(command=["claude", "-p"], uses_stdin=False),
    # Codex: model flag goes after "exec"
    "codex": ProviderCommand(command=["codex", "exec", "--stdin"], model_flag_position=2),
    "gemini": ProviderCommand(command=["gemini"]),
}


class EngineConfig(BaseModel):
    database: str = f"{CONFIG_DIR}/state.db"
    default_provider: str = "claude"
    loop_max_count: int = Field(DEFAULT_LOOP_MAX_COUNT, ge=LOOP_CEILING_MIN, le=LOOP_CEILING_MAX)
    timeout_seconds: float = Field(DEFAULT_TIMEOUT_SECONDS, gt=0)
    providers: dict[str, ProviderCommand] = Field(default_factory=dict)

    def provider_commands(self) -> dict[str, ProviderCommand]:
        merged = dict(DEFAULT_PROVIDERS)
        merged.update(self.providers)
        return merged

    def database_path(self, base: Path) -> Path:
        path = Path(self.database)
        return path if path.is_absolute() else base / path


DEFAULT_CONFIG_YAML = f"""# storyflow engine configuration

# SQLite database for execution history (relative to the project root)
database: {CONFIG_DIR}/state.db

# Provider used by ai_chat nodes that do not name one
default_provider: claude

# Defaults applied when a workflow file omits them
loop_max_count: {DEFAULT_LOOP_MAX_COUNT}
timeout_seconds: {int(DEFAULT_TIMEOUT_SECONDS)}

# Extra or overriding AI CLIs, for example:
# providers:
#   local:
#     command: ["llm", "-m", "mistral"]
#     uses_stdin: true
#     model_flag: null
providers: {{}}
"""


def load_config(base: Path) -> EngineConfig:
    """Load ``<base>/.storyflow/config.yaml``; defaults when it is missing.

    Raises:
        ConfigError: if the file exists but cannot be parsed or validated.
    """
    config_path = base / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        return EngineConfig()

    try:
        with open(config_path) as f:
            data: Any = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    try:
        config = EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
    logger.debug(f"Loaded engine config from {config_path}")
    return config
