"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from opencode_feishu.errors import ConfigError

# Fixed poll-loop constants; not user-configurable.
POLL_INTERVAL = 1.5
STABLE_POLLS = 2


class FeishuConfig(BaseModel):
    app_id: str
    app_secret: str
    base_url: str = "https://open.feishu.cn"
    request_timeout: float = 10.0

    @field_validator("app_id", "app_secret")
    @classmethod
    def _require_credential(cls, value: str) -> str:
        value = value.strip()
        if not value or _ENV_VAR_PATTERN.fullmatch(value):
            raise ValueError("credential is empty or references an unset environment variable")
        return value


class OpenCodeConfig(BaseModel):
    base_url: str = "http://localhost:4096"
    directory: Optional[str] = None
    model: Optional[str] = None  # "provider/model"
    agent: Optional[str] = None  # e.g. "build", "plan"
    timeout: float = Field(default=120.0, gt=0)
    request_timeout: float = 30.0


class BotConfig(BaseModel):
    thinking_delay: float = Field(default=2.5, ge=0)
    group_policy: Literal["mention", "heuristic"] = "mention"
    bot_names: list[str] = Field(default_factory=lambda: ["opencode", "bot", "助手", "智能体"])
    command_prefix: str = "/"
    ingest_history_on_join: bool = True
    history_max_messages: int = Field(default=50, gt=0)
    timezone: str = "Asia/Shanghai"


class RelayConfig(BaseModel):
    enabled: bool = True
    reconnect_initial: float = Field(default=1.0, gt=0)
    reconnect_max: float = Field(default=30.0, gt=0)
    show_reasoning: bool = True


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    feishu: FeishuConfig
    opencode: OpenCodeConfig = Field(default_factory=OpenCodeConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = os.environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def parse_config(raw_text: str) -> AppConfig:
    """Validate YAML text (after env interpolation) into an AppConfig."""
    try:
        data = yaml.safe_load(_interpolate_env_vars(raw_text)) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return parse_config(config_file.read_text(encoding="utf-8"))
