"""Configuration loader — reads config.yaml, validates with Pydantic.

Holds the gateway settings (engine kind, auth, CORS) and the agent
defaults every request starts from. Request fields override defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from gateway.schemas import PermissionMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


class AgentDefaults(BaseModel):
    """Engine options used when a request does not set them."""

    cwd: str = "/tmp"
    model: str = "claude-sonnet-4-5"
    max_thinking_tokens: int = 8000
    enable_thinking: bool = True
    permission_mode: PermissionMode = "acceptEdits"
    allowed_tools: list[str] = ["WebSearch", "Bash", "Read", "Write", "Edit", "Glob", "Grep"]
    disallowed_tools: list[str] = []
    max_turns: int = 99999
    max_tokens: int = 4096  # chat_model engine only
    setting_sources: list[str] = ["local"]

    @field_validator("max_turns", "max_tokens")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_tool_lists(self) -> AgentDefaults:
        overlap = set(self.allowed_tools) & set(self.disallowed_tools)
        if overlap:
            raise ValueError(
                f"Tools listed as both allowed and disallowed: {sorted(overlap)}"
            )
        return self


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    engine: Literal["agent_sdk", "chat_model"] = "agent_sdk"
    debug: bool = False
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)

    # Auth & CORS
    api_key: str | None = None
    allowed_origins: list[str] = ["*"]

    def public_view(self) -> dict:
        """Config as JSON with the API key redacted."""
        data = self.model_dump()
        if data["api_key"]:
            data["api_key"] = "***"
        return data


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: GatewayConfig | None = None
_config_path: Path = DEFAULT_CONFIG_PATH


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Read config.yaml from disk, validate, and cache."""
    global _config, _config_path
    _config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

    if not _config_path.exists():
        raise FileNotFoundError(f"Config file not found: {_config_path.resolve()}")

    raw = yaml.safe_load(_config_path.read_text()) or {}
    _config = GatewayConfig(**raw)

    logger.info(
        f"Loaded config: engine={_config.engine}, model={_config.defaults.model}, "
        f"permission_mode={_config.defaults.permission_mode}"
    )
    return _config


def get_config() -> GatewayConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded — call load_config() first")
    return _config


def set_config(config: GatewayConfig) -> None:
    """Install an already-built config (tests, embedding)."""
    global _config
    _config = config


def reload_config() -> GatewayConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {_config_path}")
    return load_config(_config_path)
