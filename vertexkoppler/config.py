"""Configuration models and loaders for vertexkoppler.

This module defines the runtime configuration schema, how values are loaded
from YAML plus environment variable overrides, and the JSON document that
lists tool-server subprocesses.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

STATE_DIR_ENV = "VERTEXKOPPLER_HOME"
DEFAULT_PORT = 11434

_TRUE_VALUES = {"1", "true", "yes", "on"}


def state_dir() -> Path:
    """Return the per-user state directory (config, PID record, log)."""
    override = os.getenv(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".vertexkoppler"


def ensure_state_dir() -> Path:
    """Create the state directory if needed and return it."""
    path = state_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_config_path() -> Path:
    return state_dir() / "config.yaml"


def default_tool_servers_path() -> Path:
    return state_dir() / "mcp.json"


def log_file_path() -> Path:
    return state_dir() / "agent.log"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class AgentConfig(BaseModel):
    """Top-level proxy configuration, immutable for the process lifetime."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    project: str
    location: str
    model: str
    port: int = DEFAULT_PORT
    debug_mode: bool = False

    upstream_base_url: str | None = None
    access_token: str | None = None
    upstream_connect_retries: int = 0
    upstream_retry_interval_ms: int = 1000
    max_tool_rounds: int = 10

    prompts_base_path: str | None = None
    system_prompt_path: str | None = None

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("project", "location", "model")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        """Reject blank required settings."""
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if value < 1 or value > 65535:
            raise ValueError("port must be a number between 1 and 65535")
        return value

    @field_validator("max_tool_rounds")
    @classmethod
    def _positive_rounds(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_tool_rounds must be >= 1")
        return value

    @property
    def prompts_enabled(self) -> bool:
        """Return true when dynamic prompt composition is configured."""
        return bool(self.prompts_base_path and self.system_prompt_path)

    def to_env(self) -> dict[str, str]:
        """Render this config as the environment overrides understood by `load_config`."""
        env = {
            "VERTEX_AI_PROJECT": self.project,
            "VERTEX_AI_LOCATION": self.location,
            "VERTEX_AI_MODEL": self.model,
            "PROXY_PORT": str(self.port),
            "DEBUG_MODE": "true" if self.debug_mode else "false",
            "VERTEXKOPPLER_LOG_LEVEL": self.logging.level,
            "VERTEXKOPPLER_LOG_JSON": "true" if self.logging.json_logs else "false",
        }
        optional = {
            "VERTEX_AI_ACCESS_TOKEN": self.access_token,
            "VERTEX_AI_BASE_URL": self.upstream_base_url,
            "PROMPTS_BASE_PATH": self.prompts_base_path,
            "SYSTEM_PROMPT_PATH": self.system_prompt_path,
        }
        for key, value in optional.items():
            if value:
                env[key] = value
        return env


class ToolServerConfig(BaseModel):
    """One tool-server subprocess definition."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    command: str
    args: list[str] = Field(default_factory=list)

    @field_validator("command")
    @classmethod
    def _command_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("'command' must be a non-empty string")
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit `null` args as an empty list."""
        if value is None:
            return []
        return value


class ToolServersConfig(BaseModel):
    """Mapping of tool-server name to its subprocess definition."""

    model_config = ConfigDict(populate_by_name=True)

    servers: dict[str, ToolServerConfig] = Field(default_factory=dict, alias="mcpServers")


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only setups.
    """
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "project": "VERTEX_AI_PROJECT",
        "location": "VERTEX_AI_LOCATION",
        "model": "VERTEX_AI_MODEL",
        "port": "PROXY_PORT",
        "debug_mode": "DEBUG_MODE",
        "access_token": "VERTEX_AI_ACCESS_TOKEN",
        "upstream_base_url": "VERTEX_AI_BASE_URL",
        "prompts_base_path": "PROMPTS_BASE_PATH",
        "system_prompt_path": "SYSTEM_PROMPT_PATH",
        "logging.level": "VERTEXKOPPLER_LOG_LEVEL",
        "logging.json_logs": "VERTEXKOPPLER_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key == "port":
            try:
                out[key] = int(value)
            except ValueError as exc:
                raise ValueError(f"Invalid PROXY_PORT: {value}. Must be a number between 1 and 65535.") from exc
        elif key == "debug_mode":
            out[key] = value.strip().lower() in _TRUE_VALUES
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.strip().lower() in _TRUE_VALUES
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def resolve_config_path(path: str | None = None) -> Path:
    """Return the config file path that `load_config` would read."""
    return Path(path or os.getenv("VERTEXKOPPLER_CONFIG") or default_config_path()).expanduser()


def load_config(path: str | None = None) -> AgentConfig:
    """Load, merge, and validate proxy configuration."""
    raw = _load_yaml(resolve_config_path(path))
    raw = _override_from_env(raw)
    return AgentConfig.model_validate(raw)


def missing_fields(exc: ValidationError) -> list[str]:
    """List dotted field names reported as missing by a validation error."""
    missing = []
    for err in exc.errors():
        if err.get("type") == "missing":
            missing.append(".".join(str(x) for x in err.get("loc", [])))
    return sorted(set(missing))


def load_tool_servers(path: str | Path | None = None) -> dict[str, ToolServerConfig]:
    """Load the tool-server document; a missing file means no tool servers."""
    final_path = Path(path or os.getenv("VERTEXKOPPLER_MCP_CONFIG") or default_tool_servers_path()).expanduser()
    if not final_path.exists():
        return {}

    try:
        raw = json.loads(final_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in tool server configuration file: {final_path}\n{exc}") from exc

    if not isinstance(raw, dict) or not isinstance(raw.get("mcpServers"), dict):
        raise ValueError(f"Invalid tool server configuration in {final_path}: 'mcpServers' must be an object")

    try:
        return ToolServersConfig.model_validate(raw).servers
    except ValidationError as exc:
        raise ValueError(f"Invalid tool server configuration in {final_path}: {exc}") from exc
