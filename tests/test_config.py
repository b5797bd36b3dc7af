import json

import pytest
from pydantic import ValidationError

from vertexkoppler.config import (
    AgentConfig,
    load_config,
    load_tool_servers,
    missing_fields,
    state_dir,
)

_ENV_VARS = (
    "VERTEX_AI_PROJECT",
    "VERTEX_AI_LOCATION",
    "VERTEX_AI_MODEL",
    "PROXY_PORT",
    "DEBUG_MODE",
    "VERTEX_AI_ACCESS_TOKEN",
    "VERTEX_AI_BASE_URL",
    "PROMPTS_BASE_PATH",
    "SYSTEM_PROMPT_PATH",
    "VERTEXKOPPLER_LOG_LEVEL",
    "VERTEXKOPPLER_LOG_JSON",
    "VERTEXKOPPLER_CONFIG",
    "VERTEXKOPPLER_MCP_CONFIG",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("VERTEXKOPPLER_HOME", str(tmp_path / "home"))


def test_env_only_configuration(monkeypatch) -> None:
    monkeypatch.setenv("VERTEX_AI_PROJECT", "proj")
    monkeypatch.setenv("VERTEX_AI_LOCATION", "us-central1")
    monkeypatch.setenv("VERTEX_AI_MODEL", "gemini-2.5-pro")
    monkeypatch.setenv("DEBUG_MODE", "true")

    cfg = load_config()

    assert (cfg.project, cfg.location, cfg.model) == ("proj", "us-central1", "gemini-2.5-pro")
    assert cfg.port == 11434
    assert cfg.debug_mode is True
    assert cfg.prompts_enabled is False


def test_env_overrides_yaml_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "project: file-proj\nlocation: europe-west4\nmodel: gemini-flash\nport: 9000\n"
        "max_tool_rounds: 3\nlogging:\n  level: DEBUG\n  json: true\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PROXY_PORT", "9100")

    cfg = load_config(str(path))

    assert cfg.project == "file-proj"
    assert cfg.port == 9100
    assert cfg.max_tool_rounds == 3
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json_logs is True


def test_missing_required_fields_are_reported() -> None:
    with pytest.raises(ValidationError) as exc_info:
        load_config()

    assert missing_fields(exc_info.value) == ["location", "model", "project"]


@pytest.mark.parametrize("port", ["0", "70000"])
def test_port_out_of_range_is_rejected(monkeypatch, port: str) -> None:
    with pytest.raises(ValidationError):
        AgentConfig.model_validate({"project": "p", "location": "l", "model": "m", "port": int(port)})


def test_non_numeric_port_env_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("PROXY_PORT", "abc")

    with pytest.raises(ValueError, match="Invalid PROXY_PORT"):
        load_config()


def test_yaml_root_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Config root must be object"):
        load_config(str(path))


def test_config_is_frozen() -> None:
    cfg = AgentConfig.model_validate({"project": "p", "location": "l", "model": "m"})

    with pytest.raises(ValidationError):
        cfg.port = 1234  # type: ignore[misc]


def test_to_env_round_trips_through_load_config(monkeypatch) -> None:
    cfg = AgentConfig.model_validate(
        {
            "project": "p",
            "location": "global",
            "model": "m",
            "port": 12000,
            "debug_mode": True,
            "access_token": "tok",
            "logging": {"level": "DEBUG", "json": True},
        }
    )
    for key, value in cfg.to_env().items():
        monkeypatch.setenv(key, value)

    assert load_config() == cfg


def test_state_dir_honours_override(tmp_path) -> None:
    assert state_dir() == tmp_path / "home"


def test_tool_servers_missing_file_is_empty() -> None:
    assert load_tool_servers() == {}


def test_tool_servers_document(tmp_path) -> None:
    path = tmp_path / "mcp.json"
    path.write_text(
        json.dumps(
            {
                "mcpServers": {
                    "fs": {"command": "npx", "args": ["-y", "server-filesystem", "/tmp"]},
                    "bare": {"command": "tool-server", "args": None},
                }
            }
        ),
        encoding="utf-8",
    )

    servers = load_tool_servers(path)

    assert list(servers) == ["fs", "bare"]
    assert servers["fs"].args == ["-y", "server-filesystem", "/tmp"]
    assert servers["bare"].args == []


@pytest.mark.parametrize(
    "content, match",
    [
        ("{not json", "Invalid JSON"),
        (json.dumps({"servers": {}}), "mcpServers"),
        (json.dumps({"mcpServers": {"x": {"command": ""}}}), "Invalid tool server configuration"),
        (json.dumps({"mcpServers": {"x": {"args": ["a"]}}}), "Invalid tool server configuration"),
    ],
)
def test_tool_servers_invalid_documents(tmp_path, content: str, match: str) -> None:
    path = tmp_path / "mcp.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match=match):
        load_tool_servers(path)
