"""Command line entry point: start, stop, status and restart the proxy server."""

from __future__ import annotations

import argparse
import sys

from pydantic import ValidationError

from . import supervisor
from .app import run_server
from .config import AgentConfig, LoggingConfig, load_config, missing_fields, resolve_config_path
from .logging_utils import setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

RUN_SERVER_ACTION = "__run-server"


class ConfigurationError(Exception):
    """Raised when the proxy configuration cannot be loaded."""


def _load(config_path: str | None) -> AgentConfig:
    try:
        return load_config(config_path)
    except ValidationError as exc:
        missing = missing_fields(exc)
        if missing:
            raise ConfigurationError(
                "Configuration incomplete. Missing required fields: "
                + ", ".join(missing)
                + ". Provide --config <file> or set env vars "
                + "(VERTEX_AI_PROJECT, VERTEX_AI_LOCATION, VERTEX_AI_MODEL)."
            ) from exc
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Failed to load configuration: {exc}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vertexkoppler",
        description="Local OpenAI-compatible proxy for Vertex AI models",
    )
    parser.add_argument("--config", default=None, help="Path to config YAML")
    sub = parser.add_subparsers(dest="action", metavar="{start,stop,status,restart}")
    sub.required = True
    sub.add_parser("start", help="Start the proxy server in the background")
    sub.add_parser("stop", help="Stop the background proxy server")
    sub.add_parser("status", help="Show configuration and server status")
    sub.add_parser("restart", help="Restart the background proxy server")
    sub.add_parser(RUN_SERVER_ACTION)
    return parser


def _print_status(config: AgentConfig, config_path: str | None) -> None:
    current = supervisor.status()
    print(f"Config file: {resolve_config_path(config_path)}")
    print(f"Project:     {config.project}")
    print(f"Location:    {config.location}")
    print(f"Model:       {config.model}")
    print(f"Port:        {config.port}")
    print(f"Debug mode:  {'on' if config.debug_mode else 'off'}")
    print(f"Status:      {current.message}")


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, dispatch the action and return the process exit code."""
    args = build_parser().parse_args(argv)

    if args.action == "stop":
        setup_logging(LoggingConfig(level="WARNING"))
        result = supervisor.stop()
        print(result.message)
        return EXIT_OK if result.success else EXIT_FAILURE

    try:
        config = _load(args.config)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.action == RUN_SERVER_ACTION:
        run_server(config)
        return EXIT_OK

    setup_logging(config.logging, debug=config.debug_mode)
    config_path = resolve_config_path(args.config) if args.config else None

    if args.action == "status":
        _print_status(config, args.config)
        return EXIT_OK

    if args.action == "start":
        result = supervisor.spawn(config, config_path=config_path)
    else:
        result = supervisor.restart(config, config_path=config_path)

    stream = sys.stdout if result.success else sys.stderr
    print(result.message, file=stream)
    return EXIT_OK if result.success else EXIT_FAILURE
