"""Tool-server pool and the aggregated tool handed to the model.

The bridge owns every stdio MCP connection. It is connected once at startup,
read by request handlers, and shut down once when the server stops.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import time
from typing import Any, Callable

from .config import ToolServerConfig
from .mcp_client import StdioMCPClient
from .tool_diagnostics import allowed_directories, build_failure_diagnostics
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

TOOL_CALL_TIMEOUT_SECONDS = 30.0
SLOW_CALL_RATIO = 0.8

_UNSUPPORTED_SCHEMA_KEYS = {"$schema", "additionalProperties"}


class ToolCallError(Exception):
    """Raised when a tool call fails; `diagnostics` is what the model gets to see."""

    def __init__(self, message: str, diagnostics: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics or {"error": message}


class ToolTimeoutError(ToolCallError):
    """Raised when a tool call does not finish within the call timeout."""


ClientFactory = Callable[[str, ToolServerConfig], Any]


def clean_schema(schema: Any) -> Any:
    """Strip JSON-Schema keys the provider rejects, recursively."""
    if isinstance(schema, dict):
        return {key: clean_schema(value) for key, value in schema.items() if key not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [clean_schema(item) for item in schema]
    return schema


def _result_error_text(result: dict[str, Any]) -> str:
    """Collect the text content of an MCP result flagged with `isError`."""
    texts = []
    for item in result.get("content") or []:
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            texts.append(item["text"])
    return "\n".join(texts) or "Tool reported an error"


class AggregatedTool:
    """One callable tool backed by every connected tool server.

    Declarations are listed lazily on first use and cached for the lifetime of
    this object. Name collisions resolve to the first server that declared the
    tool.
    """

    def __init__(self, bridge: ToolBridge, clients: dict[str, Any]) -> None:
        self._bridge = bridge
        self._clients = dict(clients)
        self._declarations: list[dict[str, Any]] | None = None
        self._bindings: dict[str, str] = {}
        self._lock = asyncio.Lock()

    @property
    def server_names(self) -> list[str]:
        return list(self._clients)

    async def _load_server_tools(self, client: Any) -> list[dict[str, Any]]:
        """Load all tools from one server with cursor-based pagination."""
        all_tools: list[dict[str, Any]] = []
        cursor: str | None = None

        while True:
            result = await client.tools_list(cursor=cursor)
            tools = result.get("tools", [])
            if isinstance(tools, list):
                all_tools.extend(tool for tool in tools if isinstance(tool, dict))

            cursor = result.get("nextCursor")
            if not cursor:
                break

        return all_tools

    async def _discover(self) -> list[dict[str, Any]]:
        declarations: list[dict[str, Any]] = []
        bindings: dict[str, str] = {}

        for server_name, client in self._clients.items():
            try:
                tools = await self._load_server_tools(client)
            except Exception as exc:
                LOG.warning("Tool listing failed server=%s error=%s", server_name, exc)
                continue

            names = []
            for tool in tools:
                name = str(tool.get("name", "")).strip()
                if not name:
                    continue
                if name in bindings:
                    LOG.warning(
                        "Duplicate tool name ignored tool=%s server=%s owner=%s",
                        name,
                        server_name,
                        bindings[name],
                    )
                    continue

                declaration: dict[str, Any] = {
                    "name": name,
                    "description": str(tool.get("description", "")).strip(),
                }
                schema = tool.get("inputSchema")
                if isinstance(schema, dict) and schema.get("properties"):
                    declaration["parameters"] = clean_schema(schema)
                declarations.append(declaration)
                bindings[name] = server_name
                names.append(name)

            LOG.info(
                "Tools discovered server=%s count=%s tools=%s",
                server_name,
                len(names),
                ", ".join(sorted(names)) if names else "(none)",
            )

        self._bindings = bindings
        return declarations

    async def function_declarations(self, only: list[str] | None = None) -> list[dict[str, Any]]:
        """Return provider function declarations, optionally restricted to `only`."""
        async with self._lock:
            if self._declarations is None:
                self._declarations = await self._discover()
            declarations = copy.deepcopy(self._declarations)

        if only is not None:
            wanted = set(only)
            missing = wanted.difference(decl["name"] for decl in declarations)
            if missing:
                LOG.warning("Requested tools are not available tools=%s", ", ".join(sorted(missing)))
            declarations = [decl for decl in declarations if decl["name"] in wanted]
        return declarations

    def owner_of(self, tool_name: str) -> str | None:
        return self._bindings.get(tool_name)

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Invoke a declared tool through the bridge's call wrapper."""
        if self._declarations is None:
            await self.function_declarations()
        server_name = self._bindings.get(tool_name)
        if server_name is None:
            message = f"Unknown tool '{tool_name}'"
            raise ToolCallError(message, build_failure_diagnostics(tool_name, arguments, message))
        return await self._bridge.call_tool(server_name, tool_name, arguments)


class ToolBridge:
    """Pool of connected tool servers, keyed by configured server name."""

    def __init__(
        self,
        client_factory: ClientFactory = StdioMCPClient,
        connect_timeout: float = 15.0,
        call_timeout: float = TOOL_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._client_factory = client_factory
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self._clients: dict[str, Any] = {}
        self._configs: dict[str, ToolServerConfig] = {}
        self._aggregated: AggregatedTool | None = None
        self._shut_down = False

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    async def _connect_one(self, name: str, cfg: ToolServerConfig) -> Any | None:
        LOG.debug("Connecting tool server server=%s command=%s args=%s", name, cfg.command, cfg.args)
        client = self._client_factory(name, cfg)
        try:
            await asyncio.wait_for(client.start(), timeout=self.connect_timeout)
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                error = f"no handshake within {self.connect_timeout:.1f}s"
            else:
                error = str(exc) or exc.__class__.__name__
            LOG.error("Failed to connect tool server server=%s command=%s error=%s", name, cfg.command, error)
            with contextlib.suppress(Exception):
                await client.close()
            return None

        if self._shut_down:
            LOG.info("Tool server connected after shutdown, closing server=%s", name)
            with contextlib.suppress(Exception):
                await client.close()
            return None
        return client

    async def connect(self, servers: dict[str, ToolServerConfig]) -> dict[str, Any]:
        """Connect every configured tool server; failures are logged and skipped."""
        if self._shut_down:
            LOG.warning("Tool bridge is shut down, not connecting tool servers")
            return {}

        LOG.info("Connecting tool servers count=%s", len(servers))
        names = list(servers)
        results = await asyncio.gather(*(self._connect_one(name, servers[name]) for name in names))

        connected: dict[str, Any] = {}
        for name, client in zip(names, results):
            if client is None:
                continue
            connected[name] = client
            self._clients[name] = client
            self._configs[name] = servers[name]
            LOG.info("Connected tool server server=%s command=%s", name, servers[name].command)

        self._aggregated = None
        LOG.info(
            "Tool server connection completed total=%s connected=%s failed=%s",
            len(servers),
            len(connected),
            len(servers) - len(connected),
        )
        return connected

    def list(self) -> list[Any]:
        if self._shut_down:
            return []
        return list(self._clients.values())

    def get(self, name: str) -> Any | None:
        if self._shut_down:
            return None
        return self._clients.get(name)

    def count(self) -> int:
        return 0 if self._shut_down else len(self._clients)

    def any(self) -> bool:
        return self.count() > 0

    def aggregated_tool(self) -> AggregatedTool | None:
        """Return the aggregated tool, or None while no tool server is connected."""
        if not self.any():
            return None
        if self._aggregated is None:
            self._aggregated = AggregatedTool(self, self._clients)
        return self._aggregated

    async def call_tool(self, server_name: str, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run one tool call bounded by `call_timeout`, with timing and failure diagnostics."""
        client = self.get(server_name)
        cfg = self._configs.get(server_name)
        allowed = allowed_directories(cfg.args) if cfg else []
        if client is None:
            message = f"Tool server '{server_name}' is not connected"
            raise ToolCallError(message, build_failure_diagnostics(tool_name, arguments, message, allowed))

        LOG.info("Tool call started tool=%s server=%s timeout=%.1fs", tool_name, server_name, self.call_timeout)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Tool call args tool=%s args=%s", tool_name, to_bounded_json(arguments))

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(client.tools_call(tool_name, arguments), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            LOG.warning(
                "Tool call timed out tool=%s server=%s timeout=%.1fs",
                tool_name,
                server_name,
                self.call_timeout,
            )
            message = f"Tool '{tool_name}' timed out after {self.call_timeout:.1f}s"
            raise ToolTimeoutError(message, build_failure_diagnostics(tool_name, arguments, message, allowed)) from exc
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            LOG.warning("Tool call failed tool=%s server=%s error=%s", tool_name, server_name, message)
            raise ToolCallError(message, build_failure_diagnostics(tool_name, arguments, message, allowed)) from exc

        elapsed = time.monotonic() - started
        if isinstance(result, dict) and result.get("isError"):
            message = _result_error_text(result)
            LOG.warning("Tool call returned error tool=%s server=%s error=%s", tool_name, server_name, message)
            raise ToolCallError(message, build_failure_diagnostics(tool_name, arguments, message, allowed))

        if elapsed > self.call_timeout * SLOW_CALL_RATIO:
            LOG.warning(
                "Tool call slow tool=%s server=%s duration_ms=%d timeout=%.1fs",
                tool_name,
                server_name,
                int(elapsed * 1000),
                self.call_timeout,
            )
        LOG.info("Tool call finished tool=%s server=%s duration_ms=%d", tool_name, server_name, int(elapsed * 1000))
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Tool call result tool=%s result=%s", tool_name, to_bounded_json(result))
        return result

    async def shutdown(self) -> None:
        """Close every live client once; safe to call repeatedly."""
        if self._shut_down:
            LOG.debug("Tool bridge already shut down")
            return
        self._shut_down = True

        clients = dict(self._clients)
        self._clients.clear()
        self._aggregated = None
        LOG.info("Shutting down tool servers count=%s", len(clients))

        names = list(clients)
        results = await asyncio.gather(*(clients[name].close() for name in names), return_exceptions=True)
        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                LOG.warning("Error closing tool server server=%s error=%s", name, outcome)
        LOG.info("Tool server shutdown completed")
