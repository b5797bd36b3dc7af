"""Stdio MCP client speaking newline-delimited JSON-RPC to one tool server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
from typing import Any

from . import __version__
from .config import ToolServerConfig

LOG = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

# Tool results such as whole files arrive as one line; asyncio defaults to 64 KiB.
DEFAULT_LINE_LIMIT = 16 * 1024 * 1024

_OVERSIZED_HEAD_BYTES = 4096
_RESPONSE_ID_RE = re.compile(rb'"id"\s*:\s*(\d+)')


class MCPError(Exception):
    """Raised for MCP protocol and transport errors."""


class StdioMCPClient:
    """MCP stdio client: one subprocess, one JSON-RPC message per line."""

    def __init__(
        self,
        name: str,
        cfg: ToolServerConfig,
        read_timeout_seconds: float = 60.0,
        line_limit: int = DEFAULT_LINE_LIMIT,
    ) -> None:
        """Initialize stdio transport state."""
        self.name = name
        self.cfg = cfg
        self.read_timeout_seconds = read_timeout_seconds
        self.line_limit = line_limit
        self.server_info: dict[str, Any] = {}
        self._proc: asyncio.subprocess.Process | None = None
        self._write_lock = asyncio.Lock()
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def start(self) -> None:
        """Spawn the tool server, start the reader loops and run the handshake."""
        if self._proc is not None:
            return

        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.cfg.command,
                *self.cfg.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.line_limit,
            )
        except OSError as exc:
            raise MCPError(f"Failed to launch tool server '{self.name}': {exc}") from exc

        self._reader_task = asyncio.create_task(self._reader_loop())
        self._stderr_task = asyncio.create_task(self._stderr_loop())

        result = await self._rpc(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": f"vertexkoppler-{self.name}", "version": __version__},
            },
        )
        self.server_info = result.get("serverInfo") or {}
        await self._notify("notifications/initialized")
        LOG.debug("MCP stdio session initialized server=%s pid=%s info=%s", self.name, self.pid, self.server_info)

    async def close(self) -> None:
        """Stop reader loops and terminate the tool server process."""
        for task in (self._reader_task, self._stderr_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending(MCPError(f"MCP client '{self.name}' closed"))

        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        if proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            LOG.warning("MCP server did not exit after terminate, killing server=%s pid=%s", self.name, proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def _send_line(self, payload: dict[str, Any]) -> None:
        """Write one JSON-RPC message as a single line to stdin."""
        assert self._proc is not None and self._proc.stdin is not None
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n"
        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise MCPError(f"MCP stdio stream closed for '{self.name}'") from exc

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _read_line(self, stdout: asyncio.StreamReader) -> tuple[bytes, bool]:
        """Read one line; returns (data, oversized).

        An oversized line is drained from the stream and only its head is kept.
        """
        try:
            return await stdout.readuntil(b"\n"), False
        except asyncio.IncompleteReadError as exc:
            return exc.partial, False
        except asyncio.LimitOverrunError as exc:
            pending = exc.consumed

        head = b""
        while True:
            chunk = await stdout.read(max(pending, 1))
            if not chunk:
                return head, True
            if len(head) < _OVERSIZED_HEAD_BYTES:
                head += chunk[: _OVERSIZED_HEAD_BYTES - len(head)]
            try:
                await stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError:
                return head, True
            except asyncio.LimitOverrunError as exc:
                pending = exc.consumed
                continue
            return head, True

    def _fail_oversized(self, head: bytes) -> None:
        match = _RESPONSE_ID_RE.search(head)
        future = self._pending.pop(int(match.group(1)), None) if match else None
        if future is None or future.done():
            LOG.warning("MCP dropped oversized message server=%s limit=%s", self.name, self.line_limit)
            return
        LOG.warning("MCP response exceeded line limit server=%s limit=%s", self.name, self.line_limit)
        future.set_exception(MCPError(f"MCP message from '{self.name}' exceeded {self.line_limit} bytes"))

    async def _reader_loop(self) -> None:
        """Route incoming responses to waiting futures."""
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        try:
            while True:
                line, oversized = await self._read_line(stdout)
                if not line:
                    raise MCPError(f"MCP stdio stream ended for '{self.name}'")
                if oversized:
                    self._fail_oversized(line)
                    continue
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    msg = json.loads(text)
                except json.JSONDecodeError:
                    LOG.debug("MCP ignoring non-JSON stdout line server=%s line=%r", self.name, text[:200])
                    continue
                if not isinstance(msg, dict):
                    continue
                if "id" in msg and ("result" in msg or "error" in msg):
                    try:
                        req_id = int(msg["id"])
                    except (TypeError, ValueError):
                        continue
                    future = self._pending.pop(req_id, None)
                    if future and not future.done():
                        future.set_result(msg)
                elif "method" in msg:
                    LOG.debug("MCP notification server=%s method=%s", self.name, msg["method"])
        except asyncio.CancelledError:
            raise
        except MCPError as exc:
            self._fail_pending(exc)
            LOG.warning("MCP reader loop stopped server=%s error=%s", self.name, exc)
        except Exception as exc:
            self._fail_pending(MCPError(str(exc)))
            LOG.exception("MCP reader loop crashed for %s", self.name)

    async def _stderr_loop(self) -> None:
        """Drain tool server stderr into debug logs."""
        assert self._proc is not None and self._proc.stderr is not None
        stderr = self._proc.stderr
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                LOG.debug("MCP stderr line over limit skipped server=%s", self.name)
                continue
            if not line:
                return
            LOG.debug("MCP stderr server=%s: %s", self.name, line.decode("utf-8", errors="replace").rstrip())

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send one JSON-RPC notification."""
        async with self._write_lock:
            await self._send_line({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute one stdio JSON-RPC request."""
        if self._proc is None:
            raise MCPError(f"MCP client '{self.name}' is not started")

        async with self._write_lock:
            self._next_id += 1
            req_id = self._next_id
            future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
            self._pending[req_id] = future
            await self._send_line(
                {
                    "jsonrpc": "2.0",
                    "id": req_id,
                    "method": method,
                    "params": params or {},
                }
            )

        try:
            msg = await asyncio.wait_for(future, timeout=self.read_timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._pending.pop(req_id, None)
            raise MCPError(f"MCP request '{method}' to '{self.name}' timed out") from exc
        if "error" in msg:
            raise MCPError(json.dumps(msg["error"], ensure_ascii=False))
        result = msg.get("result")
        return result if isinstance(result, dict) else {}

    async def tools_list(self, cursor: str | None = None) -> dict[str, Any]:
        """List tools, optionally continuing from a pagination cursor."""
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        return await self._rpc("tools/list", params)

    async def tools_call(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Execute one tool call and return the MCP result payload."""
        return await self._rpc("tools/call", {"name": name, "arguments": arguments})
