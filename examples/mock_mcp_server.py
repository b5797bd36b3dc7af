"""Stdio MCP server with two demo tools, for local runs and subprocess tests.

Register it in mcp.json as::

    {"mcpServers": {"demo": {"command": "python", "args": ["examples/mock_mcp_server.py"]}}}
"""

from __future__ import annotations

import json
import sys
from typing import Any

TOOLS_PAGE_1 = [
    {
        "name": "add",
        "description": "Adds two numbers",
        "inputSchema": {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "properties": {
                "a": {"type": "number"},
                "b": {"type": "number"},
            },
            "required": ["a", "b"],
            "additionalProperties": False,
        },
    }
]
TOOLS_PAGE_2 = [
    {
        "name": "echo",
        "description": "Returns the given text",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    }
]


def handle(method: str, params: dict[str, Any]) -> dict[str, Any]:
    if method == "initialize":
        return {
            "protocolVersion": params.get("protocolVersion", "2024-11-05"),
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "mock-mcp", "version": "0.1.0"},
        }
    if method == "tools/list":
        if params.get("cursor") == "page-2":
            return {"tools": TOOLS_PAGE_2}
        return {"tools": TOOLS_PAGE_1, "nextCursor": "page-2"}
    if method == "tools/call":
        name = params.get("name")
        args = params.get("arguments") or {}
        if name == "add":
            total = float(args.get("a", 0)) + float(args.get("b", 0))
            return {"content": [{"type": "text", "text": str(total)}], "structuredContent": {"sum": total}, "isError": False}
        if name == "echo":
            return {"content": [{"type": "text", "text": str(args.get("text", ""))}], "isError": False}
        raise LookupError(f"unknown tool: {name}")
    raise NotImplementedError(method)


def main() -> None:
    print("mock-mcp ready", file=sys.stderr, flush=True)
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        if "id" not in msg:
            continue
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg["id"]}
        try:
            reply["result"] = handle(str(msg.get("method")), msg.get("params") or {})
        except LookupError as exc:
            reply["error"] = {"code": -32602, "message": str(exc)}
        except NotImplementedError:
            reply["error"] = {"code": -32601, "message": "method not found"}
        sys.stdout.write(json.dumps(reply) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":
    main()
