"""FastAPI application exposing the OpenAI-compatible proxy endpoints."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import socket
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import AgentConfig, ToolServerConfig, load_tool_servers, log_file_path
from .errors import http_status_for_type, to_error_envelope, to_stream_error_event
from .logging_utils import setup_logging
from .orchestrator import AgentOrchestrator
from .prompts import PromptError
from .stream_chunks import SSE_DONE, sse_data
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": f"Invalid request format. {message}"}, status_code=400)


def _error_source(exc: Exception) -> Any:
    """Map local request errors onto the provider error shape the translator understands."""
    if isinstance(exc, PromptError):
        return {"error": {"status": "INVALID_ARGUMENT", "message": str(exc)}}
    return exc


def validate_chat_payload(payload: Any) -> str | None:
    """Return a description of what is wrong with a chat request body, or None."""
    if not isinstance(payload, dict):
        return "Body must be a JSON object"
    if "messages" not in payload:
        return "Missing required field: messages"
    messages = payload["messages"]
    if not isinstance(messages, list):
        return "Field 'messages' must be an array"
    if not messages:
        return "Messages array cannot be empty"
    for index, message in enumerate(messages):
        if not isinstance(message, dict) or not isinstance(message.get("role"), str):
            return f"Field 'messages[{index}].role' must be a string"
    return None


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def create_app(
    config: AgentConfig,
    orchestrator: AgentOrchestrator,
    tool_servers: dict[str, ToolServerConfig] | None = None,
) -> FastAPI:
    """Create the FastAPI application around an already constructed orchestrator."""
    connect_task: asyncio.Task[int] | None = None

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Connect tool servers in the background and release them on shutdown."""
        nonlocal connect_task
        if tool_servers:
            connect_task = asyncio.create_task(orchestrator.connect_tools(tool_servers))
        LOG.info("Proxy server ready port=%s model=%s tool_servers=%s", config.port, config.model, len(tool_servers or {}))
        try:
            yield
        finally:
            if connect_task and not connect_task.done():
                connect_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await connect_task
            await orchestrator.shutdown()

    app = FastAPI(title="vertexkoppler", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def cors_and_access_log(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        LOG.log(
            logging.INFO if config.debug_mode else logging.DEBUG,
            "%s %s status=%s elapsed_ms=%d",
            request.method,
            request.url.path,
            response.status_code,
            int((time.monotonic() - started) * 1000),
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405):
            return JSONResponse(
                {"error": f"Endpoint not found: {request.method} {request.url.path}"},
                status_code=404,
            )
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.options("/{path:path}")
    async def preflight(path: str) -> Response:
        return Response(status_code=204)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "version": __version__,
                "config": {
                    "model": config.model,
                    "project": config.project,
                    "location": config.location,
                },
            }
        )

    async def chat_completions(request: Request):
        """OpenAI-compatible chat completions endpoint."""
        try:
            payload = await request.json()
        except ValueError:
            return _bad_request("Body must be a JSON object")

        problem = validate_chat_payload(payload)
        if problem:
            LOG.debug("Rejected chat request problem=%s", problem)
            return _bad_request(problem)

        payload.setdefault("model", config.model)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("incoming chat.completions request payload=%s", to_bounded_json(payload))

        if payload.get("stream"):

            async def event_stream() -> AsyncGenerator[bytes, None]:
                try:
                    async for chunk in orchestrator.process_stream(payload):
                        yield sse_data(chunk)
                except Exception as exc:
                    LOG.warning("Streaming request failed, sending error event error=%s", exc)
                    yield sse_data(to_stream_error_event(_error_source(exc)))
                    return
                yield SSE_DONE

            return build_sse_response(event_stream())

        try:
            result = await orchestrator.process_request(payload)
        except Exception as exc:
            envelope = to_error_envelope(_error_source(exc))
            status = http_status_for_type(envelope["error"]["type"])
            if status >= 500:
                LOG.exception("chat/completions failed")
            return JSONResponse(envelope, status_code=status)
        return JSONResponse(result)

    app.add_api_route("/v1/chat/completions", chat_completions, methods=["POST"])
    app.add_api_route("/chat/completions", chat_completions, methods=["POST"])

    return app


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """Probe whether `port` can be bound right now; any bind error counts as unavailable."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        # Same option uvicorn binds with; TIME_WAIT leftovers do not block it.
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            LOG.debug("Port in use port=%s", port)
        else:
            LOG.debug("Port probe failed port=%s error=%s", port, exc)
        return False
    finally:
        sock.close()
    return True


def run_server(config: AgentConfig) -> None:
    """Run the proxy in the foreground until uvicorn receives SIGTERM or SIGINT."""
    setup_logging(config.logging, debug=config.debug_mode, log_file=log_file_path(), truncate=True)
    LOG.info("Starting proxy server port=%s project=%s location=%s", config.port, config.project, config.location)

    try:
        tool_servers = load_tool_servers()
    except ValueError as exc:
        LOG.error("Tool server configuration ignored: %s", exc)
        tool_servers = {}

    orchestrator = AgentOrchestrator(config)
    app = create_app(config, orchestrator, tool_servers)
    uvicorn.run(app, host="0.0.0.0", port=config.port, log_config=None)
