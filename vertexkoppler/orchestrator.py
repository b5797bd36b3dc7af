"""Chat completion orchestration between OpenAI-shaped requests and Vertex AI.

The orchestrator converts messages and parameters, attaches the aggregated
MCP tool when one is available, runs the function-calling loop and rebuilds
OpenAI-compatible responses or chunk streams.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

from .config import AgentConfig, ToolServerConfig
from .prompts import PromptComposer, PromptMetadata
from .stream_chunks import (
    ThoughtTagger,
    candidate_parts,
    client_chunk,
    completion_response,
    estimate_tokens,
    new_completion_id,
)
from .tool_bridge import AggregatedTool, ToolBridge, ToolCallError
from .upstream import UpstreamClient
from .utils import extract_text, to_bounded_json

LOG = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful AI assistant. Provide accurate, helpful, and concise responses."
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.95

_trace_counter = itertools.count(1)


def new_trace_id() -> str:
    return f"req-{int(time.time() * 1000)}-{next(_trace_counter)}"


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


@dataclass
class PreparedRequest:
    """Provider call inputs derived from one chat completion request."""

    model: str
    body: dict[str, Any]
    prompt_tokens: int
    tool: AggregatedTool | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)


def build_contents(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert chat messages to provider contents; system messages are left out."""
    contents = []
    for message in messages:
        role = message.get("role")
        if role == "system":
            continue
        contents.append(
            {
                "role": "model" if role == "assistant" else "user",
                "parts": [{"text": extract_text(message.get("content"))}],
            }
        )
    return contents


def build_system_instruction(messages: list[dict[str, Any]], base: str | None = None) -> str:
    """Join system messages with a blank line, after `base` when one is composed.

    Without any system text the fixed default instruction is used.
    """
    texts = [extract_text(m.get("content")) for m in messages if m.get("role") == "system"]
    if base:
        texts.insert(0, base)
    texts = [text for text in texts if text]
    if not texts:
        return DEFAULT_SYSTEM_INSTRUCTION
    return "\n\n".join(texts)


def build_generation_config(request: dict[str, Any], metadata: PromptMetadata | None = None) -> dict[str, Any]:
    """Resolve generation parameters: request value, then prompt metadata, then defaults."""
    metadata = metadata or PromptMetadata()
    max_tokens = _number(request.get("max_tokens"))
    config: dict[str, Any] = {
        "temperature": _first_set(_number(request.get("temperature")), metadata.temperature, DEFAULT_TEMPERATURE),
        "maxOutputTokens": _first_set(
            int(max_tokens) if max_tokens is not None else None,
            metadata.max_tokens,
            DEFAULT_MAX_OUTPUT_TOKENS,
        ),
        "topK": _first_set(metadata.top_k, DEFAULT_TOP_K),
        "topP": _first_set(metadata.top_p, DEFAULT_TOP_P),
    }

    stop = request.get("stop")
    if isinstance(stop, str) and stop:
        config["stopSequences"] = [stop]
    elif isinstance(stop, list):
        sequences = [item for item in stop if isinstance(item, str) and item]
        if sequences:
            config["stopSequences"] = sequences
    return config


class AgentOrchestrator:
    """Process chat completion requests against the configured Vertex AI model."""

    def __init__(
        self,
        cfg: AgentConfig,
        *,
        upstream: Any | None = None,
        tool_bridge: ToolBridge | None = None,
        prompt_composer: PromptComposer | None = None,
    ) -> None:
        self.cfg = cfg
        self.upstream = upstream if upstream is not None else UpstreamClient(cfg)
        self.tool_bridge = tool_bridge if tool_bridge is not None else ToolBridge()
        if prompt_composer is None and cfg.prompts_base_path and cfg.system_prompt_path:
            prompt_composer = PromptComposer(cfg.prompts_base_path, cfg.system_prompt_path)
        self.prompt_composer = prompt_composer
        self._shut_down = False
        LOG.info(
            "Orchestrator initialized project=%s location=%s model=%s prompts=%s",
            cfg.project,
            cfg.location,
            cfg.model,
            self.prompt_composer is not None,
        )

    async def connect_tools(self, servers: dict[str, ToolServerConfig]) -> int:
        """Connect tool servers through the bridge and return how many are live."""
        connected = await self.tool_bridge.connect(servers)
        return len(connected)

    async def _attach_tools(self, body: dict[str, Any], metadata: PromptMetadata, trace: str) -> AggregatedTool | None:
        """Add function declarations to `body`; failures leave the request tool-less."""
        try:
            tool = self.tool_bridge.aggregated_tool()
            if tool is None:
                return None
            declarations = await tool.function_declarations(metadata.tools)
        except Exception as exc:
            LOG.warning("Tool attachment failed, continuing without tools trace=%s error=%s", trace, exc)
            return None
        if not declarations:
            return None
        body["tools"] = [{"functionDeclarations": declarations}]
        LOG.debug("Tools attached trace=%s count=%s", trace, len(declarations))
        return tool

    async def prepare(self, request: dict[str, Any], trace: str) -> PreparedRequest:
        """Build the provider request body for one chat completion request."""
        messages: list[dict[str, Any]] = list(request.get("messages") or [])
        metadata = PromptMetadata()
        base: str | None = None
        if self.prompt_composer is not None:
            composed = self.prompt_composer.compose(messages)
            messages = composed.messages
            metadata = composed.metadata
            base = composed.system_prompt

        body: dict[str, Any] = {
            "contents": build_contents(messages),
            "systemInstruction": {"parts": [{"text": build_system_instruction(messages, base)}]},
            "generationConfig": build_generation_config(request, metadata),
        }
        tool = await self._attach_tools(body, metadata, trace)
        prompt_text = " ".join(extract_text(m.get("content")) for m in messages)
        return PreparedRequest(
            model=metadata.model or self.cfg.model,
            body=body,
            prompt_tokens=estimate_tokens(prompt_text),
            tool=tool,
            messages=messages,
        )

    async def _run_tool_calls(
        self,
        tool: AggregatedTool,
        calls: list[dict[str, Any]],
        trace: str,
    ) -> list[dict[str, Any]]:
        """Execute function calls and return the matching functionResponse parts."""

        async def run_one(call: dict[str, Any]) -> dict[str, Any]:
            name = str(call.get("name", ""))
            args = call.get("args")
            if not isinstance(args, dict):
                args = {}
            try:
                result = await tool.call(name, args)
                response: dict[str, Any] = {"result": result}
            except ToolCallError as exc:
                response = {"error": exc.diagnostics}
            except Exception as exc:
                LOG.exception("Unexpected tool failure trace=%s tool=%s", trace, name)
                response = {"error": {"tool": name, "error": str(exc) or exc.__class__.__name__}}
            return {"functionResponse": {"name": name, "response": response}}

        LOG.info("Running tool calls trace=%s tools=%s", trace, ", ".join(str(c.get("name")) for c in calls))
        return list(await asyncio.gather(*(run_one(call) for call in calls)))

    @staticmethod
    def _function_calls(parts: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [part["functionCall"] for part in parts if isinstance(part.get("functionCall"), dict)]

    async def process_request(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run a non-streaming chat completion and return an OpenAI response body."""
        trace = new_trace_id()
        started = time.monotonic()
        messages = request.get("messages") or []
        LOG.info(
            "Request started trace=%s stream=false messages=%s tools=%s",
            trace,
            len(messages),
            self.tool_bridge.any(),
        )
        try:
            prepared = await self.prepare(request, trace)
            body = prepared.body
            tagger = ThoughtTagger()
            pieces: list[str] = []

            for round_no in range(1, self.cfg.max_tool_rounds + 1):
                response = await self.upstream.generate(prepared.model, body, trace_id=trace)
                parts = candidate_parts(response)
                for part in parts:
                    text = part.get("text")
                    if isinstance(text, str) and text:
                        pieces.append(tagger.feed(text, bool(part.get("thought"))))

                calls = self._function_calls(parts)
                if not calls or prepared.tool is None:
                    break
                if round_no == self.cfg.max_tool_rounds:
                    LOG.warning("Tool round limit reached trace=%s rounds=%s", trace, round_no)
                    break
                body["contents"].append({"role": "model", "parts": parts})
                body["contents"].append({"role": "user", "parts": await self._run_tool_calls(prepared.tool, calls, trace)})

            pieces.append(tagger.finish())
            content = "".join(pieces)
            result = completion_response(
                completion_id=new_completion_id(),
                model=prepared.model,
                created=int(time.time()),
                content=content,
                prompt_tokens=prepared.prompt_tokens,
                completion_tokens=estimate_tokens(content),
            )
        except Exception as exc:
            LOG.error(
                "Request failed trace=%s stream=false messages=%s duration_ms=%d error=%s",
                trace,
                len(messages),
                int((time.monotonic() - started) * 1000),
                exc,
            )
            raise

        LOG.info(
            "Request completed trace=%s stream=false id=%s content_chars=%s duration_ms=%d",
            trace,
            result["id"],
            len(content),
            int((time.monotonic() - started) * 1000),
        )
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Response body trace=%s body=%s", trace, to_bounded_json(result))
        return result

    async def process_stream(self, request: dict[str, Any]) -> AsyncGenerator[dict[str, Any], None]:
        """Run a streaming chat completion, yielding `chat.completion.chunk` payloads.

        The sequence is one role chunk, the content chunks, and one terminal
        chunk with an empty delta.
        """
        trace = new_trace_id()
        started = time.monotonic()
        messages = request.get("messages") or []
        LOG.info(
            "Request started trace=%s stream=true messages=%s tools=%s",
            trace,
            len(messages),
            self.tool_bridge.any(),
        )
        completion_id = new_completion_id()
        created = int(time.time())
        content_chunks = 0
        try:
            prepared = await self.prepare(request, trace)
            body = prepared.body
            model = prepared.model
            tagger = ThoughtTagger()

            def chunk(delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
                return client_chunk(
                    completion_id=completion_id,
                    model=model,
                    created=created,
                    delta=delta,
                    finish_reason=finish_reason,
                )

            role_sent = False
            for round_no in range(1, self.cfg.max_tool_rounds + 1):
                round_parts: list[dict[str, Any]] = []
                async for partial in self.upstream.generate_stream(model, body, trace_id=trace):
                    parts = candidate_parts(partial)
                    round_parts.extend(parts)
                    for part in parts:
                        text = part.get("text")
                        if not isinstance(text, str) or not text:
                            continue
                        if not role_sent:
                            role_sent = True
                            yield chunk({"role": "assistant"})
                        content_chunks += 1
                        yield chunk({"content": tagger.feed(text, bool(part.get("thought")))})

                calls = self._function_calls(round_parts)
                if not calls or prepared.tool is None:
                    break
                if round_no == self.cfg.max_tool_rounds:
                    LOG.warning("Tool round limit reached trace=%s rounds=%s", trace, round_no)
                    break
                body["contents"].append({"role": "model", "parts": round_parts})
                body["contents"].append(
                    {"role": "user", "parts": await self._run_tool_calls(prepared.tool, calls, trace)}
                )

            if not role_sent:
                yield chunk({"role": "assistant"})
            closing = tagger.finish()
            if closing:
                content_chunks += 1
                yield chunk({"content": closing})
            yield chunk({}, "stop")
        except Exception as exc:
            LOG.error(
                "Request failed trace=%s stream=true messages=%s chunks=%s duration_ms=%d error=%s",
                trace,
                len(messages),
                content_chunks,
                int((time.monotonic() - started) * 1000),
                exc,
            )
            raise

        LOG.info(
            "Request completed trace=%s stream=true id=%s chunks=%s duration_ms=%d",
            trace,
            completion_id,
            content_chunks,
            int((time.monotonic() - started) * 1000),
        )

    async def shutdown(self) -> None:
        """Release the tool bridge and upstream client once; teardown errors are only logged."""
        if self._shut_down:
            return
        self._shut_down = True
        try:
            await self.tool_bridge.shutdown()
        except Exception as exc:
            LOG.warning("Tool bridge shutdown failed error=%s", exc)
        close = getattr(self.upstream, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as exc:
                LOG.warning("Upstream client close failed error=%s", exc)
        LOG.info("Orchestrator shut down")
