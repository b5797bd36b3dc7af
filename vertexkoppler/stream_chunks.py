"""Builders for OpenAI-compatible completion payloads and streaming chunks."""

from __future__ import annotations

import itertools
import json
import math
import time
from typing import Any

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_id_counter = itertools.count(1)


def new_completion_id() -> str:
    """Return a `chatcmpl-` id that stays unique within one process."""
    return f"chatcmpl-{int(time.time() * 1000)}{next(_id_counter):04d}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


class ThoughtTagger:
    """Wrap runs of reasoning parts in ``<think>``/``</think>`` delimiters.

    Consecutive reasoning parts share one delimiter pair. The same instance
    must see every part of one response, in order, and `finish` must be called
    once at the end.
    """

    def __init__(self) -> None:
        self.thinking = False

    def feed(self, text: str, thought: bool) -> str:
        if thought and not self.thinking:
            self.thinking = True
            return THINK_OPEN + text
        if not thought and self.thinking:
            self.thinking = False
            return THINK_CLOSE + text
        return text

    def finish(self) -> str:
        if self.thinking:
            self.thinking = False
            return THINK_CLOSE
        return ""


def candidate_parts(response: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the content parts of the first candidate of a provider response."""
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content")
    if not isinstance(content, dict):
        return []
    parts = content.get("parts")
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def client_chunk(
    *,
    completion_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    """Build a canonical `chat.completion.chunk` payload for clients."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def completion_response(
    *,
    completion_id: str,
    model: str,
    created: int,
    content: str,
    prompt_tokens: int,
    completion_tokens: int,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    """Build a non-streaming `chat.completion` payload."""
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


SSE_DONE = b"data: [DONE]\n\n"
