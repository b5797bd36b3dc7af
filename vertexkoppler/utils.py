"""Shared utility helpers for the vertexkoppler package."""

from __future__ import annotations

import json
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging.

    The helper never raises and truncates long payloads to keep log lines readable.
    """
    try:
        raw = json.dumps(payload, ensure_ascii=False)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def extract_text(content: Any) -> str:
    """Return the text of an OpenAI message `content` value.

    Plain strings are returned unchanged. For multi-part content only `text`
    parts are concatenated, in order; image references and unknown parts are
    ignored.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type", "text") != "text":
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            texts.append(text)
    return "".join(texts)
