"""Per-request system prompt composition from markdown prompt files.

A user can start their latest message with ``{{prompt:<name>}}`` to pull
``<prompts_base_path>/<name>.md`` into the system instruction. Prompt files
may carry YAML front matter whose values become generation defaults.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .utils import extract_text

LOG = logging.getLogger(__name__)

_DIRECTIVE_RE = re.compile(r"^{{\s*prompt\s*:\s*([^}]+?)\s*}}\s*")
_FRONT_MATTER_RE = re.compile(r"^---\r?\n([\s\S]*?)\r?\n?---\r?\n([\s\S]*)$")


class PromptError(ValueError):
    """Raised when a prompt directive cannot be resolved."""


@dataclass(frozen=True)
class PromptMetadata:
    """Generation defaults declared in a prompt file's front matter."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    tools: list[str] | None = None


@dataclass
class ComposedPrompt:
    """Messages with the directive removed, plus the composed system prompt."""

    messages: list[dict[str, Any]]
    system_prompt: str
    metadata: PromptMetadata = field(default_factory=PromptMetadata)


def detect_directive(text: str) -> tuple[str, str] | None:
    """Return ``(reference, cleaned_text)`` when `text` starts with a prompt directive."""
    match = _DIRECTIVE_RE.match(text)
    if not match:
        return None
    reference = match.group(1).strip()
    if not reference:
        return None
    return reference, text[match.end():]


def _number(value: Any, kind: type) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return kind(value)


def parse_metadata(raw: dict[str, Any]) -> PromptMetadata:
    """Pick the recognised keys out of a front matter mapping; wrong types are ignored."""

    def first(*keys: str) -> Any:
        for key in keys:
            if raw.get(key) is not None:
                return raw[key]
        return None

    model = raw.get("model")
    tools = raw.get("tools")
    if isinstance(tools, list):
        tools = [str(tool) for tool in tools if isinstance(tool, str) and tool.strip()]
    else:
        tools = None

    return PromptMetadata(
        model=model.strip() if isinstance(model, str) and model.strip() else None,
        temperature=_number(first("temperature"), float),
        max_tokens=_number(first("maxTokens", "max_tokens"), int),
        top_p=_number(first("topP", "top_p"), float),
        top_k=_number(first("topK", "top_k"), int),
        tools=tools,
    )


def parse_front_matter(raw: str) -> tuple[PromptMetadata, str]:
    """Split a prompt file into metadata and body.

    Files without front matter, or with front matter that is not a YAML
    mapping, yield empty metadata.
    """
    match = _FRONT_MATTER_RE.match(raw)
    if not match:
        return PromptMetadata(), raw

    body = match.group(2)
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        LOG.warning("Ignoring malformed prompt front matter error=%s", exc)
        return PromptMetadata(), body
    if not isinstance(data, dict):
        return PromptMetadata(), body
    return parse_metadata(data), body


def combine_prompts(base: str, dynamic: str) -> str:
    if not base.strip():
        return dynamic
    if not dynamic.strip():
        return base
    return f"{base}\n\n{dynamic}"


class PromptResolver:
    """Resolve prompt references to files below one base directory."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path).expanduser().resolve()

    def path_for(self, reference: str) -> Path:
        name = reference[:-3] if reference.endswith(".md") else reference
        path = (self.base_path / f"{name}.md").resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise PromptError(f"Prompt reference '{reference}' escapes the prompts directory")
        return path

    def resolve(self, reference: str) -> tuple[PromptMetadata, str]:
        """Load one prompt file and return its metadata and body."""
        path = self.path_for(reference)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PromptError(f"Failed to resolve prompt reference '{reference}': prompt file not found: {path}") from exc
        return parse_front_matter(raw)


class PromptComposer:
    """Compose the system instruction from the base prompt and an optional directive."""

    def __init__(self, base_path: str | Path, system_prompt_path: str | Path) -> None:
        self.resolver = PromptResolver(base_path)
        self.system_prompt_file = self.resolver.base_path / system_prompt_path

    def base_prompt(self) -> str:
        """Read the base system prompt; it is re-read per request so edits apply immediately."""
        try:
            raw = self.system_prompt_file.read_text(encoding="utf-8")
        except OSError as exc:
            LOG.warning("Base system prompt unavailable path=%s error=%s", self.system_prompt_file, exc)
            return ""
        _, body = parse_front_matter(raw)
        return body.strip()

    def compose(self, messages: list[dict[str, Any]]) -> ComposedPrompt:
        """Strip a directive from the last user message and build the system prompt."""
        base = self.base_prompt()
        index = next((i for i in range(len(messages) - 1, -1, -1) if messages[i].get("role") == "user"), None)
        if index is None:
            return ComposedPrompt(messages=messages, system_prompt=base)

        message = messages[index]
        content = message.get("content")
        if isinstance(content, list):
            text = next(
                (
                    part.get("text")
                    for part in content
                    if isinstance(part, dict) and part.get("type", "text") == "text" and part.get("text")
                ),
                None,
            )
        else:
            text = extract_text(content)
        found = detect_directive(text or "")
        if found is None:
            return ComposedPrompt(messages=messages, system_prompt=base)

        reference, cleaned = found
        metadata, body = self.resolver.resolve(reference)
        LOG.info("Prompt directive resolved reference=%s model=%s tools=%s", reference, metadata.model, metadata.tools)

        updated = copy.deepcopy(messages)
        if isinstance(content, list):
            for part in updated[index]["content"]:
                if isinstance(part, dict) and part.get("type", "text") == "text" and part.get("text"):
                    part["text"] = cleaned
                    break
        else:
            updated[index]["content"] = cleaned

        return ComposedPrompt(
            messages=updated,
            system_prompt=combine_prompts(base, body.strip()),
            metadata=metadata,
        )
