"""Enrich failed tool calls with context the model can act on."""

from __future__ import annotations

import logging
import os
from typing import Any

LOG = logging.getLogger(__name__)

_FILESYSTEM_MARKERS = (
    "file",
    "directory",
    "dir",
    "path",
    "fs",
    "read",
    "write",
    "move",
    "search_files",
    "list_allowed",
)
_EDIT_MARKERS = ("edit", "replace", "patch")
_TEXT_NOT_FOUND_MARKERS = (
    "could not find exact match",
    "could not find",
    "not found in file",
    "no match",
    "oldtext not found",
)
_PATH_ARG_NAMES = (
    "path",
    "filePath",
    "file_path",
    "sourcePath",
    "source_path",
    "source",
    "directory",
    "dir",
    "folder",
)

EXACT_MATCH_HINT = (
    "Edit operations require the text to replace to match the existing file content exactly, "
    "including whitespace, indentation and line breaks. Re-read the file and copy the exact "
    "text before retrying the edit."
)


def is_filesystem_tool(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _FILESYSTEM_MARKERS)


def is_edit_tool(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _EDIT_MARKERS)


def is_text_not_found(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _TEXT_NOT_FOUND_MARKERS)


def extract_primary_path(args: dict[str, Any]) -> str | None:
    """Return the first path-like argument of a tool call."""
    for name in _PATH_ARG_NAMES:
        value = args.get(name)
        if isinstance(value, str):
            return value
    return None


def _is_within(target: str, directory: str) -> bool:
    target = os.path.normpath(target)
    directory = os.path.normpath(directory)
    return target == directory or target.startswith(directory.rstrip(os.sep) + os.sep)


def path_error_context(path: str, base: str, allowed: list[str]) -> dict[str, Any]:
    """Describe how a tool path resolves relative to `base` and the allowed directories."""
    is_relative = not os.path.isabs(path)
    resolved = os.path.normpath(os.path.join(base, path)) if is_relative else path
    return {
        "original_path": path,
        "resolved_path": resolved,
        "base_path": base,
        "allowed_directories": list(allowed),
        "is_relative": is_relative,
        "is_allowed": any(_is_within(resolved, directory) for directory in allowed),
    }


def allowed_directories(args: list[str]) -> list[str]:
    """Allowed directories of a filesystem server are its absolute-path arguments."""
    return [arg for arg in args if os.path.isabs(arg)]


def build_failure_diagnostics(
    tool: str,
    args: dict[str, Any],
    error: str,
    allowed: list[str] | None = None,
    base: str | None = None,
) -> dict[str, Any]:
    """Build the payload returned to the model in place of a failed tool result."""
    payload: dict[str, Any] = {"tool": tool, "error": error}

    if is_filesystem_tool(tool):
        path = extract_primary_path(args)
        if path is not None:
            payload["path_context"] = path_error_context(path, base or os.getcwd(), allowed or [])

    if is_edit_tool(tool) and is_text_not_found(error):
        payload["hint"] = EXACT_MATCH_HINT

    LOG.debug("Tool failure diagnostics tool=%s keys=%s", tool, sorted(payload))
    return payload
