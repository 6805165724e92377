"""Policy hook that refuses writes to files not read earlier in the session."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from caelis.policy import NoopHook, PolicyError, ToolInput

DEFAULT_READ_TOOL_NAME = "READ"
FILE_READ = "file_read"
FILE_WRITE = "file_write"


def normalize_path_for_comparison(path: str) -> str:
    """Return an absolute, cleaned form of a path; blank paths give ''."""
    path = (path or "").strip()
    if not path:
        return ""
    if path.startswith("~/"):
        try:
            path = os.path.join(str(Path.home()), path[2:])
        except RuntimeError:
            pass
    if not os.path.isabs(path):
        try:
            path = os.path.join(os.getcwd(), path)
        except OSError:
            pass
    return os.path.normpath(path)


def _path_arg(args: dict[str, Any] | None) -> str:
    value = (args or {}).get("path")
    return normalize_path_for_comparison(value) if isinstance(value, str) else ""


def _has_read_evidence(ctx: Any, read_tool_name: str, target: str) -> bool:
    history = getattr(ctx, "history", None)
    if not callable(history):
        return False
    for event in history():
        response = None if event is None else event.message.tool_response
        if response is None or (response.name or "").strip() != read_tool_name:
            continue
        read_path = (response.result or {}).get("path")
        if isinstance(read_path, str) and normalize_path_for_comparison(read_path) == target:
            return True
    return False


class ReadBeforeWriteHook(NoopHook):
    """Requires a prior read of a file before a tool may write it."""

    def __init__(self, read_tool_name: str = "") -> None:
        super().__init__("require_read_before_write")
        self.read_tool_name = (read_tool_name or "").strip() or DEFAULT_READ_TOOL_NAME

    def before_tool(self, ctx: Any, tool_input: ToolInput) -> ToolInput:
        if FILE_WRITE not in (tool_input.capability or ()):
            return tool_input
        name = json.dumps(tool_input.call.name)
        target = _path_arg(tool_input.call.args)
        if not target:
            raise PolicyError(f"policy: write tool {name} requires path arg")
        if _has_read_evidence(ctx, self.read_tool_name, target):
            return tool_input
        raise PolicyError(f"policy: write tool {name} requires prior READ of {json.dumps(target)}")


def require_read_before_write(read_tool_name: str = "") -> ReadBeforeWriteHook:
    """Return a hook that enforces read-before-write."""
    return ReadBeforeWriteHook(read_tool_name)