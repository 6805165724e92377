"""Recovery of tool calls left without a response by an interrupted run."""

from __future__ import annotations

import copy
import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from caelis.compaction import META_KIND, context_window_events
from caelis.session import Event, Message, Role, ToolResponse, new_event_id

META_KIND_RECOVERY = "recovery"


@dataclass
class _PendingCall:
    event_index: int
    id: str
    name: str
    args: dict[str, Any] | None


def _clone_map(value: dict[str, Any] | None) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        cloned = json.loads(json.dumps(value))
    except (TypeError, ValueError):
        try:
            return copy.deepcopy(value)
        except Exception:  # noqa: BLE001 - fall back to a shallow copy
            return dict(value)
    return cloned if isinstance(cloned, dict) else {"raw": str(value)}


def build_recovery_events(events: Sequence[Event | None]) -> list[Event]:
    """Return synthetic tool responses for calls in the window that never got one."""
    window = context_window_events(events)
    pending: dict[str, _PendingCall] = {}
    for index, event in enumerate(window):
        if event is None:
            continue
        for call in event.message.tool_calls or ():
            if not call.id or not call.name or call.id in pending:
                continue
            pending[call.id] = _PendingCall(index, call.id, call.name, _clone_map(call.args))
        response = event.message.tool_response
        if response is not None and response.id:
            pending.pop(response.id, None)

    ordered = sorted(pending.values(), key=lambda call: (call.event_index, call.id))
    return [
        Event(
            id=new_event_id(),
            time=datetime.now(timezone.utc),
            message=Message(
                role=Role.TOOL,
                tool_response=ToolResponse(
                    id=call.id,
                    name=call.name,
                    result={"error": "tool call interrupted before completion", "interrupted": True},
                ),
            ),
            meta={
                META_KIND: META_KIND_RECOVERY,
                META_KIND_RECOVERY: {
                    "type": "dangling_tool_call",
                    "tool_call_id": call.id,
                    "tool_name": call.name,
                    "tool_args": _clone_map(call.args),
                },
            },
        )
        for call in ordered
    ]