"""Sessions, events and the store interface that persists them."""

from __future__ import annotations

import abc
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

_ZERO_TIME = "0001-01-01T00:00:00Z"
_FRACTION = re.compile(r"\.(\d+)")


class Role(str, Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    def __str__(self) -> str:
        return self.value


@dataclass
class ToolCall:
    """A request to run one tool."""

    id: str = ""
    name: str = ""
    args: dict[str, Any] | None = None


@dataclass
class ToolResponse:
    """The result of one tool call."""

    id: str = ""
    name: str = ""
    result: dict[str, Any] | None = None


@dataclass
class Message:
    """One conversation message."""

    role: str = ""
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_response: ToolResponse | None = None


@dataclass
class ModelRequest:
    """Messages and tool definitions passed to an LLM backend."""

    messages: list[Message] = field(default_factory=list)
    tools: list[Any] = field(default_factory=list)
    stream: bool = False


@dataclass
class ModelResponse:
    """One reply from an LLM backend."""

    message: Message = field(default_factory=Message)
    model: str = ""
    provider: str = ""
    turn_complete: bool = False


@dataclass
class Session:
    """Identifies a conversation thread."""

    app_name: str = ""
    user_id: str = ""
    id: str = ""


class SessionNotFoundError(LookupError):
    """Raised when a session does not exist in a store."""

    def __init__(self, message: str = "session: not found") -> None:
        super().__init__(message)


def _parse_role(value: Any) -> str:
    text = "" if value is None else str(value)
    try:
        return Role(text)
    except ValueError:
        return text


def _format_time(moment: datetime | None) -> str:
    return _ZERO_TIME if moment is None else moment.isoformat()


def _parse_time(raw: Any) -> datetime | None:
    if not raw or not isinstance(raw, str):
        return None
    if raw.startswith("0001-01-01T00:00:00"):
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    return datetime.fromisoformat(text)


def _tool_call_to_dict(call: ToolCall) -> dict[str, Any]:
    return {"ID": call.id, "Name": call.name, "Args": call.args}


def _tool_call_from_dict(data: dict[str, Any]) -> ToolCall:
    return ToolCall(id=data.get("ID") or "", name=data.get("Name") or "", args=data.get("Args"))


def _message_to_dict(message: Message) -> dict[str, Any]:
    out: dict[str, Any] = {"Role": str(message.role), "Text": message.text}
    if message.tool_calls:
        out["ToolCalls"] = [_tool_call_to_dict(call) for call in message.tool_calls]
    if message.tool_response is not None:
        resp = message.tool_response
        out["ToolResponse"] = {"ID": resp.id, "Name": resp.name, "Result": resp.result}
    return out


def _message_from_dict(data: dict[str, Any] | None) -> Message:
    if not data:
        return Message()
    raw_resp = data.get("ToolResponse")
    tool_response = None
    if isinstance(raw_resp, dict):
        tool_response = ToolResponse(
            id=raw_resp.get("ID") or "",
            name=raw_resp.get("Name") or "",
            result=raw_resp.get("Result"),
        )
    return Message(
        role=_parse_role(data.get("Role")),
        text=data.get("Text") or "",
        tool_calls=[_tool_call_from_dict(c) for c in data.get("ToolCalls") or [] if isinstance(c, dict)],
        tool_response=tool_response,
    )


@dataclass
class Event:
    """The persisted unit of runtime history."""

    id: str = ""
    session_id: str = ""
    time: datetime | None = None
    message: Message = field(default_factory=Message)
    meta: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of this event."""
        return {
            "ID": self.id,
            "SessionID": self.session_id,
            "Time": _format_time(self.time),
            "Message": _message_to_dict(self.message),
            "Meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Build an event from its JSON-ready form."""
        if not isinstance(data, dict):
            raise ValueError(f"session: event must be an object, got {type(data).__name__}")
        meta = data.get("Meta")
        return cls(
            id=data.get("ID") or "",
            session_id=data.get("SessionID") or "",
            time=_parse_time(data.get("Time")),
            message=_message_from_dict(data.get("Message")),
            meta=meta if isinstance(meta, dict) else None,
        )


class Store(abc.ABC):
    """Session and event persistence."""

    @abc.abstractmethod
    def get_or_create(self, session: Session) -> Session:
        """Return the stored session, creating it if needed."""

    @abc.abstractmethod
    def append_event(self, session: Session, event: Event) -> None:
        """Append one event to a session."""

    @abc.abstractmethod
    def list_events(self, session: Session) -> list[Event]:
        """Return every event of a session in order."""

    @abc.abstractmethod
    def snapshot_state(self, session: Session) -> dict[str, Any]:
        """Return a copy of the session state."""


_id_lock = threading.Lock()
_last_id_ns = 0


def new_event_id() -> str:
    """Return a fresh, time-based event id."""
    global _last_id_ns
    with _id_lock:
        now = time.time_ns()
        if now <= _last_id_ns:
            now = _last_id_ns + 1
        _last_id_ns = now
    return f"ev_{now}"