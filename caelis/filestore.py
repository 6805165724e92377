"""Session store that keeps events in JSON-lines files on disk."""

from __future__ import annotations

import json
import os
import re
import threading
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from caelis.session import Event, Session, Store

_WHITESPACE = re.compile(r"\s*")


class Layout(str, Enum):
    """How session directories are organised under the root."""

    NAMESPACED = "namespaced"
    SESSION_ONLY = "session_only"


def _validate_component(name: str, value: str) -> None:
    value = (value or "").strip()
    if (
        not value
        or value in (".", "..")
        or "/" in value
        or "\\" in value
        or os.path.normpath(value) != value
    ):
        raise ValueError(f"filestore: invalid {name}")


def _validate_session(session: Session | None) -> None:
    if session is None:
        raise ValueError("filestore: invalid session")
    _validate_component("app_name", session.app_name)
    _validate_component("user_id", session.user_id)
    _validate_component("session_id", session.id)


def _is_compaction_event(event: Event) -> bool:
    return bool(event.meta) and event.meta.get("kind") == "compaction"


def _decode_events(text: str) -> Iterator[Event]:
    decoder = json.JSONDecoder()
    pos = _WHITESPACE.match(text, 0).end()
    while pos < len(text):
        try:
            obj, pos = decoder.raw_decode(text, pos)
            event = Event.from_dict(obj)
        except ValueError as exc:
            raise ValueError(f"filestore: decode events: {exc}") from exc
        yield event
        pos = _WHITESPACE.match(text, pos).end()


class FileStore(Store):
    """Persists session events to events.jsonl files under a root directory."""

    def __init__(self, root: str | os.PathLike[str], layout: Layout | str = Layout.NAMESPACED) -> None:
        if not root:
            raise ValueError("filestore: root is required")
        try:
            self.layout = Layout(layout or Layout.NAMESPACED)
        except ValueError:
            raise ValueError(f"filestore: unsupported layout {layout!r}") from None
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _session_dir(self, session: Session) -> Path:
        _validate_session(session)
        if self.layout is Layout.SESSION_ONLY:
            return self.root / session.id
        return self.root / session.app_name / session.user_id / session.id

    def get_or_create(self, session: Session) -> Session:
        directory = self._session_dir(session)
        with self._lock:
            directory.mkdir(parents=True, exist_ok=True)
            meta_path = directory / "meta.json"
            if not meta_path.exists():
                payload = {"AppName": session.app_name, "UserID": session.user_id, "ID": session.id}
                meta_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return replace(session)

    def append_event(self, session: Session, event: Event) -> None:
        if event is None:
            raise ValueError("filestore: event is required")
        directory = self._session_dir(session)
        line = json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
        with self._lock:
            directory.mkdir(parents=True, exist_ok=True)
            with open(directory / "events.jsonl", "a", encoding="utf-8") as handle:
                handle.write(line)

    def _read_events(self, session: Session) -> Iterator[Event]:
        path = self._session_dir(session) / "events.jsonl"
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return iter(())
        return _decode_events(text)

    def list_events(self, session: Session) -> list[Event]:
        return list(self._read_events(session))

    def list_context_window_events(self, session: Session) -> list[Event]:
        """Return events from the latest compaction event onward."""
        out: list[Event] = []
        for event in self._read_events(session):
            if _is_compaction_event(event):
                out.clear()
            out.append(event)
        return out

    def snapshot_state(self, session: Session) -> dict[str, Any]:
        path = self._session_dir(session) / "state.json"
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("filestore: state must be an object")
        return data