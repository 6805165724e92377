"""Thread-safe in-memory session store."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any

from caelis.session import Event, Session, SessionNotFoundError, Store

_Key = tuple[str, str, str]


@dataclass
class _Entry:
    session: Session
    events: list[Event] = field(default_factory=list)
    state: dict[str, Any] = field(default_factory=dict)


def _make_key(session: Session | None) -> _Key:
    if session is None or not session.app_name or not session.user_id or not session.id:
        raise ValueError("session: app_name, user_id and session_id are required")
    return (session.app_name, session.user_id, session.id)


def _is_compaction_event(event: Event | None) -> bool:
    return event is not None and bool(event.meta) and event.meta.get("kind") == "compaction"


class InMemoryStore(Store):
    """Keeps sessions and their events in process memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: dict[_Key, _Entry] = {}

    def _entry(self, session: Session) -> _Entry:
        try:
            return self._data[_make_key(session)]
        except KeyError:
            raise SessionNotFoundError() from None

    def get_or_create(self, session: Session) -> Session:
        key = _make_key(session)
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                entry = _Entry(session=replace(session))
                self._data[key] = entry
            return replace(entry.session)

    def append_event(self, session: Session, event: Event) -> None:
        if event is None:
            raise ValueError("session: event is required")
        _make_key(session)
        with self._lock:
            self._entry(session).events.append(replace(event))

    def list_events(self, session: Session) -> list[Event]:
        _make_key(session)
        with self._lock:
            return [replace(ev) for ev in self._entry(session).events]

    def list_context_window_events(self, session: Session) -> list[Event]:
        """Return events from the latest compaction event onward."""
        _make_key(session)
        with self._lock:
            events = self._entry(session).events
            start = next(
                (i for i in range(len(events) - 1, -1, -1) if _is_compaction_event(events[i])),
                0,
            )
            return [replace(ev) for ev in events[start:]]

    def snapshot_state(self, session: Session) -> dict[str, Any]:
        _make_key(session)
        with self._lock:
            return dict(self._entry(session).state)