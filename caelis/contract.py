"""Run lifecycle events: the stable contract runtime clients read."""

from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from caelis.errors import ErrorCode, error_code_of, is_error_code
from caelis.session import Event, Message, Role, Session, new_event_id

CONTRACT_VERSION_V1 = "v1"
META_CONTRACT_VERSION = "contract_version"
META_LIFECYCLE = "lifecycle"
META_KIND = "kind"
META_KIND_LIFECYCLE = "lifecycle"

_CANCELLED = (asyncio.CancelledError, concurrent.futures.CancelledError)


class RunLifecycleStatus(str, Enum):
    """Machine-readable status of a run."""

    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    COMPLETED = "completed"

    def __str__(self) -> str:
        return self.value


@dataclass
class LifecycleInfo:
    """Lifecycle state parsed from one lifecycle event."""

    status: RunLifecycleStatus | str
    phase: str = ""
    error: str = ""
    error_code: ErrorCode | str = ""


def _chain(err: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def lifecycle_status_for_error(err: BaseException | None) -> RunLifecycleStatus:
    """Map the error that ended a run to its lifecycle status."""
    if err is None:
        return RunLifecycleStatus.COMPLETED
    if is_error_code(err, ErrorCode.APPROVAL_REQUIRED):
        return RunLifecycleStatus.WAITING_APPROVAL
    if is_error_code(err, ErrorCode.APPROVAL_ABORTED) or any(
        isinstance(one, _CANCELLED) for one in _chain(err)
    ):
        return RunLifecycleStatus.INTERRUPTED
    return RunLifecycleStatus.FAILED


def lifecycle_event(
    session: Session,
    status: RunLifecycleStatus | str,
    phase: str,
    cause: BaseException | None = None,
) -> Event:
    """Build a lifecycle event for a session."""
    lifecycle: dict[str, Any] = {"status": str(status), "phase": phase}
    if cause is not None:
        lifecycle["error"] = str(cause)
        code = error_code_of(cause)
        if code is not None:
            lifecycle["error_code"] = str(code)
    return Event(
        id=new_event_id(),
        session_id=session.id,
        time=datetime.now(timezone.utc),
        message=Message(role=Role.SYSTEM, text=""),
        meta={
            META_KIND: META_KIND_LIFECYCLE,
            META_CONTRACT_VERSION: CONTRACT_VERSION_V1,
            META_LIFECYCLE: lifecycle,
        },
    )


def is_lifecycle_event(event: Event | None) -> bool:
    """Report whether an event is a lifecycle event."""
    if event is None or not event.meta:
        return False
    return event.meta.get(META_KIND) == META_KIND_LIFECYCLE


def agent_history_events(events: Iterable[Event | None] | None) -> list[Event]:
    """Return the events an agent should see: no lifecycle events, no gaps."""
    return [event for event in events or () if event is not None and not is_lifecycle_event(event)]


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _as_enum(enum_type: type[Enum], text: str) -> Any:
    try:
        return enum_type(text)
    except ValueError:
        return text


def lifecycle_from_event(event: Event | None) -> LifecycleInfo | None:
    """Parse the lifecycle state of an event, or None if it has none."""
    if not is_lifecycle_event(event):
        return None
    payload = event.meta.get(META_LIFECYCLE)
    if not isinstance(payload, dict):
        return None
    status = _text(payload.get("status"))
    if not status:
        return None
    info = LifecycleInfo(status=_as_enum(RunLifecycleStatus, status), phase=_text(payload.get("phase")))
    if "error" in payload:
        info.error = _text(payload["error"])
    if "error_code" in payload:
        info.error_code = _as_enum(ErrorCode, _text(payload["error_code"]))
    return info