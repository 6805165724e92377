"""Runtime that drives agent runs over persisted session history."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from caelis.compaction import (
    META_COMPACTION,
    META_KIND,
    META_KIND_COMPACTION,
    TRIGGER_AUTO,
    TRIGGER_MANUAL,
    TRIGGER_OVERFLOW_RECOVERY,
    CompactionConfig,
    CompactionStrategy,
    CompactionSummarizeInput,
    context_window_events,
    default_compaction_strategy,
    estimate_events_tokens,
    is_context_overflow_error,
    resolve_context_window_tokens,
    split_compaction_target,
)
from caelis.contract import (
    RunLifecycleStatus,
    agent_history_events,
    is_lifecycle_event,
    lifecycle_event,
    lifecycle_from_event,
    lifecycle_status_for_error,
)
from caelis.errors import ErrorCode, SessionBusyError
from caelis.invocation import ActivateRequest, InvocationContext
from caelis.policy import Hook
from caelis.recovery import build_recovery_events
from caelis.session import Event, Message, Role, Session, SessionNotFoundError, Store, new_event_id


class _Agent(Protocol):
    def run(self, ctx: InvocationContext) -> Iterable[Event | None]: ...


@dataclass
class RunRequest:
    """Input of one agent run."""

    app_name: str = ""
    user_id: str = ""
    session_id: str = ""
    input: str = ""
    agent: _Agent | None = None
    model: Any = None
    tools: list[Any] = field(default_factory=list)
    policies: list[Hook] = field(default_factory=list)
    lsp_broker: Any = None
    lsp_activation_tools: list[str] = field(default_factory=list)
    auto_activate_lsp: list[str] = field(default_factory=list)
    persist_partial_events: bool = False
    context_window_tokens: int = 0


@dataclass
class CompactRequest:
    """Input of one manual compaction."""

    app_name: str = ""
    user_id: str = ""
    session_id: str = ""
    model: Any = None
    note: str = ""
    context_window_tokens: int = 0


@dataclass
class RunStateRequest:
    """Identifies the session whose run state is queried."""

    app_name: str = ""
    user_id: str = ""
    session_id: str = ""


@dataclass
class RunState:
    """Latest lifecycle status of a session."""

    has_lifecycle: bool = False
    status: RunLifecycleStatus | str = ""
    phase: str = ""
    error: str = ""
    error_code: ErrorCode | str = ""
    event_id: str = ""
    updated_at: datetime | None = None


@dataclass
class UsageRequest:
    """Identifies the session whose context usage is estimated."""

    app_name: str = ""
    user_id: str = ""
    session_id: str = ""
    model: Any = None
    context_window_tokens: int = 0


@dataclass
class ContextUsage:
    """Estimated token usage of the current context window."""

    current_tokens: int = 0
    window_tokens: int = 0
    input_budget: int = 0
    ratio: float = 0.0
    event_count: int = 0


_IDS_REQUIRED = "runtime: app_name, user_id and session_id are required"


def _lease_key(app_name: str, user_id: str, session_id: str) -> str:
    return "\x00".join(part.strip() for part in (app_name, user_id, session_id))


def _should_persist(event: Event, persist_partial: bool) -> bool:
    if persist_partial or not event.meta:
        return True
    partial = event.meta.get("partial")
    return not (isinstance(partial, bool) and partial)


def _check_tools(tools: Sequence[Any]) -> None:
    seen: set[str] = set()
    for one in tools:
        name = getattr(one, "name", "") if one is not None else ""
        if not isinstance(name, str) or not name.strip():
            raise ValueError("runtime: invalid tool")
        if name in seen:
            raise ValueError(f"runtime: duplicate tool name {name!r}")
        seen.add(name)


def _restore_activated_lsp(events: Iterable[Event | None], activation_tools: Iterable[str]) -> list[str]:
    names = {name.strip().lower() for name in activation_tools or () if name and name.strip()}
    if not names:
        return []
    out: list[str] = []
    for event in events:
        response = None if event is None else event.message.tool_response
        if response is None or (response.name or "").strip().lower() not in names:
            continue
        language = (response.result or {}).get("language")
        language = language.strip().lower() if isinstance(language, str) else ""
        if language and language not in out:
            out.append(language)
    return out


def _merge_languages(*groups: Iterable[str]) -> list[str]:
    out: list[str] = []
    for group in groups:
        for one in group or ():
            language = (one or "").strip().lower()
            if language and language not in out:
                out.append(language)
    return out


class Runtime:
    """Orchestrates session lifecycle, history compaction and agent execution."""

    def __init__(self, store: Store, compaction: CompactionConfig | None = None) -> None:
        if store is None:
            raise ValueError("runtime: store is nil")
        self._store = store
        self._compaction = (compaction or CompactionConfig()).normalized()
        self._strategy: CompactionStrategy = self._compaction.strategy or default_compaction_strategy()
        self._lock = threading.Lock()
        self._active_runs: set[str] = set()

    # -- leases -------------------------------------------------------------

    def _acquire(self, key: str) -> bool:
        if not key.strip("\x00 "):
            return False
        with self._lock:
            if key in self._active_runs:
                return False
            self._active_runs.add(key)
            return True

    def _release(self, key: str) -> None:
        with self._lock:
            self._active_runs.discard(key)

    # -- store helpers ------------------------------------------------------

    def _window_events(self, session: Session) -> list[Event | None]:
        list_window = getattr(self._store, "list_context_window_events", None)
        if callable(list_window):
            return list(list_window(session) or ())
        return context_window_events(list(self._store.list_events(session) or ()))

    def _append_lifecycle(
        self, session: Session, status: RunLifecycleStatus, cause: BaseException | None = None
    ) -> Event:
        event = lifecycle_event(session, status, "run", cause)
        self._store.append_event(session, event)
        return event

    # -- compaction ---------------------------------------------------------

    def _compact_if_needed(
        self,
        session: Session,
        model: Any,
        events: Sequence[Event | None],
        context_window_tokens: int,
        trigger: str,
        note: str = "",
        force: bool = False,
    ) -> Event | None:
        cfg = self._compaction
        window = agent_history_events(context_window_events(events))
        if not window:
            return None
        window_tokens = resolve_context_window_tokens(
            context_window_tokens, model, cfg.default_context_window_tokens
        )
        budget = window_tokens - cfg.reserve_output_tokens - cfg.safety_margin_tokens
        if budget < 2048:
            budget = int(window_tokens * 0.5)
        budget = max(budget, 1024)

        current = estimate_events_tokens(window)
        if not force and current / budget < cfg.watermark_ratio:
            return None

        to_summarize, tail = split_compaction_target(window, cfg.preserve_recent_turns)
        if not to_summarize:
            return None
        result = self._strategy.summarize(
            model,
            CompactionSummarizeInput(
                events=list(to_summarize),
                input_budget=budget,
                summary_chunk_tokens=cfg.summary_chunk_tokens,
                max_model_summary_retries=cfg.max_model_summary_retries,
            ),
        )
        summary = (result.text or "").strip()
        if not summary:
            return None

        details: dict[str, Any] = {
            "version": 1,
            "trigger": trigger,
            "note": (note or "").strip(),
            "summarized_to_event_id": to_summarize[-1].id,
            "summarized_events": result.summarized_events,
            "pre_tokens": current,
            "window_tokens": window_tokens,
            "watermark_ratio": cfg.watermark_ratio,
        }
        event = Event(
            id=new_event_id(),
            session_id=session.id,
            time=datetime.now(timezone.utc),
            message=Message(role=Role.SYSTEM, text=summary),
            meta={META_KIND: META_KIND_COMPACTION, META_COMPACTION: details},
        )
        details["post_tokens"] = estimate_events_tokens([event, *tail])
        self._store.append_event(session, event)
        return event

    # -- public API ---------------------------------------------------------

    def run(self, request: RunRequest) -> Iterator[Event]:
        """Run the agent on new user input, yielding every event produced.

        Errors end the run after a lifecycle event recording them is yielded.
        """
        if request.agent is None:
            raise ValueError("runtime: agent is nil")
        if request.model is None:
            raise ValueError("runtime: model is nil")
        if not request.app_name or not request.user_id or not request.session_id:
            raise ValueError(_IDS_REQUIRED)
        key = _lease_key(request.app_name, request.user_id, request.session_id)
        if not self._acquire(key):
            raise SessionBusyError(request.app_name, request.user_id, request.session_id)
        try:
            session = self._store.get_or_create(
                Session(app_name=request.app_name, user_id=request.user_id, id=request.session_id)
            )
            yield self._append_lifecycle(session, RunLifecycleStatus.RUNNING)
            try:
                yield from self._run_body(session, request)
            except Exception as exc:
                yield self._append_lifecycle(session, lifecycle_status_for_error(exc), exc)
                raise
            yield self._append_lifecycle(session, RunLifecycleStatus.COMPLETED)
        finally:
            self._release(key)

    def _run_body(self, session: Session, request: RunRequest) -> Iterator[Event]:
        for recovery in build_recovery_events(self._window_events(session)):
            recovery.session_id = session.id
            recovery.id = recovery.id or new_event_id()
            if recovery.time is None:
                recovery.time = datetime.now(timezone.utc)
            self._store.append_event(session, recovery)
            yield recovery

        user_event = Event(
            id=new_event_id(),
            session_id=session.id,
            time=datetime.now(timezone.utc),
            message=Message(role=Role.USER, text=request.input),
        )
        self._store.append_event(session, user_event)
        yield user_event

        all_events = self._window_events(session)
        if self._compaction.enabled:
            compaction = self._compact_if_needed(
                session, request.model, all_events, request.context_window_tokens, TRIGGER_AUTO
            )
            if compaction is not None:
                yield compaction
                all_events = self._window_events(session)

        tools = list(request.tools or ())
        _check_tools(tools)
        inv = InvocationContext(
            session=session,
            events=agent_history_events(context_window_events(all_events)),
            model=request.model,
            tools=tools,
            policies=list(request.policies or ()),
            lsp=request.lsp_broker,
        )
        languages = _merge_languages(
            _restore_activated_lsp(all_events, request.lsp_activation_tools),
            request.auto_activate_lsp,
        )
        for language in languages:
            inv.activate_lsp(ActivateRequest(language=language))

        for attempt in range(2):
            agent_error = yield from self._drive_agent(session, request, inv)
            if agent_error is None:
                return
            if attempt == 0 and self._compaction.enabled and is_context_overflow_error(agent_error):
                compaction = self._compact_if_needed(
                    session,
                    request.model,
                    self._window_events(session),
                    request.context_window_tokens,
                    TRIGGER_OVERFLOW_RECOVERY,
                    force=True,
                )
                if compaction is not None:
                    yield compaction
                inv.events = list(agent_history_events(context_window_events(self._window_events(session))))
                continue
            raise agent_error

    def _drive_agent(
        self, session: Session, request: RunRequest, inv: InvocationContext
    ) -> Iterator[Event]:
        """Yield the agent's events; return the error the agent raised, if any."""
        try:
            stream = iter(request.agent.run(inv))
        except Exception as exc:
            return exc
        while True:
            try:
                event = next(stream)
            except StopIteration:
                return None
            except Exception as exc:
                return exc
            if event is None:
                continue
            event.id = event.id or new_event_id()
            if event.time is None:
                event.time = datetime.now(timezone.utc)
            event.session_id = session.id
            if _should_persist(event, request.persist_partial_events):
                self._store.append_event(session, event)
                if not is_lifecycle_event(event):
                    inv.events.append(replace(event))
            yield event

    def compact(self, request: CompactRequest) -> Event | None:
        """Force a compaction of the session history without running the agent."""
        if request.model is None:
            raise ValueError("runtime: model is nil")
        if not request.app_name or not request.user_id or not request.session_id:
            raise ValueError(_IDS_REQUIRED)
        session = self._store.get_or_create(
            Session(app_name=request.app_name, user_id=request.user_id, id=request.session_id)
        )
        return self._compact_if_needed(
            session,
            request.model,
            self._window_events(session),
            request.context_window_tokens,
            TRIGGER_MANUAL,
            note=request.note,
            force=True,
        )

    def run_state(self, request: RunStateRequest) -> RunState:
        """Return the latest lifecycle state recorded for a session."""
        if not all((part or "").strip() for part in (request.app_name, request.user_id, request.session_id)):
            raise ValueError(_IDS_REQUIRED)
        session = Session(app_name=request.app_name, user_id=request.user_id, id=request.session_id)
        try:
            events = self._window_events(session)
        except SessionNotFoundError:
            return RunState()
        for event in reversed(events):
            info = lifecycle_from_event(event)
            if info is None:
                continue
            return RunState(
                has_lifecycle=True,
                status=info.status,
                phase=info.phase,
                error=info.error,
                error_code=info.error_code,
                event_id=event.id,
                updated_at=event.time,
            )
        return RunState()

    def context_usage(self, request: UsageRequest) -> ContextUsage:
        """Estimate the token usage of the session's current context window."""
        if not request.app_name or not request.user_id or not request.session_id:
            raise ValueError(_IDS_REQUIRED)
        session = Session(app_name=request.app_name, user_id=request.user_id, id=request.session_id)
        try:
            events = self._window_events(session)
        except SessionNotFoundError:
            events = []
        window = agent_history_events(context_window_events(events))
        cfg = self._compaction
        window_tokens = resolve_context_window_tokens(
            request.context_window_tokens, request.model, cfg.default_context_window_tokens
        )
        budget = window_tokens - cfg.reserve_output_tokens - cfg.safety_margin_tokens
        if budget < 1:
            budget = window_tokens
        budget = max(budget, 1)
        current = estimate_events_tokens(window)
        return ContextUsage(
            current_tokens=current,
            window_tokens=window_tokens,
            input_budget=budget,
            ratio=max(0.0, current / budget),
            event_count=len(window),
        )