from dataclasses import dataclass, field

import pytest

from caelis.compaction import CompactionConfig, CompactionStrategy, CompactionSummarizeResult
from caelis.contract import RunLifecycleStatus
from caelis.errors import (
    ApprovalAbortedError,
    ApprovalRequiredError,
    ErrorCode,
    SessionBusyError,
    is_error_code,
    is_session_busy,
)
from caelis.inmemory import InMemoryStore
from caelis.invocation import ToolSet
from caelis.runtime import (
    CompactRequest,
    RunRequest,
    RunStateRequest,
    Runtime,
    UsageRequest,
)
from caelis.session import Event, Message, ModelResponse, Role, Session, ToolCall, ToolResponse


class _TestLLM:
    def __init__(self, name="fake"):
        self.name = name

    def context_window_tokens(self):
        return 64000

    def generate(self, request):
        yield ModelResponse(message=Message(role=Role.ASSISTANT, text="ok"))


@dataclass
class _Tool:
    name: str


class _FixedAgent:
    def run(self, ctx):
        yield Event(message=Message(role=Role.ASSISTANT, text="ok"))


class _RaisingAgent:
    def __init__(self, error):
        self.error = error

    def run(self, ctx):
        raise self.error
        yield  # pragma: no cover


@dataclass
class _ToolRecordingAgent:
    tool_name: str
    found: list = field(default_factory=list)

    def run(self, ctx):
        self.found.append(ctx.tool(self.tool_name) is not None)
        yield Event(message=Message(role=Role.ASSISTANT, text="ok"))


class _Broker:
    def resolve(self, request):
        return ToolSet(id="lsp:" + request.language, language=request.language, tools=[_Tool("LSP_DIAGNOSTICS")])

    def available_languages(self):
        return ["go"]


class _CaptureStrategy(CompactionStrategy):
    def __init__(self, text):
        self.text = text
        self.calls = 0
        self.last = None

    def summarize(self, llm, summarize_input):
        self.calls += 1
        self.last = summarize_input
        return CompactionSummarizeResult(text=self.text, summarized_events=len(summarize_input.events))


def _statuses(events):
    out = []
    for ev in events:
        if ev is None or not ev.meta or ev.meta.get("kind") != "lifecycle":
            continue
        status = ev.meta.get("lifecycle", {}).get("status")
        if status:
            out.append(status)
    return out


def _request(session_id, agent, **kwargs):
    return RunRequest(
        app_name="app", user_id="u", session_id=session_id, input="hello", agent=agent, model=_TestLLM(), **kwargs
    )


def _run_expecting(rt, request, error_type):
    events = []
    with pytest.raises(error_type) as info:
        for ev in rt.run(request):
            events.append(ev)
    return events, info.value


def test_run_yields_and_persists_lifecycle_user_and_assistant():
    store = InMemoryStore()
    rt = Runtime(store)
    events = list(rt.run(_request("s", _FixedAgent())))
    assert len(events) == 4
    listed = store.list_events(Session(app_name="app", user_id="u", id="s"))
    assert len(listed) == 4
    assert _statuses(events) == ["running", "completed"]
    assert events[1].message.role == Role.USER
    assert events[2].message.text == "ok"
    assert events[2].session_id == "s"


def test_run_approval_required_lifecycle():
    rt = Runtime(InMemoryStore())
    events, err = _run_expecting(
        rt, _request("s-approval-required", _RaisingAgent(ApprovalRequiredError("host escalation required"))),
        ApprovalRequiredError,
    )
    assert is_error_code(err, ErrorCode.APPROVAL_REQUIRED)
    assert _statuses(events) == ["running", "waiting_approval"]


def test_run_approval_aborted_lifecycle():
    rt = Runtime(InMemoryStore())
    events, err = _run_expecting(
        rt, _request("s-approval-aborted", _RaisingAgent(ApprovalAbortedError("denied"))), ApprovalAbortedError
    )
    assert is_error_code(err, ErrorCode.APPROVAL_ABORTED)
    assert _statuses(events) == ["running", "interrupted"]


def test_run_setup_failure_appends_failed_lifecycle():
    rt = Runtime(InMemoryStore())
    events, _ = _run_expecting(
        rt, _request("s-setup-failed", _FixedAgent(), tools=[_Tool("READ"), _Tool("READ")]), ValueError
    )
    assert _statuses(events) == ["running", "failed"]


def test_run_restores_activated_lsp_tools_from_history():
    store = InMemoryStore()
    sess = Session(app_name="app", user_id="u", id="s-lsp")
    store.get_or_create(sess)
    store.append_event(
        sess,
        Event(
            id="activate",
            message=Message(
                role=Role.TOOL,
                tool_response=ToolResponse(
                    id="call_activate_1",
                    name="LSP_ACTIVATE",
                    result={"language": "go", "toolset_id": "lsp:go", "activated": True},
                ),
            ),
        ),
    )
    agent = _ToolRecordingAgent("LSP_DIAGNOSTICS")
    rt = Runtime(store)
    events = list(rt.run(_request("s-lsp", agent, lsp_broker=_Broker(), lsp_activation_tools=["LSP_ACTIVATE"])))
    assert agent.found == [True]
    assert _statuses(events) == ["running", "completed"]


def test_run_auto_activates_lsp_tools():
    agent = _ToolRecordingAgent("LSP_DIAGNOSTICS")
    rt = Runtime(InMemoryStore())
    list(rt.run(_request("s-lsp-auto", agent, lsp_broker=_Broker(), auto_activate_lsp=["go"])))
    assert agent.found == [True]


def test_run_without_lsp_broker_fails_activation():
    rt = Runtime(InMemoryStore())
    events, _ = _run_expecting(rt, _request("s-no-broker", _FixedAgent(), auto_activate_lsp=["go"]), RuntimeError)
    assert _statuses(events) == ["running", "failed"]


def test_run_session_single_flight():
    rt = Runtime(InMemoryStore())
    first = rt.run(_request("s-single-flight", _FixedAgent()))
    for ev in first:
        if ev.message.role == Role.ASSISTANT:
            break
    with pytest.raises(SessionBusyError) as info:
        list(rt.run(_request("s-single-flight", _FixedAgent())))
    assert is_session_busy(info.value)
    rest = list(first)
    assert _statuses(rest) == ["completed"]
    again = list(rt.run(_request("s-single-flight", _FixedAgent())))
    assert _statuses(again) == ["running", "completed"]


def test_run_validates_request():
    rt = Runtime(InMemoryStore())
    with pytest.raises(ValueError):
        list(rt.run(RunRequest(app_name="app", user_id="u", session_id="s", model=_TestLLM())))
    with pytest.raises(ValueError):
        list(rt.run(RunRequest(app_name="app", user_id="u", session_id="", agent=_FixedAgent(), model=_TestLLM())))


def test_runtime_requires_store():
    with pytest.raises(ValueError):
        Runtime(None)


def test_run_recovers_dangling_tool_call():
    store = InMemoryStore()
    sess = Session(app_name="app", user_id="u", id="s-recover")
    store.get_or_create(sess)
    store.append_event(
        sess,
        Event(
            id="assistant_1",
            message=Message(
                role=Role.ASSISTANT,
                tool_calls=[ToolCall(id="call_1", name="READ", args={"path": "/tmp/a.txt"})],
            ),
        ),
    )
    events = list(Runtime(store).run(_request("s-recover", _FixedAgent())))
    recovery = events[1]
    assert recovery.message.role == Role.TOOL
    assert recovery.message.tool_response.id == "call_1"
    assert recovery.session_id == "s-recover"
    assert recovery.meta["kind"] == "recovery"


def test_run_skips_persisting_partial_events():
    class PartialAgent:
        def run(self, ctx):
            yield Event(message=Message(role=Role.ASSISTANT, text="o"), meta={"partial": True})
            yield Event(message=Message(role=Role.ASSISTANT, text="ok"))

    store = InMemoryStore()
    events = list(Runtime(store).run(_request("s-partial", PartialAgent())))
    assert len(events) == 5
    listed = store.list_events(Session(app_name="app", user_id="u", id="s-partial"))
    assert [ev.message.text for ev in listed if ev.message.role == Role.ASSISTANT] == ["ok"]


def test_run_retries_once_after_context_overflow():
    class OverflowOnceAgent:
        def __init__(self):
            self.calls = 0

        def run(self, ctx):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("context length exceeded")
            yield Event(message=Message(role=Role.ASSISTANT, text="ok"))

    agent = OverflowOnceAgent()
    events = list(Runtime(InMemoryStore()).run(_request("s-overflow", agent)))
    assert agent.calls == 2
    assert _statuses(events) == ["running", "completed"]


def test_run_fails_after_repeated_context_overflow():
    rt = Runtime(InMemoryStore())
    events, err = _run_expecting(
        rt, _request("s-overflow-twice", _RaisingAgent(RuntimeError("too many tokens"))), RuntimeError
    )
    assert "too many tokens" in str(err)
    assert _statuses(events) == ["running", "failed"]


def test_context_usage_after_run():
    rt = Runtime(InMemoryStore())
    list(rt.run(_request("s-usage", _FixedAgent())))
    usage = rt.context_usage(UsageRequest(app_name="app", user_id="u", session_id="s-usage", model=_TestLLM()))
    assert usage.window_tokens == 64000
    assert usage.input_budget == 64000 - 4096 - 1024
    assert usage.current_tokens > 0
    assert usage.ratio > 0
    assert usage.event_count == 2


def test_context_usage_missing_session_is_empty():
    rt = Runtime(InMemoryStore())
    usage = rt.context_usage(UsageRequest(app_name="app", user_id="u", session_id="missing", model=_TestLLM()))
    assert usage.current_tokens == 0
    assert usage.event_count == 0


def test_run_state_missing_session_has_no_lifecycle():
    rt = Runtime(InMemoryStore())
    state = rt.run_state(RunStateRequest(app_name="app", user_id="u", session_id="missing"))
    assert state.has_lifecycle is False


def test_run_state_completed():
    rt = Runtime(InMemoryStore())
    list(rt.run(_request("s-run-state-completed", _FixedAgent())))
    state = rt.run_state(RunStateRequest(app_name="app", user_id="u", session_id="s-run-state-completed"))
    assert state.has_lifecycle is True
    assert state.status == RunLifecycleStatus.COMPLETED
    assert state.phase == "run"


def test_run_state_waiting_approval():
    rt = Runtime(InMemoryStore())
    _run_expecting(
        rt, _request("s-run-state-approval", _RaisingAgent(ApprovalRequiredError("x"))), ApprovalRequiredError
    )
    state = rt.run_state(RunStateRequest(app_name="app", user_id="u", session_id="s-run-state-approval"))
    assert state.has_lifecycle is True
    assert state.status == RunLifecycleStatus.WAITING_APPROVAL
    assert state.error_code == ErrorCode.APPROVAL_REQUIRED


def test_run_state_without_lifecycle_events():
    store = InMemoryStore()
    sess = Session(app_name="app", user_id="u", id="s-run-state-no-lifecycle")
    store.get_or_create(sess)
    store.append_event(sess, Event(id="ev_user", message=Message(role=Role.USER, text="hello")))
    state = Runtime(store).run_state(
        RunStateRequest(app_name="app", user_id="u", session_id="s-run-state-no-lifecycle")
    )
    assert state.has_lifecycle is False


def test_run_state_requires_ids():
    with pytest.raises(ValueError):
        Runtime(InMemoryStore()).run_state(RunStateRequest(app_name="app", user_id=" ", session_id="s"))


def test_compact_uses_window_events_and_custom_strategy():
    store = InMemoryStore()
    sess = Session(app_name="app", user_id="u", id="s-compact-window")
    store.get_or_create(sess)
    for ev in (
        Event(id="old_user", message=Message(role=Role.USER, text="old user")),
        Event(id="old_assistant", message=Message(role=Role.ASSISTANT, text="old assistant")),
        Event(id="compact_1", message=Message(role=Role.SYSTEM, text="summary 1"), meta={"kind": "compaction"}),
        Event(id="new_user_1", message=Message(role=Role.USER, text="new user 1")),
        Event(id="new_assistant_1", message=Message(role=Role.ASSISTANT, text="new assistant 1")),
        Event(id="new_user_2", message=Message(role=Role.USER, text="new user 2")),
    ):
        store.append_event(sess, ev)

    strategy = _CaptureStrategy("custom summary")
    rt = Runtime(store, CompactionConfig(preserve_recent_turns=1, strategy=strategy))
    ev = rt.compact(CompactRequest(app_name="app", user_id="u", session_id="s-compact-window", model=_TestLLM()))
    assert ev is not None
    assert ev.message.text == "custom summary"
    assert strategy.calls == 1
    ids = [one.id for one in strategy.last.events]
    assert ids == ["compact_1", "new_user_1", "new_assistant_1"]
    assert ev.meta["compaction"]["summarized_to_event_id"] == "new_assistant_1"
    assert ev.meta["compaction"]["trigger"] == "manual"
    window = store.list_context_window_events(sess)
    assert window[0].id == ev.id


def test_compact_requires_model():
    with pytest.raises(ValueError):
        Runtime(InMemoryStore()).compact(CompactRequest(app_name="app", user_id="u", session_id="s"))