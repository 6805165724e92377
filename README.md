# caelis

A small, dependency-free kernel for building conversational agents that call
tools. You bring the agent, the model client and the tools; caelis keeps the
session history, applies policy hooks, assembles the system prompt, discovers
skills and compacts long histories.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `caelis.session` — `Session`, `Event`, `Message`, `ToolCall`,
  `ToolResponse`, `Role`, `ModelRequest`, `ModelResponse`, the abstract
  `Store`, `SessionNotFoundError` and `new_event_id()`. `Event.to_dict()` and
  `Event.from_dict()` convert events to and from their JSON form.
- `caelis.inmemory` — `InMemoryStore`, a thread-safe store kept in process
  memory. Appending to or listing a session that was never created raises
  `SessionNotFoundError`.
- `caelis.filestore` — `FileStore(root, layout)`, which writes each session's
  events to an `events.jsonl` file. `Layout.NAMESPACED` (the default) uses
  `root/app/user/session/`, `Layout.SESSION_ONLY` uses `root/session/`.
  Session keys containing path separators, `.` or `..` are rejected with
  `ValueError`. `snapshot_state()` reads an optional `state.json`.
- `caelis.errors` — `ErrorCode`, `CodedError`, `ApprovalRequiredError`,
  `ApprovalAbortedError`, `SessionBusyError`, and the helpers
  `error_code_of`, `is_error_code` and `is_session_busy`, which follow the
  exception's `__cause__`/`__context__` chain.
- `caelis.policy` — the `Hook` interface (`before_model`, `before_tool`,
  `after_tool`, `before_output`), `NoopHook`, `default_allow()`, the chain
  runners `apply_before_model`, `apply_before_tool`, `apply_after_tool` and
  `apply_before_output`, and decisions: `Decision`, `DecisionEffect`,
  `normalize_decision` (unknown effects become allow),
  `decision_with_route`, `decision_route_from_metadata`. The
  `with_tool_decision(decision)` context manager makes a decision visible to
  `tool_decision_from_context()` inside the block.
- `caelis.command_execution` — `route_command_execution(runtime, tool_name)`
  returns a hook that, for calls of the command tool (default `BASH`), asks
  `runtime.decide_route(command, permission)` for a `RouteDecision` and turns
  it into an allow, require-approval or deny decision with a `sandbox` or
  `host` route hint. `parse_sandbox_permission` accepts `auto` (or blank) and
  `require_escalated`.
- `caelis.read_before_write` — `require_read_before_write(read_tool_name)`
  returns a hook that raises `PolicyError` when a tool whose `capability`
  contains `"file_write"` targets a path that no earlier `READ` tool response
  in `ctx.history()` covered.
- `caelis.plugin` — `Registry` of named `ToolProvider` and `PolicyProvider`
  objects: register (duplicates raise `PluginError`), look up, resolve into
  tools and hooks, list names, and collect `config_schema()` dicts.
- `caelis.prompt` — `assemble(AssembleSpec(...))` builds the system prompt;
  `defaults()` returns `DefaultTemplates` for seeding prompt files.
- `caelis.skills` — `discover_meta(dirs)` walks directories for `SKILL.md`
  files and returns a `DiscoverResult` of `SkillMeta` entries and warnings;
  `parse_front_matter` and `build_meta_prompt` are exposed too.
- `caelis.invocation` — `InvocationContext`, handed to the agent: history,
  tools, policies and LSP toolset activation through a broker object.
- `caelis.compaction` — `CompactionConfig`, the `CompactionStrategy`
  interface, `MapReduceCompactionStrategy`, and token-estimation and
  windowing helpers.
- `caelis.contract` — `RunLifecycleStatus`, `lifecycle_event`,
  `lifecycle_from_event` and related helpers.
- `caelis.recovery` — `build_recovery_events(events)` produces synthetic
  "interrupted" tool responses for tool calls left without one.
- `caelis.runtime` — `Runtime`, which ties everything together.

## Running an agent

An agent is any object with `run(ctx)` returning an iterable of `Event`s. A
model is any object with `generate(request)` returning an iterable of
`ModelResponse`s; it is called only to summarize history during compaction.
It may also define `context_window_tokens()`.

```python
from caelis.inmemory import InMemoryStore
from caelis.runtime import Runtime, RunRequest, RunStateRequest
from caelis.session import Event, Message, ModelResponse, Role


class EchoAgent:
    def run(self, ctx):
        last = ctx.history()[-1]
        yield Event(message=Message(role=Role.ASSISTANT, text=last.message.text))


class SummaryModel:
    def generate(self, request):
        yield ModelResponse(message=Message(role=Role.ASSISTANT, text="summary"))


runtime = Runtime(InMemoryStore())
for event in runtime.run(RunRequest(
    app_name="app", user_id="u", session_id="s",
    input="hello", agent=EchoAgent(), model=SummaryModel(),
)):
    print(event.message.role, event.message.text, event.meta)

state = runtime.run_state(RunStateRequest(app_name="app", user_id="u", session_id="s"))
print(state.status)  # completed
```

A run yields a `running` lifecycle event, any recovery events, the user
event, an automatic compaction event when the history passes the watermark,
the agent's events, and a final lifecycle event. Events marked
`meta={"partial": True}` are yielded but not stored unless
`persist_partial_events` is set.

When the agent raises, the runtime stores and yields a lifecycle event and
then re-raises: `ApprovalRequiredError` gives `waiting_approval`,
`ApprovalAbortedError` or a cancellation gives `interrupted`, anything else
`failed`. If the error looks like a context overflow, the runtime first
forces a compaction and retries the agent once. Starting a second run on a
session that is already running raises `SessionBusyError`.

`Runtime.compact(CompactRequest(...))` forces a compaction,
`Runtime.run_state(...)` returns the latest lifecycle state, and
`Runtime.context_usage(UsageRequest(...))` estimates token usage (about one
token per four characters plus ten per event).

## Prompt assembly

```python
from caelis.prompt import AssembleSpec, assemble

result = assemble(AssembleSpec(
    identity_prompt="# Identity\n\nBe precise.",
    user_prompt="Prefer short answers.",
    enable_lsp_routing_policy=True,
))
print(result.prompt)
```

Sections are rendered in the order identity, global instructions, workspace
instructions, LSP routing policy, runtime context, user custom instructions
(with `base_prompt` appended under "Session Overrides"), skills metadata,
under a header stating that higher sections override lower ones.

## What it does not do

- It ships no model client, no agent implementation and no tools. The
  runtime does not add any built-in tools; it only checks that the tools it is
  given have unique, non-empty `name`s.
- It does not execute commands. `route_command_execution` only decides a
  route, using an object you supply that implements `decide_route`.
- It has no LSP servers. `InvocationContext.activate_lsp` needs a broker you
  supply with `resolve(request)` returning a `ToolSet` and
  `available_languages()`.
- It has no command-line program.