"""Policy hooks that inspect and rewrite model and tool traffic."""

from __future__ import annotations

import abc
import contextvars
from collections.abc import Callable, Collection, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, TypeVar

from caelis.session import Message, ToolCall

DECISION_META_EXECUTION_ROUTE = "execution_route"
DECISION_META_FALLBACK_ON_COMMAND_NOT_FOUND = "fallback_on_command_not_found"
DECISION_ROUTE_SANDBOX = "sandbox"
DECISION_ROUTE_HOST = "host"

_T = TypeVar("_T")


class DecisionEffect(str, Enum):
    """Outcome of a policy decision."""

    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"

    def __str__(self) -> str:
        return self.value


@dataclass
class Decision:
    """Policy decision passed along the hook chain."""

    effect: DecisionEffect | str = ""
    reason: str = ""
    metadata: dict[str, Any] | None = None


@dataclass
class ModelInput:
    """Request envelope seen by before_model hooks."""

    messages: list[Message] = field(default_factory=list)
    tools: list[Any] = field(default_factory=list)


@dataclass
class ToolInput:
    """Request envelope seen by before_tool hooks.

    ``capability`` holds the names of the operations the tool performs.
    """

    call: ToolCall = field(default_factory=ToolCall)
    capability: Collection[str] = frozenset()
    decision: Decision = field(default_factory=Decision)


@dataclass
class ToolOutput:
    """Response envelope seen by after_tool hooks."""

    call: ToolCall = field(default_factory=ToolCall)
    capability: Collection[str] = frozenset()
    decision: Decision = field(default_factory=Decision)
    result: dict[str, Any] | None = None
    error: BaseException | None = None


@dataclass
class Output:
    """Envelope seen before the final response is emitted."""

    message: Message = field(default_factory=Message)


class PolicyError(Exception):
    """A policy hook rejected an operation."""


class Hook(abc.ABC):
    """Policy interception points."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Name of the hook."""

    @abc.abstractmethod
    def before_model(self, ctx: Any, model_input: ModelInput) -> ModelInput:
        """Inspect or rewrite a model request."""

    @abc.abstractmethod
    def before_tool(self, ctx: Any, tool_input: ToolInput) -> ToolInput:
        """Inspect or rewrite a tool call."""

    @abc.abstractmethod
    def after_tool(self, ctx: Any, tool_output: ToolOutput) -> ToolOutput:
        """Inspect or rewrite a tool result."""

    @abc.abstractmethod
    def before_output(self, ctx: Any, output: Output) -> Output:
        """Inspect or rewrite the final output."""


class NoopHook(Hook):
    """Hook that passes everything through unchanged."""

    def __init__(self, hook_name: str = "") -> None:
        self.hook_name = hook_name

    @property
    def name(self) -> str:
        return self.hook_name or "noop"

    def before_model(self, ctx: Any, model_input: ModelInput) -> ModelInput:
        return model_input

    def before_tool(self, ctx: Any, tool_input: ToolInput) -> ToolInput:
        return tool_input

    def after_tool(self, ctx: Any, tool_output: ToolOutput) -> ToolOutput:
        return tool_output

    def before_output(self, ctx: Any, output: Output) -> Output:
        return output

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _effect_text(effect: Any) -> str:
    if isinstance(effect, Enum):
        return str(effect.value)
    return "" if effect is None else str(effect)


def normalize_decision(decision: Decision) -> Decision:
    """Return a normalised copy of a decision; unknown effects become allow."""
    text = _effect_text(decision.effect).strip().lower()
    try:
        effect = DecisionEffect(text)
    except ValueError:
        effect = DecisionEffect.ALLOW
    return replace(decision, effect=effect, reason=(decision.reason or "").strip())


def decision_with_route(decision: Decision, route: str) -> Decision:
    """Return a normalised copy of a decision carrying an execution route hint."""
    decision = normalize_decision(decision)
    route = (route or "").strip().lower()
    if not route:
        return decision
    metadata = dict(decision.metadata or {})
    metadata[DECISION_META_EXECUTION_ROUTE] = route
    return replace(decision, metadata=metadata)


def decision_route_from_metadata(decision: Decision) -> str | None:
    """Return the execution route hint of a decision, or None."""
    if not decision.metadata:
        return None
    raw = decision.metadata.get(DECISION_META_EXECUTION_ROUTE)
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    return value or None


_TOOL_DECISION: contextvars.ContextVar[Decision | None] = contextvars.ContextVar(
    "caelis_tool_decision", default=None
)


@contextmanager
def with_tool_decision(decision: Decision) -> Iterator[Decision]:
    """Make a decision visible to tool execution inside the block."""
    normalized = normalize_decision(decision)
    token = _TOOL_DECISION.set(normalized)
    try:
        yield normalized
    finally:
        _TOOL_DECISION.reset(token)


def tool_decision_from_context() -> Decision | None:
    """Return the decision attached by an enclosing with_tool_decision block."""
    decision = _TOOL_DECISION.get()
    return None if decision is None else normalize_decision(decision)


def _run_chain(hooks: Iterable[Hook | None] | None, value: _T, step: Callable[[Hook, _T], _T]) -> _T:
    for hook in hooks or ():
        if hook is None:
            continue
        value = step(hook, value)
    return value


def apply_before_model(ctx: Any, hooks: Iterable[Hook | None] | None, model_input: ModelInput) -> ModelInput:
    """Run before_model of every hook in order."""
    return _run_chain(hooks, model_input, lambda hook, value: hook.before_model(ctx, value))


def apply_before_tool(ctx: Any, hooks: Iterable[Hook | None] | None, tool_input: ToolInput) -> ToolInput:
    """Run before_tool of every hook in order."""
    return _run_chain(hooks, tool_input, lambda hook, value: hook.before_tool(ctx, value))


def apply_after_tool(ctx: Any, hooks: Iterable[Hook | None] | None, tool_output: ToolOutput) -> ToolOutput:
    """Run after_tool of every hook in order."""
    return _run_chain(hooks, tool_output, lambda hook, value: hook.after_tool(ctx, value))


def apply_before_output(ctx: Any, hooks: Iterable[Hook | None] | None, output: Output) -> Output:
    """Run before_output of every hook in order."""
    return _run_chain(hooks, output, lambda hook, value: hook.before_output(ctx, value))


def default_allow() -> Hook:
    """Return the default pass-through policy hook."""
    return NoopHook("default_allow")