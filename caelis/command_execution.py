"""Policy hook that routes shell commands to the sandbox or the host."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Protocol

from caelis.policy import (
    DECISION_META_FALLBACK_ON_COMMAND_NOT_FOUND,
    DECISION_ROUTE_HOST,
    DECISION_ROUTE_SANDBOX,
    Decision,
    DecisionEffect,
    NoopHook,
    ToolInput,
    decision_with_route,
)

DEFAULT_COMMAND_TOOL_NAME = "BASH"


class SandboxPermission(str, Enum):
    """Sandbox permission requested by a command call."""

    AUTO = "auto"
    REQUIRE_ESCALATED = "require_escalated"

    def __str__(self) -> str:
        return self.value


class ExecutionRoute(str, Enum):
    """Where a command runs."""

    SANDBOX = "sandbox"
    HOST = "host"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Escalation:
    """Why a command needs to leave the sandbox."""

    message: str = ""


@dataclass(frozen=True)
class RouteDecision:
    """Routing verdict for one command."""

    route: ExecutionRoute | str
    escalation: Escalation | None = None


class _RouteDecider(Protocol):
    def decide_route(self, command: str, permission: SandboxPermission) -> RouteDecision: ...


def parse_sandbox_permission(raw: Any) -> SandboxPermission:
    """Parse a sandbox_permissions argument; non-strings and blanks mean auto."""
    value = raw if isinstance(raw, str) else ""
    try:
        return SandboxPermission(value.strip().lower() or SandboxPermission.AUTO.value)
    except ValueError:
        raise ValueError(f"invalid sandbox_permissions {json.dumps(value)}") from None


def _route_of(raw: ExecutionRoute | str) -> ExecutionRoute | None:
    try:
        return ExecutionRoute(raw)
    except ValueError:
        return None


class CommandExecutionHook(NoopHook):
    """Decides sandbox or host execution for one command tool."""

    def __init__(self, runtime: _RouteDecider | None = None, tool_name: str = "") -> None:
        super().__init__("route_command_execution")
        self.runtime = runtime
        self.tool_name = (tool_name or "").strip() or DEFAULT_COMMAND_TOOL_NAME

    def before_tool(self, ctx: Any, tool_input: ToolInput) -> ToolInput:
        if self.runtime is None or (tool_input.call.name or "").strip() != self.tool_name:
            return tool_input
        args = tool_input.call.args or {}
        raw_command = args.get("command")
        command = raw_command.strip() if isinstance(raw_command, str) else ""
        if not command:
            return replace(tool_input, decision=Decision(effect=DecisionEffect.DENY, reason="command is required"))
        try:
            permission = parse_sandbox_permission(args.get("sandbox_permissions"))
        except ValueError as exc:
            return replace(tool_input, decision=Decision(effect=DecisionEffect.DENY, reason=str(exc)))

        verdict = self.runtime.decide_route(command, permission)
        route = _route_of(verdict.route)
        if route is ExecutionRoute.SANDBOX:
            decision = decision_with_route(Decision(effect=DecisionEffect.ALLOW), DECISION_ROUTE_SANDBOX)
            decision.metadata = {**(decision.metadata or {}), DECISION_META_FALLBACK_ON_COMMAND_NOT_FOUND: True}
        elif route is ExecutionRoute.HOST:
            if verdict.escalation is not None:
                decision = decision_with_route(
                    Decision(
                        effect=DecisionEffect.REQUIRE_APPROVAL,
                        reason=(verdict.escalation.message or "").strip(),
                    ),
                    DECISION_ROUTE_HOST,
                )
            else:
                decision = decision_with_route(Decision(effect=DecisionEffect.ALLOW), DECISION_ROUTE_HOST)
        else:
            decision = Decision(
                effect=DecisionEffect.DENY,
                reason=f"unsupported execution route {json.dumps(str(verdict.route))}",
            )
        return replace(tool_input, decision=decision)


def route_command_execution(runtime: _RouteDecider | None = None, tool_name: str = "") -> CommandExecutionHook:
    """Return a hook that routes calls of the command tool through the runtime."""
    return CommandExecutionHook(runtime, tool_name)