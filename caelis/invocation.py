"""Per-run context handed to agents: history, tools, policies and LSP toolsets."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from caelis.policy import Hook
from caelis.session import Event, Session


@dataclass
class ActivateRequest:
    """Request to activate the LSP toolset of one language."""

    language: str = ""
    capabilities: list[str] = field(default_factory=list)
    workspace: str = ""


@dataclass
class ActivateResult:
    """Outcome of an LSP toolset activation."""

    language: str = ""
    toolset_id: str = ""
    activated: bool = False
    added_tools: list[str] = field(default_factory=list)
    active_toolsets: list[str] = field(default_factory=list)


@dataclass
class ToolSet:
    """A named group of tools for one language."""

    id: str = ""
    language: str = ""
    tools: list[Any] = field(default_factory=list)


class _LSPBroker(Protocol):
    def resolve(self, request: ActivateRequest) -> ToolSet: ...

    def available_languages(self) -> list[str]: ...


def _tool_name(tool: Any) -> str:
    name = getattr(tool, "name", "")
    return name if isinstance(name, str) else ""


class InvocationContext:
    """State shared with an agent during one run.

    ``events`` is the agent-visible history and may be replaced or extended
    by the runtime while the run progresses.
    """

    def __init__(
        self,
        session: Session,
        events: Iterable[Event | None] | None = None,
        model: Any = None,
        tools: Iterable[Any] | None = None,
        policies: Iterable[Hook] | None = None,
        lsp: _LSPBroker | None = None,
    ) -> None:
        self.session = session
        self.events: list[Event | None] = list(events or ())
        self.model = model
        self.lsp = lsp
        self._tools: list[Any] = list(tools or ())
        self._tool_map: dict[str, Any] = {}
        for one in self._tools:
            self._tool_map.setdefault(_tool_name(one), one)
        self._policies: list[Hook] = list(policies or ())
        self._active: set[str] = set()

    def history(self) -> list[Event]:
        """Return shallow copies of the history events, skipping empty slots."""
        return [replace(event) for event in self.events if event is not None]

    def tools(self) -> list[Any]:
        """Return the available tools."""
        return list(self._tools)

    def tool(self, name: str) -> Any | None:
        """Return the tool with the given name, or None."""
        return self._tool_map.get(name)

    def policies(self) -> list[Hook]:
        """Return the policy hooks of this run."""
        return list(self._policies)

    def activate_lsp(self, request: ActivateRequest) -> ActivateResult:
        """Activate the LSP toolset of a language and add its tools."""
        language = (request.language or "").strip().lower()
        if not language:
            raise ValueError("runtime: lsp language is required")
        toolset_id = "lsp:" + language
        if toolset_id in self._active:
            return ActivateResult(
                language=language,
                toolset_id=toolset_id,
                activated=False,
                added_tools=[],
                active_toolsets=self.activated_toolsets(),
            )
        if self.lsp is None:
            raise RuntimeError("runtime: lsp broker is not configured")

        resolved = self.lsp.resolve(
            ActivateRequest(
                language=language,
                capabilities=list(request.capabilities or ()),
                workspace=request.workspace,
            )
        )
        added: list[str] = []
        for one in resolved.tools or ():
            name = _tool_name(one) if one is not None else ""
            if not name.strip() or name in self._tool_map:
                continue
            self._tools.append(one)
            self._tool_map[name] = one
            added.append(name)
        self._active.add(resolved.id)
        return ActivateResult(
            language=resolved.language,
            toolset_id=resolved.id,
            activated=True,
            added_tools=added,
            active_toolsets=self.activated_toolsets(),
        )

    def activated_toolsets(self) -> list[str]:
        """Return the sorted ids of activated toolsets."""
        return sorted(self._active)

    def available_lsp(self) -> list[str]:
        """Return the languages the LSP broker can serve."""
        if self.lsp is None:
            return []
        return list(self.lsp.available_languages())