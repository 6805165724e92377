"""Registry of named tool and policy providers."""

from __future__ import annotations

import abc
import json
import threading
from collections.abc import Iterable
from typing import Any

from caelis.policy import Hook


class ToolProvider(abc.ABC):
    """Supplies tools under a provider name.

    A provider may also define ``config_schema()`` returning a dict.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider name."""

    @abc.abstractmethod
    def tools(self) -> list[Any]:
        """Return the provider's tools."""


class PolicyProvider(abc.ABC):
    """Supplies policy hooks under a provider name.

    A provider may also define ``config_schema()`` returning a dict.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider name."""

    @abc.abstractmethod
    def policies(self) -> list[Hook]:
        """Return the provider's policy hooks."""


class PluginError(ValueError):
    """Invalid, duplicate or unknown provider."""


def _schema_of(provider: Any) -> dict[str, Any] | None:
    config_schema = getattr(provider, "config_schema", None)
    if not callable(config_schema):
        return None
    schema = config_schema()
    return dict(schema) if schema else None


class Registry:
    """Thread-safe container of registered providers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tool_providers: dict[str, ToolProvider] = {}
        self._policy_providers: dict[str, PolicyProvider] = {}

    @staticmethod
    def _register(table: dict[str, Any], provider: Any, kind: str) -> None:
        if provider is None or not provider.name:
            raise PluginError(f"plugin: invalid {kind} provider")
        if provider.name in table:
            raise PluginError(f"plugin: duplicate {kind} provider {json.dumps(provider.name)}")
        table[provider.name] = provider

    def register_tool_provider(self, provider: ToolProvider) -> None:
        """Register a tool provider; names must be unique."""
        with self._lock:
            self._register(self._tool_providers, provider, "tool")

    def register_policy_provider(self, provider: PolicyProvider) -> None:
        """Register a policy provider; names must be unique."""
        with self._lock:
            self._register(self._policy_providers, provider, "policy")

    @staticmethod
    def _lookup(table: dict[str, Any], names: Iterable[str], kind: str) -> list[Any]:
        out = []
        for name in names:
            if name not in table:
                raise PluginError(f"plugin: unknown {kind} provider {json.dumps(name)}")
            out.append(table[name])
        return out

    def tool_providers(self, names: Iterable[str]) -> list[ToolProvider]:
        """Return the named tool providers in the given order."""
        with self._lock:
            return self._lookup(self._tool_providers, names, "tool")

    def policy_providers(self, names: Iterable[str]) -> list[PolicyProvider]:
        """Return the named policy providers in the given order."""
        with self._lock:
            return self._lookup(self._policy_providers, names, "policy")

    def resolve_tools(self, names: Iterable[str]) -> list[Any]:
        """Collect the tools of the named providers."""
        return [one for provider in self.tool_providers(names) for one in provider.tools() or ()]

    def resolve_policies(self, names: Iterable[str]) -> list[Hook]:
        """Collect the policy hooks of the named providers."""
        return [one for provider in self.policy_providers(names) for one in provider.policies() or ()]

    def list_tool_providers(self) -> list[str]:
        """Return the sorted names of registered tool providers."""
        with self._lock:
            return sorted(self._tool_providers)

    def list_policy_providers(self) -> list[str]:
        """Return the sorted names of registered policy providers."""
        with self._lock:
            return sorted(self._policy_providers)

    @staticmethod
    def _schemas(table: dict[str, Any]) -> dict[str, dict[str, Any]]:
        out = {}
        for name, provider in table.items():
            schema = _schema_of(provider)
            if schema:
                out[name] = schema
        return out

    def tool_provider_schemas(self) -> dict[str, dict[str, Any]]:
        """Return copies of the non-empty config schemas of tool providers."""
        with self._lock:
            return self._schemas(self._tool_providers)

    def policy_provider_schemas(self) -> dict[str, dict[str, Any]]:
        """Return copies of the non-empty config schemas of policy providers."""
        with self._lock:
            return self._schemas(self._policy_providers)