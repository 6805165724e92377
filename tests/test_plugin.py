import pytest

from caelis.plugin import PluginError, PolicyProvider, Registry, ToolProvider
from caelis.policy import default_allow


class TP(ToolProvider):
    @property
    def name(self):
        return "t1"

    def tools(self):
        return []


class PP(PolicyProvider):
    @property
    def name(self):
        return "p1"

    def policies(self):
        return [default_allow()]


class SchemaToolProvider(ToolProvider):
    @property
    def name(self):
        return "schema_tool"

    def tools(self):
        return []

    def config_schema(self):
        return {"type": "object", "properties": {"enabled": {"type": "boolean"}}}


class NamedToolProvider(ToolProvider):
    def __init__(self, provider_name, items, schema=None):
        self._name = provider_name
        self._items = items
        self._schema = schema

    @property
    def name(self):
        return self._name

    def tools(self):
        return list(self._items)

    def config_schema(self):
        return self._schema


class FailingPolicyProvider(PolicyProvider):
    @property
    def name(self):
        return "broken"

    def policies(self):
        raise RuntimeError("cannot build policies")


def test_register_and_resolve():
    registry = Registry()
    registry.register_tool_provider(TP())
    registry.register_policy_provider(PP())
    assert registry.resolve_tools(["t1"]) == []
    hooks = registry.resolve_policies(["p1"])
    assert len(hooks) == 1
    assert hooks[0].name == "default_allow"


def test_duplicate_registration():
    registry = Registry()
    registry.register_tool_provider(TP())
    with pytest.raises(PluginError, match='duplicate tool provider "t1"'):
        registry.register_tool_provider(TP())


def test_provider_lookup_and_schema():
    registry = Registry()
    registry.register_tool_provider(SchemaToolProvider())
    providers = registry.tool_providers(["schema_tool"])
    assert len(providers) == 1
    schemas = registry.tool_provider_schemas()
    assert schemas["schema_tool"]["type"] == "object"


def test_schema_is_copied_and_empty_schemas_skipped():
    registry = Registry()
    registry.register_tool_provider(NamedToolProvider("a", [], schema={"type": "object"}))
    registry.register_tool_provider(NamedToolProvider("b", [], schema={}))
    registry.register_tool_provider(TP())
    schemas = registry.tool_provider_schemas()
    assert list(schemas) == ["a"]
    schemas["a"]["type"] = "changed"
    assert registry.tool_provider_schemas()["a"] == {"type": "object"}
    assert registry.policy_provider_schemas() == {}


def test_unknown_provider():
    registry = Registry()
    with pytest.raises(PluginError, match='unknown tool provider "missing"'):
        registry.resolve_tools(["missing"])
    with pytest.raises(PluginError, match='unknown policy provider "missing"'):
        registry.policy_providers(["missing"])


def test_invalid_provider():
    registry = Registry()
    with pytest.raises(PluginError, match="invalid tool provider"):
        registry.register_tool_provider(None)
    with pytest.raises(PluginError, match="invalid tool provider"):
        registry.register_tool_provider(NamedToolProvider("", []))


def test_resolve_keeps_requested_order_and_lists_sorted():
    registry = Registry()
    registry.register_tool_provider(NamedToolProvider("zeta", ["z1", "z2"]))
    registry.register_tool_provider(NamedToolProvider("alpha", ["a1"]))
    assert registry.resolve_tools(["zeta", "alpha"]) == ["z1", "z2", "a1"]
    assert registry.list_tool_providers() == ["alpha", "zeta"]
    registry.register_policy_provider(PP())
    assert registry.list_policy_providers() == ["p1"]


def test_provider_errors_propagate():
    registry = Registry()
    registry.register_policy_provider(FailingPolicyProvider())
    with pytest.raises(RuntimeError, match="cannot build policies"):
        registry.resolve_policies(["broken"])