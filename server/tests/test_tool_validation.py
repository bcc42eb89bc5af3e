"""Tests for tool parameter validation, function specs and scope-filtered registration."""
import pytest

from tools.base import BaseTool, ToolSchema, ToolParameter, ToolRegistry


# ---------------------------------------------------------------------------
# Concrete tools for testing
# ---------------------------------------------------------------------------

class AgendaTool(BaseTool):
    """Integration-backed tool gated by scopes."""

    def _build_schema(self) -> ToolSchema:
        return ToolSchema(
            name="agenda_events",
            description="Read or change the agenda",
            integration="agenda",
            operation_scopes={"list": "read", "create": "write"},
            parameters=[
                ToolParameter(
                    name="operation",
                    type="string",
                    description="What to do",
                    required=True,
                    enum=["list", "create"],
                ),
                ToolParameter(
                    name="maxResults",
                    type="integer",
                    description="Result cap",
                    default=10,
                ),
                ToolParameter(
                    name="attendees",
                    type="array",
                    description="Attendee emails",
                    items={"type": "string"},
                ),
            ],
        )

    async def execute(self, **kwargs):
        return {"ok": True, "args": kwargs}


class NotesTool(BaseTool):
    """Tool with no integration; always offered."""

    def _build_schema(self) -> ToolSchema:
        return ToolSchema(
            name="notes",
            description="Keep notes",
            parameters=[ToolParameter(name="text", type="string", required=True)],
        )

    async def execute(self, **kwargs):
        return {"ok": True}


# ---------------------------------------------------------------------------
# ToolSchema
# ---------------------------------------------------------------------------

class TestToolSchema:
    def test_to_json_schema_structure(self):
        js = AgendaTool().schema.to_json_schema()
        assert js["name"] == "agenda_events"
        assert js["description"] == "Read or change the agenda"
        assert "inputSchema" in js

    def test_json_schema_properties(self):
        props = AgendaTool().schema.to_json_schema()["inputSchema"]["properties"]
        assert props["operation"]["enum"] == ["list", "create"]
        assert props["maxResults"]["default"] == 10
        assert props["attendees"]["items"] == {"type": "string"}

    def test_json_schema_required(self):
        js = AgendaTool().schema.to_json_schema()
        assert js["inputSchema"]["required"] == ["operation"]

    def test_function_spec_shape(self):
        spec = AgendaTool().schema.to_function_spec()
        assert spec["type"] == "function"
        assert spec["function"]["name"] == "agenda_events"
        assert spec["function"]["parameters"]["type"] == "object"
        assert spec["function"]["parameters"]["additionalProperties"] is False

    def test_schema_cached(self):
        tool = AgendaTool()
        assert tool.schema is tool.schema

    def test_name_property(self):
        assert AgendaTool().name == "agenda_events"


# ---------------------------------------------------------------------------
# Parameter validation
# ---------------------------------------------------------------------------

class TestParameterValidation:
    @pytest.mark.asyncio
    async def test_missing_required_param_raises(self):
        with pytest.raises(ValueError, match="Missing required parameter"):
            await AgendaTool().validate_parameters(maxResults=5)

    @pytest.mark.asyncio
    async def test_all_required_present_succeeds(self):
        assert await AgendaTool().validate_parameters(operation="list") is True

    @pytest.mark.asyncio
    async def test_extra_params_allowed(self):
        assert await AgendaTool().validate_parameters(operation="list", calendarId="primary") is True


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------

class TestToolRegistry:
    def _registry(self):
        registry = ToolRegistry()
        registry.register(AgendaTool())
        registry.register(NotesTool())
        return registry

    def test_register_and_get(self):
        registry = ToolRegistry()
        tool = AgendaTool()
        registry.register(tool)
        assert registry.get_tool("agenda_events") is tool

    def test_get_unknown_returns_none(self):
        assert ToolRegistry().get_tool("nonexistent") is None

    def test_list_tools(self):
        assert self._registry().list_tools() == ["agenda_events", "notes"]

    def test_function_specs_without_scope_map_offers_everything(self):
        names = [s["function"]["name"] for s in self._registry().get_function_specs()]
        assert names == ["agenda_events", "notes"]

    def test_function_specs_hide_tools_without_granted_scopes(self):
        specs = self._registry().get_function_specs({"agenda": []})
        assert [s["function"]["name"] for s in specs] == ["notes"]

    def test_function_specs_include_tools_with_any_scope(self):
        specs = self._registry().get_function_specs({"agenda": ["read"]})
        assert [s["function"]["name"] for s in specs] == ["agenda_events", "notes"]
