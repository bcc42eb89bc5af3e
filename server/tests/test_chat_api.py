"""Tests for the chat request schema and route handlers."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from api.routes import chat as chat_routes
from api.schemas.request_schemas import ChatRequest
from core.agent import AgentReply
from tools.base import BaseTool, ToolParameter, ToolRegistry, ToolSchema


class _StubTool(BaseTool):
    def __init__(self, name, integration=None):
        self._name = name
        self._integration = integration

    def _build_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self._name,
            description=f"{self._name} stub",
            integration=self._integration,
            parameters=[ToolParameter(name="operation", type="string", required=True)],
        )

    async def execute(self, **kwargs):
        return {}


class TestChatRequest:
    def test_camel_case_fields(self):
        request = ChatRequest.model_validate({"message": "  hi  ", "threadId": "t-1", "timezone": "UTC"})
        assert request.message == "hi"
        assert request.thread_id == "t-1"
        assert request.timezone == "UTC"

    def test_blank_optionals_become_none(self):
        request = ChatRequest(message="hi", mode="  ", model="")
        assert request.mode is None
        assert request.model is None

    @pytest.mark.parametrize("message", ["", "   "])
    def test_blank_message_rejected(self, message):
        with pytest.raises(ValidationError):
            ChatRequest(message=message)

    def test_oversized_message_rejected(self):
        with pytest.raises(ValidationError):
            ChatRequest(message="x" * 10001)


class TestChatRoutes:
    @pytest.mark.asyncio
    async def test_submit_message(self, monkeypatch):
        agent = MagicMock()
        agent.process_message = AsyncMock(return_value=AgentReply(
            reply="Try the AGO.",
            confidence=0.78,
            model="test/model",
            requested_model="test/model",
            thread_id="t-1",
            message_id="m-2",
            mode="recommendation",
        ))
        monkeypatch.setattr(chat_routes, "get_agent", lambda: agent)

        response = await chat_routes.submit_message(ChatRequest(message="ideas?", mode="dating"))

        agent.process_message.assert_awaited_once_with(
            "ideas?", thread_id=None, mode="dating", timezone=None, model=None,
        )
        payload = response.model_dump(by_alias=True)
        assert payload["reply"] == "Try the AGO."
        assert payload["threadId"] == "t-1"
        assert payload["messageId"] == "m-2"
        assert payload["requestedModel"] == "test/model"

    @pytest.mark.asyncio
    async def test_overview_lists_threads(self, monkeypatch):
        repo = MagicMock()
        repo.list_recent_threads = AsyncMock(return_value=[
            {"id": "t-1", "title": "Dinner plans", "updated_at": "2026-10-18T10:00:00+00:00"},
            {"id": 7, "title": None},
        ])
        monkeypatch.setattr(chat_routes, "get_conversation_repo", lambda: repo)

        overview = await chat_routes.chat_overview()

        repo.list_recent_threads.assert_awaited_once_with(chat_routes.RECENT_THREAD_LIMIT)
        assert [t.id for t in overview.threads] == ["t-1", "7"]
        assert overview.threads[1].updated_at is None

    @pytest.mark.asyncio
    async def test_tool_discovery(self, monkeypatch):
        registry = ToolRegistry()
        registry.register(_StubTool("agenda_events", integration="agenda"))
        registry.register(_StubTool("notes"))
        monkeypatch.setattr(chat_routes, "get_tool_registry", lambda: registry)

        payload = await chat_routes.list_tools()

        assert [t["name"] for t in payload["tools"]] == ["agenda_events", "notes"]
        assert payload["status"][0]["integration"] == "agenda"
        assert payload["status"][1]["integration"] is None
