"""Tests for the bounded tool-calling loop: dedupe, write enforcement and verification."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.tool_loop import (
    CALENDAR_TOOL,
    DUPLICATE_PROMPT,
    FOUND_NOT_APPLIED_REPLY,
    NO_TOOL_EVIDENCE_REPLY,
    NO_WRITE_REPLY,
    TOOL_FAILED_REPLY,
    UNVERIFIED_WRITE_REPLY,
    ToolCallingLoop,
    build_status_sentence,
    is_write_verified,
)
from integrations.llm.client import ModelReply
from integrations.llm.prompts import WRITE_ENFORCEMENT_MESSAGE
from models.action import ToolCall, ToolOutcome
from models.suggestion import SuggestionResolution
from tools.base import BaseTool, ToolParameter, ToolRegistry, ToolSchema

START = "2026-10-23T19:00:00+00:00"
END = "2026-10-23T21:00:00+00:00"


class FakeCalendarTool(BaseTool):
    """Scripted calendar: list_multi returns `existing`, get returns `readback` when set."""

    def __init__(self, existing=None, readback=None):
        self.existing = existing or []
        self.readback = readback
        self.calls = []

    def _build_schema(self) -> ToolSchema:
        return ToolSchema(
            name=CALENDAR_TOOL,
            description="fake calendar",
            integration="google_calendar",
            parameters=[ToolParameter(name="operation", type="string", required=True)],
        )

    def operations(self):
        return [c["operation"] for c in self.calls]

    async def execute(self, **kwargs):
        self.calls.append(kwargs)
        operation = kwargs["operation"]
        if operation == "list_multi":
            return {"count": len(self.existing), "events": self.existing}
        if operation in ("create", "update"):
            event_id = kwargs.get("eventId") or "new-1"
            return {
                "calendarId": kwargs.get("calendarId") or "managed@group",
                "eventId": event_id,
                "event": {"id": event_id, "summary": kwargs.get("summary") or "Dinner with Anna"},
            }
        if operation == "get":
            if self.readback is not None:
                return self.readback
            return {"event": {"id": kwargs["eventId"], "summary": "Dinner with Anna"}}
        if operation == "find":
            return {"found": True, "eventId": "evt-1", "calendarId": "primary"}
        return {"count": 0, "events": []}


def _reply(text="", calls=None) -> ModelReply:
    return ModelReply(
        text=text,
        content=text,
        tool_calls=calls or [],
        requested_model="test/model",
        response_model="test/model",
        response_id="resp-1",
    )


def _call(**arguments) -> ToolCall:
    return ToolCall(tool_name=CALENDAR_TOOL, arguments=arguments)


def _create_call(summary="Dinner with Anna"):
    return _call(operation="create", summary=summary, start=START, end=END)


def _existing(summary="Dinner with Anna", event_id="evt-1"):
    return {"id": event_id, "summary": summary, "start": START, "end": END, "calendarId": "primary"}


def _make_loop(*replies, tool=None, max_rounds=3):
    llm = MagicMock()
    llm.chat = AsyncMock(side_effect=list(replies))
    registry = ToolRegistry()
    tool = tool or FakeCalendarTool()
    registry.register(tool)
    trace_repo = MagicMock()
    trace_repo.add_trace = AsyncMock()
    loop = ToolCallingLoop(llm, registry, trace_repo, max_rounds=max_rounds)
    return loop, llm, tool, trace_repo


def _traces(trace_repo):
    return [c.args[1] for c in trace_repo.add_trace.await_args_list]


class TestPlainReplies:
    @pytest.mark.asyncio
    async def test_no_tool_calls(self):
        loop, llm, _, _ = _make_loop(_reply("Try the AGO on Friday."))
        result = await loop.run([{"role": "user", "content": "ideas?"}], [], "test/model")

        assert result.reply == "Try the AGO on Friday."
        assert result.rounds == 1
        assert result.tool_calls_executed == 0
        assert llm.chat.await_args.kwargs["tools"] is None

    @pytest.mark.asyncio
    async def test_first_call_failure_raises(self):
        loop, _, _, _ = _make_loop(TimeoutError("slow"))
        with pytest.raises(TimeoutError):
            await loop.run([], [], "test/model")


class TestCreateAndDedupe:
    @pytest.mark.asyncio
    async def test_create_is_verified(self):
        loop, _, tool, trace_repo = _make_loop(_reply(calls=[_create_call()]), _reply("Added it!"))
        result = await loop.run([], [{"type": "function"}], "test/model", write_required=True)

        assert tool.operations() == ["list_multi", "create", "get"]
        assert result.write_executed is True
        assert result.outcomes[0].write_verified is True
        assert result.reply == "Added it!"
        assert f"tool_call_success name={CALENDAR_TOOL}" in _traces(trace_repo)

    @pytest.mark.asyncio
    async def test_clear_duplicate_becomes_update(self):
        tool = FakeCalendarTool(existing=[_existing()])
        create = _call(operation="create", summary="Dinner with Anna", start=START, end=END, location="Bar Isabel")
        loop, _, _, trace_repo = _make_loop(_reply(calls=[create]), _reply("Updated."), tool=tool)
        result = await loop.run([], [], "test/model", write_required=True)

        assert tool.operations() == ["list_multi", "update", "get"]
        assert tool.calls[1]["eventId"] == "evt-1"
        assert tool.calls[1]["location"] == "Bar Isabel"
        assert result.outcomes[0].operation == "update"
        assert result.outcomes[0].result["dedupedFromCreate"] is True
        assert any(t.startswith("calendar_dedupe action=update_existing") for t in _traces(trace_repo))

    @pytest.mark.asyncio
    async def test_clear_duplicate_with_nothing_to_patch_reports_existing(self):
        tool = FakeCalendarTool(existing=[_existing()])
        loop, _, _, _ = _make_loop(_reply(calls=[_create_call()]), _reply("It is already there."), tool=tool)
        result = await loop.run([], [], "test/model", write_required=True)

        # no empty update is sent to the calendar
        assert tool.operations() == ["list_multi", "get"]
        outcome = result.outcomes[0]
        assert outcome.error is None
        assert outcome.result["eventId"] == "evt-1"
        assert outcome.result["unchanged"] is True
        assert result.write_executed is True
        assert result.reply == "It is already there."

    @pytest.mark.asyncio
    async def test_plausible_duplicate_asks(self):
        tool = FakeCalendarTool(existing=[_existing(summary="Dinner with Anna and Tom")])
        loop, _, _, _ = _make_loop(_reply(calls=[_create_call()]), _reply("Done!"), tool=tool)
        result = await loop.run([], [], "test/model", write_required=True)

        assert "create" not in tool.operations()
        assert result.write_executed is False
        assert result.reply == DUPLICATE_PROMPT

    @pytest.mark.asyncio
    async def test_unclear_reference_asks_even_for_clear_duplicate(self):
        tool = FakeCalendarTool(existing=[_existing()])
        loop, _, _, _ = _make_loop(_reply(calls=[_create_call()]), _reply("Done!"), tool=tool)
        result = await loop.run(
            [], [], "test/model",
            write_required=True,
            references_prior=True,
            resolution=SuggestionResolution(selected_indices=[1], confidence=0.5),
        )

        assert tool.operations() == ["list_multi"]
        assert result.pending_confirmation == DUPLICATE_PROMPT
        assert result.reply == DUPLICATE_PROMPT


class TestWriteGuards:
    @pytest.mark.asyncio
    async def test_enforces_tool_use_when_write_required(self):
        loop, llm, tool, trace_repo = _make_loop(
            _reply("Sure, I'll add it."),
            _reply(calls=[_create_call()]),
            _reply("Added."),
        )
        messages = [{"role": "user", "content": "add dinner with Anna friday 7pm"}]
        result = await loop.run(messages, [], "test/model", write_required=True)

        assert llm.chat.await_count == 3
        assert result.write_executed is True
        assert result.reply == "Added."
        final_messages = llm.chat.await_args_list[-1].args[0]
        assert {"role": "system", "content": WRITE_ENFORCEMENT_MESSAGE} in final_messages
        assert "calendar_write_enforced round=1" in _traces(trace_repo)

    @pytest.mark.asyncio
    async def test_no_write_after_rounds_exhausted(self):
        loop, _, _, _ = _make_loop(_reply("Okay!"), _reply("Okay again!"), max_rounds=1)
        result = await loop.run([], [], "test/model", write_required=True)
        assert result.reply == NO_WRITE_REPLY

    @pytest.mark.asyncio
    async def test_read_only_rounds_never_satisfy_write(self):
        lookups = [_reply(calls=[_call(operation="list_multi")]) for _ in range(4)]
        loop, llm, tool, trace_repo = _make_loop(*lookups, _reply("Looked it up."), max_rounds=3)
        result = await loop.run([], [], "test/model", write_required=True)

        assert tool.operations() == ["list_multi"] * 4
        assert result.write_executed is False
        assert result.reply == NO_WRITE_REPLY
        traces = _traces(trace_repo)
        assert [t for t in traces if t.startswith("calendar_write_enforced")] == [
            "calendar_write_enforced round=1",
            "calendar_write_enforced round=2",
            "calendar_write_enforced round=3",
        ]
        final_messages = llm.chat.await_args_list[-1].args[0]
        reminders = [m for m in final_messages if m == {"role": "system", "content": WRITE_ENFORCEMENT_MESSAGE}]
        assert len(reminders) == 3

    @pytest.mark.asyncio
    async def test_find_without_write(self):
        loop, _, _, _ = _make_loop(
            _reply(calls=[_call(operation="find", query="dentist")]),
            _reply("Found it."),
            _reply("Changed it."),
            max_rounds=2,
        )
        result = await loop.run([], [], "test/model", write_required=True)

        assert result.find_succeeded is True
        assert result.reply == FOUND_NOT_APPLIED_REPLY

    @pytest.mark.asyncio
    async def test_unverified_write_overrides_model_text(self):
        tool = FakeCalendarTool(readback={"error": "backend hiccup"})
        loop, _, _, _ = _make_loop(_reply(calls=[_create_call()]), _reply("All done!"), tool=tool)
        result = await loop.run([], [], "test/model", write_required=True)

        assert result.write_verification_failed is True
        assert result.reply == UNVERIFIED_WRITE_REPLY

    @pytest.mark.asyncio
    async def test_read_only_turn_needs_no_write(self):
        loop, _, _, _ = _make_loop(
            _reply(calls=[_call(operation="list_multi")]),
            _reply("You're free on Saturday."),
        )
        result = await loop.run([], [], "test/model")
        assert result.reply == "You're free on Saturday."


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_later_failure_uses_status_sentence(self):
        loop, _, _, _ = _make_loop(
            _reply(calls=[_create_call()]),
            RuntimeError("provider down"),
            RuntimeError("still down"),
        )
        result = await loop.run([], [], "test/model", write_required=True)
        assert result.reply == 'I added "Dinner with Anna" to your calendar and verified the change.'

    @pytest.mark.asyncio
    async def test_synthesis_used_when_rounds_end_on_tool_calls(self):
        loop, llm, _, _ = _make_loop(
            _reply(calls=[_call(operation="list_multi")]),
            _reply("Here is your week."),
            max_rounds=0,
        )
        result = await loop.run([], [], "test/model")

        assert result.reply == "Here is your week."
        assert llm.chat.await_args.kwargs["tools"] is None

    @pytest.mark.asyncio
    async def test_unknown_tool_reports_failure(self):
        loop, _, _, _ = _make_loop(
            _reply(calls=[ToolCall(tool_name="nope", arguments={})]),
            RuntimeError("down"),
            RuntimeError("down"),
        )
        result = await loop.run([], [], "test/model")
        assert result.reply == TOOL_FAILED_REPLY.format(error="Tool 'nope' is not available.")

    @pytest.mark.asyncio
    async def test_no_evidence(self):
        loop, _, _, _ = _make_loop(
            _reply(calls=[_call(operation="list_multi")]),
            RuntimeError("down"),
            RuntimeError("down"),
        )
        result = await loop.run([], [], "test/model")
        assert result.reply == NO_TOOL_EVIDENCE_REPLY

    @pytest.mark.asyncio
    async def test_missing_required_parameter_is_isolated(self):
        loop, _, _, _ = _make_loop(
            _reply(calls=[ToolCall(tool_name=CALENDAR_TOOL, arguments={"query": "x"})]),
            _reply("Sorry about that."),
        )
        result = await loop.run([], [], "test/model")

        assert "Missing required parameter" in result.outcomes[0].error
        assert result.reply == "Sorry about that."


class TestVerificationHelpers:
    def test_create_verified_by_presence(self):
        assert is_write_verified("create", {"event": {"id": "e1"}}) is True
        assert is_write_verified("create", {"error": "boom"}) is False
        assert is_write_verified("update", None) is False

    def test_delete_verified_by_absence(self):
        assert is_write_verified("delete", {"error": "Event not found"}) is True
        assert is_write_verified("delete", {"error": "HTTP 404"}) is True
        assert is_write_verified("delete", {"event": {"id": "e1"}}) is False

    def test_status_sentence(self):
        outcomes = [
            ToolOutcome(action_id="1", tool_name=CALENDAR_TOOL, operation="delete", write_verified=True,
                        result={"deleted": True}),
            ToolOutcome(action_id="2", tool_name=CALENDAR_TOOL, operation="create", write_verified=False,
                        result={"event": {"summary": "Ignored"}}),
        ]
        assert build_status_sentence(outcomes) == 'I removed "the event" from your calendar and verified the change.'

    def test_status_sentence_none(self):
        assert build_status_sentence([]) is None
