"""Tests for intent classification, rescue passes and fact persistence."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.intent_pipeline import IntentPipeline, is_historical_recall
from models.intent import IntentRecord


def _make_pipeline(*replies, memory=True):
    llm = MagicMock()
    llm.complete = AsyncMock(side_effect=list(replies))
    memory_repo = None
    if memory:
        memory_repo = MagicMock()
        memory_repo.upsert_if_new = AsyncMock(return_value=True)
    return IntentPipeline(llm, memory_repo), llm, memory_repo


def _stored_keys(memory_repo):
    return [(c.args[0], c.args[1], c.args[2]) for c in memory_repo.upsert_if_new.await_args_list]


class TestPrimaryClassification:
    @pytest.mark.asyncio
    async def test_unparseable_reply_gives_conservative_default(self):
        pipeline, llm, _ = _make_pipeline("I'm not sure", "{}")
        intent = await pipeline.classify("hmm")

        assert intent.extraction_ok is False
        assert intent.is_action_command is False
        assert intent.is_calendar_write is False
        # only the calendar anchor rescue runs after a failed extraction
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_provider_error_gives_conservative_default(self):
        pipeline, _, _ = _make_pipeline(TimeoutError("slow"), TimeoutError("still slow"))
        intent = await pipeline.classify("plan my weekend")
        assert intent.extraction_ok is False

    @pytest.mark.asyncio
    async def test_greeting_needs_no_rescue(self):
        pipeline, llm, _ = _make_pipeline('{"isGreeting": true}')
        intent = await pipeline.classify("hi")

        assert intent.is_greeting is True
        assert intent.is_light_turn is True
        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_feedback_is_dropped_not_fatal(self):
        pipeline, _, _ = _make_pipeline(
            '{"isGreeting": true, "city": null, '
            '"preferenceFeedback": {"subject": "jazz", "sentiment": "meh"}}'
        )
        intent = await pipeline.classify("hey")

        assert intent.extraction_ok is True
        assert intent.preference_feedback is None

    @pytest.mark.asyncio
    async def test_prior_assistant_message_goes_into_prompt(self):
        pipeline, llm, _ = _make_pipeline('{"isSmallTalk": true}')
        await pipeline.classify("yes please", "Want me to add Bar Raval on Friday?")
        assert "Bar Raval" in llm.complete.await_args_list[0].args[0]

    @pytest.mark.asyncio
    async def test_non_finite_autopilot_confidence_reads_as_zero(self):
        pipeline, _, _ = _make_pipeline('{"autopilotOperation": "delete", "autopilotOperationConfidence": NaN}')
        intent = await pipeline.classify("delete my friday autopilot")

        assert intent.autopilot_operation == "delete"
        assert intent.autopilot_operation_confidence == 0.0

    @pytest.mark.parametrize("raw", ["NaN", "inf", float("nan"), float("-inf")])
    def test_confidence_validator_rejects_non_finite(self, raw):
        intent = IntentRecord.model_validate({"autopilotOperation": "delete", "autopilotOperationConfidence": raw})
        assert intent.autopilot_operation_confidence == 0.0


class TestRescuePasses:
    @pytest.mark.asyncio
    async def test_profile_facts_rescue(self):
        pipeline, llm, memory_repo = _make_pipeline(
            '{"isProfileCaptureTurn": true}',
            '{"preferredName": "Sam", "city": " Toronto ", "homeArea": ""}',
        )
        intent = await pipeline.classify("I'm Sam, I live in Toronto")

        assert intent.preferred_name == "Sam"
        assert intent.city == "Toronto"
        assert intent.home_area is None
        stored = _stored_keys(memory_repo)
        assert ("profile_memory", "preferred_name", "Sam") in stored
        assert ("profile_memory", "city", "Toronto") in stored

    @pytest.mark.asyncio
    async def test_calendar_anchor_rescue(self):
        pipeline, _, _ = _make_pipeline(
            '{"isDiscoveryQuery": true, "isExplicitSuggestionRequest": true}',
            '{"isProactiveCalendarCheck": true}',
            '{"answer": false}',
            '{"answer": true}',
        )
        intent = await pipeline.classify("suggest something around my plans this week")
        assert intent.is_proactive_calendar_check is True

    @pytest.mark.asyncio
    async def test_missed_write_is_recovered_and_wins_over_read(self):
        pipeline, llm, _ = _make_pipeline('{"isCalendarQuery": true}', '{"answer": true}')
        intent = await pipeline.classify("put the dentist on my calendar for Tuesday")

        assert intent.is_calendar_write is True
        assert intent.is_calendar_query is False
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_read_guard_clears_false_read(self):
        pipeline, llm, _ = _make_pipeline(
            '{"isCalendarQuery": true}',
            '{"answer": false}',
            '{"answer": false}',
        )
        intent = await pipeline.classify("what is a calendar year")

        assert intent.is_calendar_query is False
        assert llm.complete.await_count == 3

    @pytest.mark.asyncio
    async def test_write_false_positive_cleared(self):
        pipeline, _, _ = _make_pipeline(
            '{"isCalendarWrite": true, "isExplicitSuggestionRequest": true, "referencesPriorSuggestions": true}',
            '{"answer": false}',
        )
        intent = await pipeline.classify("any more like these?")
        assert intent.is_calendar_write is False

    @pytest.mark.asyncio
    async def test_proactive_guard_clears_both_flags(self):
        pipeline, _, _ = _make_pipeline(
            '{"isUpcomingQuery": true}',
            '{"answer": false}',
            '{"answer": false}',
        )
        intent = await pipeline.classify("upcoming movies?")

        assert intent.is_upcoming_query is False
        assert intent.is_proactive_calendar_check is False

    @pytest.mark.asyncio
    async def test_non_boolean_answer_changes_nothing(self):
        pipeline, _, _ = _make_pipeline('{"isCalendarQuery": true}', '{"answer": "yes"}', "garbage")
        intent = await pipeline.classify("what's on tomorrow")

        assert intent.is_calendar_query is True
        assert intent.is_calendar_write is False

    @pytest.mark.asyncio
    async def test_provider_error_in_rescue_changes_nothing(self):
        pipeline, llm, _ = _make_pipeline(
            '{"isCalendarQuery": true}', TimeoutError("slow"), TimeoutError("still slow"),
        )
        intent = await pipeline.classify("what's on tomorrow")

        assert llm.complete.await_count == 3
        assert intent.extraction_ok is True
        assert intent.is_calendar_query is True
        assert intent.is_calendar_write is False


class TestHistoricalRecall:
    @pytest.mark.parametrize("message", [
        "What did you recommend earlier?",
        "remember the place with the rooftop?",
        "what was the name of that bar",
        "Earlier you said something about tapas",
    ])
    def test_detects_recall(self, message):
        assert is_historical_recall(message) is True

    def test_plain_request_is_not_recall(self):
        assert is_historical_recall("book dinner for friday") is False

    @pytest.mark.asyncio
    async def test_recall_disables_writes(self):
        pipeline, _, _ = _make_pipeline('{"isActionCommand": true, "isCalendarWrite": true}')
        intent = await pipeline.classify("what did you recommend yesterday? add it")

        assert intent.is_historical_recall is True
        assert intent.is_action_command is False
        assert intent.is_calendar_write is False

    @pytest.mark.asyncio
    async def test_classifier_recall_flag_disables_writes(self):
        pipeline, _, _ = _make_pipeline(
            '{"isHistoricalRecall": true, "isActionCommand": true, "isCalendarWrite": true}'
        )
        intent = await pipeline.classify("the rooftop one, put it in for friday")

        assert intent.is_historical_recall is True
        assert intent.is_action_command is False
        assert intent.is_calendar_write is False


class TestFactPersistence:
    @pytest.mark.asyncio
    async def test_feedback_stored_with_reason(self):
        pipeline, _, memory_repo = _make_pipeline(
            '{"preferenceFeedback": {"subject": "tapas", "sentiment": "like", "reason": "easy to share"}}'
        )
        await pipeline.classify("loved the tapas, easy to share")

        stored = _stored_keys(memory_repo)
        assert ("taste_memory", "liked_activity", "tapas") in stored
        assert ("taste_memory", "like_reason", "tapas: easy to share") in stored

    @pytest.mark.asyncio
    async def test_memory_failure_does_not_break_classification(self):
        pipeline, _, memory_repo = _make_pipeline('{"city": "Ottawa"}')
        memory_repo.upsert_if_new.side_effect = RuntimeError("db down")

        intent = await pipeline.classify("I'm in Ottawa now")
        assert intent.city == "Ottawa"

    @pytest.mark.asyncio
    async def test_without_memory_repo(self):
        pipeline, _, _ = _make_pipeline('{"city": "Ottawa"}', memory=False)
        intent = await pipeline.classify("Ottawa")
        assert intent.city == "Ottawa"

    @pytest.mark.asyncio
    async def test_implicit_preferences_use_inferred_source(self):
        pipeline, _, memory_repo = _make_pipeline()
        await pipeline.persist_implicit_preferences("I love tapas. My kids come too")

        calls = memory_repo.upsert_if_new.await_args_list
        assert calls[0].args == ("taste_memory", "explicit_preference", "tapas", "inferred", 0.8)
        assert ("profile_memory", "household", "has children") in _stored_keys(memory_repo)

    @pytest.mark.asyncio
    async def test_profile_facts_replace_older_values(self):
        pipeline, _, memory_repo = _make_pipeline('{"city": "Ottawa", "preferenceFeedback": {"subject": "jazz", "sentiment": "like"}}')
        await pipeline.classify("moved to Ottawa, loved the jazz night")

        replace_by_key = {c.args[1]: c.kwargs["replace"] for c in memory_repo.upsert_if_new.await_args_list}
        assert replace_by_key == {"city": True, "liked_activity": False}
