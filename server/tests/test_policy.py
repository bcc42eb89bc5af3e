"""Tests for the policy prompt composer and temporal context."""
from datetime import datetime, timezone

import pytest

from core.policy import (
    OPTION_CARD_CONTRACT,
    PERSONA,
    PromptPolicyContext,
    build_pack_context,
    build_temporal_context,
    compose_policy_sections,
    format_preference_awareness,
    suggestions_eligible,
)
from models.intent import IntentRecord
from models.message import PreferenceProfile

# Wednesday
WEDNESDAY = datetime(2026, 10, 21, 14, 5, tzinfo=timezone.utc)


class TestTemporalContext:
    def test_weekday_lists_coming_weekend(self):
        text = build_temporal_context("UTC", now=WEDNESDAY)
        assert text == (
            "Current date and time: Wednesday, October 21, 2026 at 2:05 PM UTC. "
            "Today is Wednesday. This coming weekend is Saturday Oct 24 - Sunday Oct 25."
        )

    def test_local_zone_applied(self):
        text = build_temporal_context("America/Toronto", now=WEDNESDAY)
        assert "at 10:05 AM EDT" in text

    def test_local_date_can_differ_from_utc(self):
        late_utc = datetime(2026, 10, 24, 2, 0, tzinfo=timezone.utc)
        text = build_temporal_context("America/Toronto", now=late_utc)
        assert "Today is Friday." in text
        assert "Saturday Oct 24 - Sunday Oct 25" in text

    @pytest.mark.parametrize("day,expected", [
        (24, "Today is Saturday."),
        (25, "Today is Sunday."),
    ])
    def test_weekend_days(self, day, expected):
        now = datetime(2026, 10, day, 12, 0, tzinfo=timezone.utc)
        assert build_temporal_context("UTC", now=now).endswith(expected)

    def test_unknown_zone_falls_back_to_default(self):
        text = build_temporal_context("Mars/Olympus", now=WEDNESDAY)
        assert "2:05 PM UTC" in text


class TestSuggestionsEligible:
    def test_discovery_in_default_mode(self):
        assert suggestions_eligible(IntentRecord(is_discovery_query=True), None) is True

    def test_focus_mode_is_not_visual(self):
        assert suggestions_eligible(IntentRecord(is_discovery_query=True), "focus") is False

    @pytest.mark.parametrize("flags", [
        {"is_action_command": True},
        {"is_calendar_write": True},
        {"is_capability_query": True},
        {"is_historical_recall": True},
        {"is_greeting": True},
    ])
    def test_non_discovery_turns(self, flags):
        assert suggestions_eligible(IntentRecord(**flags), "explore") is False


class TestComposePolicySections:
    def test_section_order(self):
        ctx = PromptPolicyContext(intent=IntentRecord(is_discovery_query=True), mode="dating")
        sections = compose_policy_sections(ctx)

        assert len(sections) == 5
        assert sections[0].startswith(PERSONA)
        assert "Date Night mode" in sections[0]
        assert sections[1].startswith("TOOL CAPABILITY POLICY:")
        assert sections[2].startswith("MEMORY POLICY:")
        assert sections[3].startswith("CONVERSATION POLICY:")
        assert OPTION_CARD_CONTRACT in sections[4]

    def test_plain_text_output_for_action_turn(self):
        ctx = PromptPolicyContext(intent=IntentRecord(is_action_command=True))
        sections = compose_policy_sections(ctx)

        assert OPTION_CARD_CONTRACT not in sections[4]
        assert "Do NOT output JSON" in sections[4]
        assert "direct action command" in sections[3]

    def test_best_effort_line(self):
        ctx = PromptPolicyContext(intent=IntentRecord(), best_effort=True)
        assert "Do NOT ask another one" in compose_policy_sections(ctx)[3]

    def test_integrations_and_memory(self):
        ctx = PromptPolicyContext(
            intent=IntentRecord(),
            enabled_integrations={"google_calendar": ["read", "write"], "spotify": []},
            tool_names=["google_calendar_events"],
            taste_hints=["liked_activity: tapas"],
            known_city="Toronto",
        )
        tools, memory = compose_policy_sections(ctx)[1:3]

        assert "- google_calendar: read, write" in tools
        assert "- spotify: no scopes granted" in tools
        assert "Available tools: google_calendar_events." in tools
        assert "Known profile: city Toronto." in memory
        assert "liked_activity: tapas" in memory

    def test_no_integrations(self):
        tools = compose_policy_sections(PromptPolicyContext(intent=IntentRecord()))[1]
        assert "No integrations are connected" in tools


class TestPreferenceAwareness:
    def test_new_user_with_gaps(self):
        profile = PreferenceProfile(known={"City": "Toronto"}, unknown=["budget"], is_new_user=True)
        text = format_preference_awareness(profile)

        assert "relatively new" in text
        assert "  • City: Toronto" in text
        assert "  • budget" in text

    def test_established_user_without_gaps(self):
        text = format_preference_awareness(PreferenceProfile(known={"Name": "Sam"}, is_new_user=False))
        assert "relatively new" not in text
        assert "Preference gaps" not in text


class TestPackContext:
    def test_pack_with_sources(self):
        text = build_pack_context([{
            "name": "Toronto Eats",
            "instructions": "Favor family-run spots.",
            "data_sources": [{"label": "blogto.com", "url": "https://www.blogto.com/eat_drink"}, {"label": "no url"}],
        }])
        assert text.startswith("Installed pack expertise")
        assert "[Toronto Eats]\nFavor family-run spots." in text
        assert "  - blogto.com: https://www.blogto.com/eat_drink" in text
        assert "no url" not in text

    def test_empty_packs_give_none(self):
        assert build_pack_context([{"name": "Bare"}]) is None
        assert build_pack_context([]) is None
