"""Tests for event/calendar name matching and duplicate scoring."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.calendar_resolver import (
    CalendarEventResolver,
    calendar_name_similarity,
    find_potential_duplicate,
    levenshtein,
    normalize_for_match,
    overlaps_with_tolerance,
    parse_tool_events,
    rank_events,
    score_duplicate_candidate,
    score_event_match,
    select_best_calendar_name_match,
)
from models.calendar import CalendarEvent, CalendarListEntry


def _make_event(event_id="evt-1", summary="Dinner with Anna", **overrides) -> CalendarEvent:
    data = {
        "id": event_id,
        "summary": summary,
        "start": "2026-10-23T19:00:00+00:00",
        "end": "2026-10-23T21:00:00+00:00",
    }
    data.update(overrides)
    return CalendarEvent(**data)


def _calendars():
    return [
        CalendarListEntry(id="work@group", summary="Work"),
        CalendarListEntry(id="travel@group", summary="Travel Plans"),
        CalendarListEntry(id="tasks@group", summary="Tasks"),
    ]


# ---------------------------------------------------------------------------
# Title matching
# ---------------------------------------------------------------------------

class TestScoreEventMatch:
    def test_normalize_strips_punctuation_and_emoji(self):
        assert normalize_for_match("  Dentist!! 🦷  appt ") == "dentist appt"

    def test_normalize_empty(self):
        assert normalize_for_match(None) == ""

    def test_substring_is_perfect(self):
        assert score_event_match("dentist", "Dentist appointment 🦷") == 1.0

    def test_all_tokens_present(self):
        assert score_event_match("team sync", "Sync with team") == 0.95

    def test_partial_overlap_blend(self):
        # overlap 1 of union 4 (jaccard .25), coverage .5
        assert score_event_match("dinner mom", "Dinner with Anna") == pytest.approx(0.375)

    def test_no_overlap(self):
        assert score_event_match("yoga", "Dinner with Anna") == 0.0

    def test_empty_query(self):
        assert score_event_match("", "Anything") == 0.0

    def test_rank_drops_weak_candidates(self):
        events = [_make_event("a", "Yoga class"), _make_event("b", "Dinner with Anna")]
        ranked = rank_events("dinner", events)
        assert [r.event.id for r in ranked] == ["b"]


# ---------------------------------------------------------------------------
# Calendar name matching
# ---------------------------------------------------------------------------

class TestCalendarNameMatch:
    def test_levenshtein_basics(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    def test_exact_normalized_match_wins(self):
        match = select_best_calendar_name_match("travel plans!", _calendars())
        assert match.matched_id == "travel@group"
        assert match.confidence == 1.0

    def test_typo_below_threshold_suggests_instead_of_picking(self):
        match = select_best_calendar_name_match("Tavels Plan", _calendars())
        assert match.matched_id is None
        assert match.suggestions[0] == "Travel Plans"
        assert "Work" not in match.suggestions

    def test_lower_threshold_accepts_near_match(self):
        match = select_best_calendar_name_match("Tavels Plan", _calendars(), threshold=0.6)
        assert match.matched_id == "travel@group"

    def test_similarity_prefers_closer_name(self):
        assert calendar_name_similarity("Tavels Plan", "Travel Plans") > calendar_name_similarity("Tavels Plan", "Tasks")

    def test_blank_query(self):
        match = select_best_calendar_name_match("   ", _calendars())
        assert match.matched_id is None
        assert match.suggestions == []


# ---------------------------------------------------------------------------
# Duplicate scoring
# ---------------------------------------------------------------------------

class TestDuplicateScoring:
    def test_overlap_within_tolerance(self):
        assert overlaps_with_tolerance(
            "2026-10-23T19:00:00Z", "2026-10-23T20:00:00Z",
            "2026-10-23T21:00:00Z", "2026-10-23T22:00:00Z",
        ) is True

    def test_overlap_outside_tolerance(self):
        assert overlaps_with_tolerance(
            "2026-10-23T19:00:00Z", "2026-10-23T20:00:00Z",
            "2026-10-23T21:00:00Z", "2026-10-23T22:00:00Z",
            tolerance_minutes=30,
        ) is False

    def test_overlap_unparseable_is_false(self):
        assert overlaps_with_tolerance(None, "2026-10-23T20:00:00Z", "x", "y") is False

    def test_identical_event_scores_full(self):
        existing = _make_event(location="Bar Raval")
        args = {
            "summary": "Dinner with Anna",
            "start": existing.start,
            "end": existing.end,
            "location": "Bar Raval",
        }
        assert score_duplicate_candidate(args, existing) == pytest.approx(1.0)

    def test_unrelated_event_scores_zero(self):
        args = {
            "summary": "Yoga class",
            "start": "2026-11-02T07:00:00Z",
            "end": "2026-11-02T08:00:00Z",
        }
        assert score_duplicate_candidate(args, _make_event()) == 0.0

    def test_parse_tool_events_skips_malformed(self):
        payload = {"events": [
            _make_event().to_payload(),
            {"id": "x", "summary": "No times"},
            "garbage",
        ]}
        events = parse_tool_events(payload)
        assert [e.id for e in events] == ["evt-1"]

    def test_parse_tool_events_non_dict(self):
        assert parse_tool_events({"error": "boom"}) == []
        assert parse_tool_events(None) == []

    @pytest.mark.asyncio
    async def test_find_potential_duplicate_returns_best_and_runner_up(self):
        tool = MagicMock()
        tool.execute = AsyncMock(return_value={"events": [
            _make_event("other", "Team standup").to_payload(),
            _make_event("dup", "Dinner with Anna").to_payload(),
        ]})
        args = {
            "summary": "Dinner with Anna",
            "start": "2026-10-23T19:00:00Z",
            "end": "2026-10-23T21:00:00Z",
        }
        match = await find_potential_duplicate(tool, args)

        assert match.candidate.id == "dup"
        assert match.score > match.second_score
        assert tool.execute.await_args.kwargs["operation"] == "list_multi"

    @pytest.mark.asyncio
    async def test_find_potential_duplicate_without_times(self):
        tool = MagicMock()
        tool.execute = AsyncMock()
        match = await find_potential_duplicate(tool, {"summary": "Dinner"})
        assert match.candidate is None
        tool.execute.assert_not_awaited()


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

def _make_client(events_by_calendar, failing=()):
    client = MagicMock()
    client.list_calendars = AsyncMock(return_value=_calendars())

    async def list_events(calendar_id=None, time_min=None, time_max=None, max_results=100, query=None):
        if calendar_id in failing:
            raise RuntimeError("provider down")
        events = [e.model_copy() for e in events_by_calendar.get(calendar_id, [])]
        if query:
            events = [e for e in events if query.lower() in e.summary.lower()]
        return events

    client.list_events = AsyncMock(side_effect=list_events)
    return client


class TestCalendarEventResolver:
    @pytest.mark.asyncio
    async def test_provider_query_hit(self):
        client = _make_client({"work@group": [_make_event("d1", "Dentist appointment")]})
        resolution = await CalendarEventResolver(client).resolve("Dentist")

        assert resolution.strategy == "provider_query"
        assert resolution.match.id == "d1"
        assert resolution.match.calendar_name == "Work"
        assert resolution.confidence == 1.0

    @pytest.mark.asyncio
    async def test_falls_back_to_local_fuzzy(self):
        client = _make_client({"travel@group": [_make_event("x", "Dinner with Anna")]})
        resolution = await CalendarEventResolver(client).resolve("dinner anna friday")

        assert resolution.strategy == "fuzzy_local"
        assert resolution.match.id == "x"
        assert resolution.match.calendar_id == "travel@group"

    @pytest.mark.asyncio
    async def test_one_failing_calendar_does_not_sink_resolution(self):
        client = _make_client(
            {"tasks@group": [_make_event("t", "Dentist appointment")]},
            failing=("work@group",),
        )
        resolution = await CalendarEventResolver(client).resolve("dentist")
        assert resolution.match.id == "t"

    @pytest.mark.asyncio
    async def test_no_match(self):
        client = _make_client({"work@group": [_make_event("w", "Quarterly review")]})
        resolution = await CalendarEventResolver(client).resolve("birthday party")

        assert resolution.match is None
        assert resolution.candidates == []
        assert resolution.confidence == 0.0
