"""
Calendar Event Resolver — fuzzy event/calendar matching and duplicate scoring.

Event resolution tries the provider's own full-text search first and falls
back to scoring every event in the window locally. Calendar *names* are
matched separately with an edit-distance blend so a near miss produces
ranked suggestions instead of a silent pick.
"""
import asyncio
import logging
import re
from datetime import timedelta
from typing import Optional

from config.settings import settings
from models.calendar import (
    CalendarEvent,
    CalendarListEntry,
    CalendarNameMatch,
    DuplicateMatch,
    EventResolution,
    ScoredEvent,
)
from utils.time_utils import now_utc, parse_datetime

logger = logging.getLogger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]|_", re.UNICODE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WS_RE = re.compile(r"\s+")

# Suggestions below this similarity are noise, not near misses
_NAME_SUGGESTION_FLOOR = 0.45
_MAX_NAME_SUGGESTIONS = 3


# ---------------------------------------------------------------------------
# Event title matching
# ---------------------------------------------------------------------------

def normalize_for_match(text: Optional[str]) -> str:
    """Lowercase, drop emoji and punctuation, collapse whitespace."""
    if not text:
        return ""
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    return _WS_RE.sub(" ", cleaned).strip()


def score_event_match(query: str, title: str) -> float:
    """
    Score how well an event title matches a free-text reference.

    1.0 for substring containment, 0.95 when every query token appears,
    otherwise a Jaccard/coverage blend capped at 0.9.
    """
    q = normalize_for_match(query)
    t = normalize_for_match(title)
    if not q or not t:
        return 0.0
    if q in t:
        return 1.0

    q_tokens = set(q.split())
    t_tokens = set(t.split())
    if q_tokens <= t_tokens:
        return 0.95

    overlap = len(q_tokens & t_tokens)
    jaccard = overlap / len(q_tokens | t_tokens)
    coverage = overlap / len(q_tokens)
    return min(0.5 * jaccard + 0.5 * coverage, 0.9)


def rank_events(query: str, events: list[CalendarEvent]) -> list[ScoredEvent]:
    """Candidates scoring above the floor, best first."""
    scored = [ScoredEvent(event=e, score=score_event_match(query, e.summary)) for e in events]
    kept = [s for s in scored if s.score > settings.EVENT_MIN_SCORE]
    kept.sort(key=lambda s: s.score, reverse=True)
    return kept


# ---------------------------------------------------------------------------
# Calendar name matching
# ---------------------------------------------------------------------------

def levenshtein(a: str, b: str) -> int:
    """Classic edit distance, two-row dynamic programming."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def calendar_name_similarity(query: str, name: str) -> float:
    """0.45 whole-string similarity + 0.55 mean best per-token similarity."""
    q = normalize_for_match(query)
    n = normalize_for_match(name)
    if not q or not n:
        return 0.0

    full = string_similarity(q, n)
    name_tokens = n.split()
    token_scores = [
        max(string_similarity(qt, nt) for nt in name_tokens)
        for qt in q.split()
    ]
    token = sum(token_scores) / len(token_scores)
    return 0.45 * full + 0.55 * token


def select_best_calendar_name_match(
    query: str,
    calendars: list[CalendarListEntry],
    threshold: Optional[float] = None,
) -> CalendarNameMatch:
    """
    Resolve a calendar by display name.

    An exact normalized match wins outright. Otherwise the best fuzzy score
    must clear the threshold; below it nothing is picked and the closest
    names are returned as suggestions.
    """
    threshold = settings.CALENDAR_NAME_MATCH_THRESHOLD if threshold is None else threshold
    wanted = normalize_for_match(query)
    if not wanted:
        return CalendarNameMatch()

    for calendar in calendars:
        if normalize_for_match(calendar.summary) == wanted:
            return CalendarNameMatch(
                matched_id=calendar.id,
                matched_name=calendar.summary,
                confidence=1.0,
            )

    ranked = sorted(
        ((calendar_name_similarity(query, c.summary), c) for c in calendars),
        key=lambda pair: pair[0],
        reverse=True,
    )
    suggestions = [
        c.summary for score, c in ranked if score >= _NAME_SUGGESTION_FLOOR
    ][:_MAX_NAME_SUGGESTIONS]

    if ranked and ranked[0][0] >= threshold:
        best_score, best = ranked[0]
        return CalendarNameMatch(
            matched_id=best.id,
            matched_name=best.summary,
            confidence=round(best_score, 3),
            suggestions=suggestions,
        )

    return CalendarNameMatch(
        confidence=round(ranked[0][0], 3) if ranked else 0.0,
        suggestions=suggestions,
    )


# ---------------------------------------------------------------------------
# Duplicate scoring
# ---------------------------------------------------------------------------

def tokenize(text: Optional[str]) -> set[str]:
    if not text:
        return set()
    cleaned = _NON_ALNUM_RE.sub(" ", text.lower())
    return {token for token in cleaned.split() if len(token) > 1}


def jaccard_similarity(a: Optional[str], b: Optional[str]) -> float:
    a_tokens = tokenize(a)
    b_tokens = tokenize(b)
    if not a_tokens or not b_tokens:
        return 0.0
    return len(a_tokens & b_tokens) / len(a_tokens | b_tokens)


def overlaps_with_tolerance(
    a_start, a_end, b_start, b_end, tolerance_minutes: Optional[int] = None,
) -> bool:
    """True when [a_start, a_end] and [b_start, b_end] overlap once padded by the tolerance."""
    tolerance = timedelta(minutes=(
        settings.DUPLICATE_TOLERANCE_MINUTES if tolerance_minutes is None else tolerance_minutes
    ))
    times = [parse_datetime(v) for v in (a_start, a_end, b_start, b_end)]
    if any(t is None for t in times):
        return False
    as_, ae, bs, be = times
    return as_ <= be + tolerance and bs <= ae + tolerance


def score_duplicate_candidate(create_args: dict, existing: CalendarEvent) -> float:
    """Weighted similarity of a proposed create against an existing event."""
    summary = create_args.get("summary") or ""
    text_a = f"{summary} {create_args.get('description') or ''}"
    text_b = f"{existing.summary} {existing.description or ''}"

    title_score = jaccard_similarity(summary, existing.summary)
    detail_score = jaccard_similarity(text_a, text_b)
    time_score = 1.0 if overlaps_with_tolerance(
        create_args.get("start"), create_args.get("end"), existing.start, existing.end,
    ) else 0.0
    place_score = jaccard_similarity(create_args.get("location"), existing.location)

    return title_score * 0.4 + detail_score * 0.2 + time_score * 0.3 + place_score * 0.1


def parse_tool_events(payload) -> list[CalendarEvent]:
    """Events from a calendar tool result, skipping malformed entries."""
    if not isinstance(payload, dict):
        return []
    events = []
    for raw in payload.get("events") or []:
        if not isinstance(raw, dict):
            continue
        if not all(isinstance(raw.get(k), str) and raw.get(k) for k in ("id", "summary", "start", "end")):
            continue
        events.append(CalendarEvent.model_validate(raw))
    return events


async def find_potential_duplicate(calendar_tool, create_args: dict) -> DuplicateMatch:
    """
    Search all readable calendars around a proposed create and return the
    best-scoring existing event plus the runner-up score.
    """
    start = parse_datetime(create_args.get("start"))
    end = parse_datetime(create_args.get("end"))
    if start is None or end is None:
        return DuplicateMatch()

    window = timedelta(hours=settings.DUPLICATE_WINDOW_HOURS)
    listed = await calendar_tool.execute(
        operation="list_multi",
        timeMin=(start - window).isoformat(),
        timeMax=(end + window).isoformat(),
        query=create_args.get("summary"),
        maxResultsPerCalendar=40,
    )
    events = parse_tool_events(listed)
    if not events:
        return DuplicateMatch()

    scored = sorted(
        ((score_duplicate_candidate(create_args, event), event) for event in events),
        key=lambda pair: pair[0],
        reverse=True,
    )
    return DuplicateMatch(
        candidate=scored[0][1],
        score=scored[0][0],
        second_score=scored[1][0] if len(scored) > 1 else 0.0,
    )


# ---------------------------------------------------------------------------
# Event resolver
# ---------------------------------------------------------------------------

class CalendarEventResolver:
    """Resolve a natural-language event reference across all readable calendars."""

    def __init__(self, calendar_client, lookback_days: int = 7, lookahead_days: int = 180):
        self.calendar_client = calendar_client
        self.lookback_days = lookback_days
        self.lookahead_days = lookahead_days

    async def _list_across(
        self,
        calendars: list[CalendarListEntry],
        time_min: str,
        time_max: str,
        query: Optional[str],
    ) -> list[CalendarEvent]:
        """List events on every calendar in parallel; one failure doesn't sink the rest."""
        results = await asyncio.gather(
            *[
                self.calendar_client.list_events(
                    calendar_id=calendar.id,
                    time_min=time_min,
                    time_max=time_max,
                    max_results=100,
                    query=query,
                )
                for calendar in calendars
            ],
            return_exceptions=True,
        )

        events: list[CalendarEvent] = []
        for calendar, result in zip(calendars, results):
            if isinstance(result, Exception):
                logger.warning(f"Listing calendar {calendar.summary} failed during resolve: {result}")
                continue
            for event in result:
                event.calendar_id = calendar.id
                event.calendar_name = calendar.summary
                event.primary = calendar.primary
                events.append(event)
        return events

    async def resolve(
        self,
        query: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> EventResolution:
        now = now_utc()
        time_min = time_min or (now - timedelta(days=self.lookback_days)).isoformat()
        time_max = time_max or (now + timedelta(days=self.lookahead_days)).isoformat()
        calendars = await self.calendar_client.list_calendars()

        provider_hits = rank_events(query, await self._list_across(calendars, time_min, time_max, query))
        if provider_hits and provider_hits[0].score >= settings.EVENT_MATCH_THRESHOLD:
            logger.info(f"Resolved '{query}' via provider query (score={provider_hits[0].score:.2f})")
            return EventResolution(
                match=provider_hits[0].event,
                candidates=provider_hits,
                strategy="provider_query",
                confidence=provider_hits[0].score,
            )

        local_hits = rank_events(query, await self._list_across(calendars, time_min, time_max, None))
        top = local_hits[0] if local_hits else None
        logger.info(
            f"Resolved '{query}' via local fuzzy match: "
            f"{len(local_hits)} candidates, top={top.score if top else 0:.2f}"
        )
        return EventResolution(
            match=top.event if top and top.score >= settings.EVENT_MATCH_THRESHOLD else None,
            candidates=local_hits,
            strategy="fuzzy_local",
            confidence=top.score if top else 0.0,
        )
