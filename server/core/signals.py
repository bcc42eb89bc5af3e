"""Deterministic message signals: recommendation constraints, novelty and implicit preferences."""
import re
from typing import Literal, NamedTuple, Optional

from pydantic import BaseModel

KNOWN_CATEGORIES = [
    "restaurant", "restaurants", "hotel", "hotels", "park", "parks", "museum", "museums",
    "cafe", "cafes", "coffee", "event", "events", "hike", "hiking", "spa", "concert",
    "concerts", "bar", "bars", "activity", "activities",
]
KNOWN_VIBES = [
    "romantic", "cozy", "quiet", "energetic", "family", "outdoor", "indoor", "luxury",
    "budget", "chill", "spontaneous", "curated", "adventurous",
]
KNOWN_LOCATIONS = [
    "toronto", "vancouver", "montreal", "ottawa", "new york", "nyc", "london", "paris", "muskoka",
]

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_BUDGET_RE = re.compile(r"(?:under|below|less than)\s*\$?\s*\d+[kK]?|(?:\$|usd)\s*\d+[kK]?", re.IGNORECASE)
_TIME_WINDOW_RE = re.compile(
    r"\b(today|tonight|tomorrow|this weekend|next weekend|this week|next week|"
    r"friday|saturday|sunday|morning|afternoon|evening)\b",
    re.IGNORECASE,
)
_DISLIKED_SOURCE_RE = re.compile(
    r"\b(?:not|avoid|skip|exclude)\s+(?:from\s+)?"
    r"([a-z0-9.\-]+\.[a-z]{2,}|tripadvisor|yelp|reddit|instagram|tiktok)\b",
    re.IGNORECASE,
)

_BOREDOM_RE = re.compile(r"\b(boring|same|standard|generic|usual|again|something new|fresh)\b")
_FRESH_RE = re.compile(r"\b(new|fresh|original|surprise|discover|unusual|hidden gem)\b")
_FAMILIAR_RE = re.compile(r"\b(usual|familiar|safe|predictable|same as before)\b")

_PREFERENCE_RE = re.compile(r"\bi\s+(?:like|love|enjoy|prefer|adore)\s+(.{3,60}?)(?:\.|,|!|\band\b|$)", re.IGNORECASE)
_PARTNER_PREFERENCE_RE = re.compile(
    r"\bmy\s+(?:wife|husband|partner|spouse|girlfriend|boyfriend)\s+"
    r"(?:likes?|loves?|enjoys?|prefers?)\s+(.{3,60}?)(?:\.|,|!|$)",
    re.IGNORECASE,
)
_PARTNER_RE = re.compile(r"\bmy\s+(?:wife|husband|partner|spouse|girlfriend|boyfriend|fianc[ée]e?)\b", re.IGNORECASE)
_CHILDREN_RE = re.compile(r"\bmy\s+(?:kids?|children|son|daughter|baby|toddler|little\s+ones?)\b", re.IGNORECASE)
_LOCATION_RE = re.compile(
    r"\b(?:i'?m\s+in|i\s+live\s+in|we'?re\s+in|based\s+in)\s+([A-Z][a-zA-Z\s]{2,30}?)(?:\.|,|!|$)",
    re.IGNORECASE,
)
_BUDGET_AMOUNT_RES = [
    re.compile(r"budget\s*(?:is|of|around)?\s*\$?\s*(\d+)", re.IGNORECASE),
    re.compile(r"under\s+\$?\s*(\d+)", re.IGNORECASE),
    re.compile(r"\$(\d+)\s*[-–]\s*\$?(\d+)", re.IGNORECASE),
]

NoveltyPreference = Literal["fresh", "balanced", "familiar"]


class RecommendationConstraints(BaseModel):
    categories: list[str] = []
    vibes: list[str] = []
    locations: list[str] = []
    budgets: list[str] = []
    time_windows: list[str] = []
    disliked_source_patterns: list[str] = []


class RecommendationSignals(BaseModel):
    novelty_preference: NoveltyPreference = "balanced"
    source_diversity_target: int = 3
    boredom_signal: bool = False


class MemoryFact(NamedTuple):
    bucket: str
    key: str
    value: str


def _unique(values) -> list[str]:
    seen: list[str] = []
    for value in values:
        cleaned = value.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def extract_recommendation_constraints(
    message: str,
    taste_hints: Optional[list[str]] = None,
) -> RecommendationConstraints:
    combined = f"{message} {' '.join(taste_hints or [])}".lower()
    tokens = set(t for t in _TOKEN_SPLIT_RE.split(combined) if t)

    return RecommendationConstraints(
        categories=_unique(c for c in KNOWN_CATEGORIES if c in tokens),
        vibes=_unique(v for v in KNOWN_VIBES if v in tokens),
        locations=_unique(
            loc for loc in KNOWN_LOCATIONS
            if (loc in combined if " " in loc else loc in tokens)
        ),
        budgets=_unique(m.group(0) for m in _BUDGET_RE.finditer(combined)),
        time_windows=_unique(m.group(0) for m in _TIME_WINDOW_RE.finditer(combined)),
        disliked_source_patterns=_unique(m.group(1) for m in _DISLIKED_SOURCE_RE.finditer(combined)),
    )


def derive_recommendation_signals(
    message: str,
    taste_hints: Optional[list[str]] = None,
) -> RecommendationSignals:
    merged = f"{message.lower()} {' '.join(taste_hints or []).lower()}"
    if _FRESH_RE.search(merged):
        novelty = "fresh"
    elif _FAMILIAR_RE.search(merged):
        novelty = "familiar"
    else:
        novelty = "balanced"

    return RecommendationSignals(
        novelty_preference=novelty,
        source_diversity_target={"fresh": 4, "balanced": 3, "familiar": 2}[novelty],
        boredom_signal=bool(_BOREDOM_RE.search(merged)),
    )


def extract_implicit_preferences(message: str) -> list[MemoryFact]:
    """Facts stated in passing ("I love tapas", "my kids", "I live in Ottawa"), de-duplicated."""
    facts: list[MemoryFact] = []

    for match in _PREFERENCE_RE.finditer(message):
        value = match.group(1).strip()
        if len(value) > 2:
            facts.append(MemoryFact("taste_memory", "explicit_preference", value))

    for match in _PARTNER_PREFERENCE_RE.finditer(message):
        value = match.group(1).strip()
        if len(value) > 2:
            facts.append(MemoryFact("taste_memory", "partner_preference", value))

    if _PARTNER_RE.search(message):
        facts.append(MemoryFact("profile_memory", "household", "has partner"))
    if _CHILDREN_RE.search(message):
        facts.append(MemoryFact("profile_memory", "household", "has children"))

    location = _LOCATION_RE.search(message)
    if location:
        facts.append(MemoryFact("profile_memory", "city", location.group(1).strip()))

    for pattern in _BUDGET_AMOUNT_RES:
        budget = pattern.search(message)
        if budget:
            groups = budget.groups()
            value = f"${groups[0]}-${groups[1]}" if len(groups) > 1 and groups[1] else f"under ${groups[0]}"
            facts.append(MemoryFact("logistics_memory", "budget_range", value))
            break

    return list(dict.fromkeys(facts))
