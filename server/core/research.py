"""
Research loop — fetch fresh sources, score them and pick a diverse set.

Candidates come from installed pack data sources plus a handful of seed
search pages. Pages are fetched in parallel with httpx; a failed fetch is
dropped, never fatal.
"""
import asyncio
import html
import logging
import re
from datetime import datetime
from typing import Optional
from urllib.parse import quote_plus, urlparse

import httpx
from pydantic import BaseModel

from config.settings import settings
from core.signals import RecommendationConstraints, RecommendationSignals
from database.repositories.memory_repo import MemoryRepository

logger = logging.getLogger(__name__)

MIN_FETCHES = 3
MAX_FETCHES = 10
DEFAULT_FETCHES = 6
MAX_PICKS = 4
EXCERPT_CHARS = 260
REMEMBERED_DOMAINS = 3

EMPTY_REPLY = (
    "I dug for fresh sources but couldn't find strong matches yet. Share a city and "
    "budget and I will run a tighter discovery pass."
)

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_TERM_RE = re.compile(r"[a-z0-9]{3,}")
_FRESH_RE = re.compile(r"\b(this week|this weekend|tonight|upcoming|new|opening|just opened)\b", re.IGNORECASE)
_STOPWORDS = {
    "the", "and", "for", "with", "something", "want", "need", "find", "some", "any",
    "can", "you", "please", "new", "fresh", "ideas", "idea", "what", "where",
}


class ResearchCandidate(BaseModel):
    url: str
    label: str
    from_pack: bool = False


class ResearchPick(BaseModel):
    title: str
    url: str
    source_name: str
    domain: str
    excerpt: str = ""
    score: float = 0.0


class ResearchResult(BaseModel):
    reply: str
    picks: list[ResearchPick] = []
    fetched: int = 0


def clamp_fetches(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_FETCHES
    return min(max(int(value), MIN_FETCHES), MAX_FETCHES)


def domain_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def query_terms(message: str, constraints: Optional[RecommendationConstraints] = None) -> list[str]:
    terms = [t for t in _TERM_RE.findall(message.lower()) if t not in _STOPWORDS]
    if constraints:
        terms.extend(constraints.categories + constraints.vibes + constraints.locations)
    return list(dict.fromkeys(terms))


def seed_candidates(message: str, constraints: Optional[RecommendationConstraints] = None) -> list[ResearchCandidate]:
    """Public search pages that usually surface fresh listings."""
    location = constraints.locations[0] if constraints and constraints.locations else ""
    q = quote_plus(f"{message} {location}".strip())
    return [
        ResearchCandidate(url=f"https://www.eventbrite.com/d/online/{q}/", label="Eventbrite"),
        ResearchCandidate(url=f"https://www.timeout.com/search?q={q}", label="TimeOut"),
        ResearchCandidate(url=f"https://www.tripadvisor.com/Search?q={q}", label="Tripadvisor"),
        ResearchCandidate(url=f"https://www.reddit.com/search/?q={q}", label="Reddit"),
        ResearchCandidate(url=f"https://www.google.com/search?q={q}", label="Google"),
    ]


def pack_candidates(packs: list[dict]) -> list[ResearchCandidate]:
    candidates = []
    for pack in packs:
        for source in pack.get("data_sources") or []:
            if isinstance(source, dict) and isinstance(source.get("url"), str):
                candidates.append(ResearchCandidate(
                    url=source["url"],
                    label=source.get("label") or domain_of(source["url"]),
                    from_pack=True,
                ))
    return candidates


def extract_page(body: str) -> tuple[str, str]:
    """(title, plain-text excerpt) from an HTML body."""
    title_match = _TITLE_RE.search(body)
    title = html.unescape(_SPACE_RE.sub(" ", title_match.group(1))).strip() if title_match else ""
    text = _TAG_RE.sub(" ", _SCRIPT_RE.sub(" ", body))
    text = html.unescape(_SPACE_RE.sub(" ", text)).strip()
    return title, text


def score_page(
    text: str,
    url: str,
    terms: list[str],
    known_domains: set[str],
    from_pack: bool,
    signals: Optional[RecommendationSignals] = None,
) -> float:
    lower = text.lower()
    term_score = min(sum(1 for t in terms if t in lower), 5)
    current_year = str(datetime.now().year)
    fresh = current_year in text or bool(_FRESH_RE.search(text))
    freshness = 2.0 if fresh else 0.5
    novelty = 0.5 if domain_of(url) in known_domains else 2.0
    secure = 1.5 if url.startswith("https://") else 0.5
    score = term_score + freshness + novelty + secure + (1.0 if from_pack else 0.0)
    if signals and (signals.novelty_preference == "fresh" or signals.boredom_signal):
        score += freshness * 0.5 + novelty * 0.5
    return round(score, 3)


def diversify(picks: list[ResearchPick], limit: int = MAX_PICKS) -> list[ResearchPick]:
    """Best pick per domain first, then fill remaining slots by score."""
    ordered = sorted(picks, key=lambda p: p.score, reverse=True)
    chosen: list[ResearchPick] = []
    seen_domains = set()
    for pick in ordered:
        if pick.domain not in seen_domains:
            chosen.append(pick)
            seen_domains.add(pick.domain)
        if len(chosen) >= limit:
            return chosen
    for pick in ordered:
        if pick not in chosen:
            chosen.append(pick)
        if len(chosen) >= limit:
            break
    return chosen


def format_research_reply(picks: list[ResearchPick], diversity_target: int) -> str:
    if not picks:
        return EMPTY_REPLY
    lines = [
        "I ran a fresh-source research pass and prioritized diversity across at least "
        f"{diversity_target} source domains."
    ]
    for i, pick in enumerate(picks, start=1):
        why = pick.excerpt[:140].rstrip() or "Fresh listing that matches your request."
        lines.append(f"{i}. {pick.title} — {why} Source: {pick.source_name} ({pick.url})")
    lines.append("Tell me which one you prefer and I can go deeper on that lane.")
    return "\n".join(lines)


class ResearchLoop:
    """Fetch, score and diversify fresh sources for an open-ended request."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        memory_repo: Optional[MemoryRepository] = None,
    ):
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.RESEARCH_FETCH_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": f"{settings.LLM_APP_TITLE}-research/1.0"},
        )
        self.memory_repo = memory_repo

    async def _known_domains(self) -> set[str]:
        if not self.memory_repo:
            return set()
        entries = await self.memory_repo.list_entries("history_memory")
        return {e["value"] for e in entries if e.get("key") == "recent_source_domain" and e.get("value")}

    async def _fetch(self, candidate: ResearchCandidate) -> Optional[tuple[ResearchCandidate, str]]:
        try:
            response = await self.http_client.get(candidate.url, timeout=settings.RESEARCH_FETCH_TIMEOUT)
            response.raise_for_status()
            return candidate, response.text
        except httpx.HTTPError as e:
            logger.warning(f"Research fetch failed for {candidate.url}: {e}")
            return None

    async def run(
        self,
        message: str,
        packs: Optional[list[dict]] = None,
        constraints: Optional[RecommendationConstraints] = None,
        signals: Optional[RecommendationSignals] = None,
        max_fetches: Optional[int] = None,
    ) -> ResearchResult:
        limit = clamp_fetches(max_fetches)
        candidates = pack_candidates(packs or []) + seed_candidates(message, constraints)
        by_url: dict[str, ResearchCandidate] = {}
        for candidate in candidates:
            by_url.setdefault(candidate.url, candidate)
        unique = list(by_url.values())[:limit]

        known_domains = await self._known_domains()
        terms = query_terms(message, constraints)
        fetched = await asyncio.gather(*(self._fetch(c) for c in unique))

        picks = []
        for item in fetched:
            if item is None:
                continue
            candidate, body = item
            title, text = extract_page(body)
            picks.append(ResearchPick(
                title=title or candidate.label,
                url=candidate.url,
                source_name=candidate.label,
                domain=domain_of(candidate.url),
                excerpt=text[:EXCERPT_CHARS],
                score=score_page(text, candidate.url, terms, known_domains, candidate.from_pack, signals),
            ))

        chosen = diversify(picks)
        diversity_target = signals.source_diversity_target if signals else 3
        logger.info(f"Research pass fetched {len(picks)}/{len(unique)} sources, picked {len(chosen)}")

        await self._remember_domains(chosen)
        return ResearchResult(
            reply=format_research_reply(chosen, diversity_target),
            picks=chosen,
            fetched=len(picks),
        )

    async def _remember_domains(self, picks: list[ResearchPick]) -> None:
        if not self.memory_repo:
            return
        for domain in list(dict.fromkeys(p.domain for p in picks))[:REMEMBERED_DOMAINS]:
            try:
                await self.memory_repo.upsert_if_new(
                    "history_memory", "recent_source_domain", domain, "inferred", 0.72,
                )
            except Exception as e:
                logger.error(f"Failed to remember research domain {domain}: {e}")

    async def close(self):
        await self.http_client.aclose()
