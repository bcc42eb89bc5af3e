"""Tests for the fresh-source research loop."""
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from core.research import (
    DEFAULT_FETCHES,
    EMPTY_REPLY,
    ResearchLoop,
    ResearchPick,
    clamp_fetches,
    diversify,
    domain_of,
    extract_page,
    format_research_reply,
    pack_candidates,
    score_page,
)
from core.signals import derive_recommendation_signals

TAPAS_PAGE = "<html><head><title>Best Tapas Bars</title></head><body><p>New tapas spots in Toronto</p></body></html>"
PLAIN_PAGE = "<html><head><title>Things to do</title></head><body><p>Museums and galleries</p></body></html>"


def _pick(domain, score, title=None):
    return ResearchPick(
        title=title or f"{domain} {score}",
        url=f"https://{domain}/{score}",
        source_name=domain,
        domain=domain,
        score=score,
    )


class TestHelpers:
    @pytest.mark.parametrize("value,expected", [
        (None, DEFAULT_FETCHES),
        (1, 3),
        (5, 5),
        (50, 10),
    ])
    def test_clamp_fetches(self, value, expected):
        assert clamp_fetches(value) == expected

    def test_domain_of_strips_www(self):
        assert domain_of("https://www.BlogTO.com/eat_drink") == "blogto.com"
        assert domain_of("not a url") == ""

    def test_extract_page(self):
        title, text = extract_page(
            "<html><title> A &amp; B </title><script>var x = 1;</script><p>Hello</p></html>"
        )
        assert title == "A & B"
        assert text == "A & B Hello"

    def test_pack_candidates_skip_sources_without_url(self):
        candidates = pack_candidates([
            {"data_sources": [{"url": "https://www.blogto.com/"}, {"label": "broken"}]},
            {"data_sources": None},
        ])
        assert [(c.url, c.label, c.from_pack) for c in candidates] == [
            ("https://www.blogto.com/", "blogto.com", True),
        ]


class TestScoring:
    def test_known_plain_page(self):
        score = score_page("tapas in the city", "http://x.com/a", ["tapas"], {"x.com"}, False)
        assert score == 2.5

    def test_fresh_unknown_pack_page(self):
        score = score_page("tapas opening tonight", "https://y.com/a", ["tapas"], set(), True)
        assert score == 7.5

    def test_fresh_preference_boosts(self):
        signals = derive_recommendation_signals("something new please")
        base = score_page("tapas", "http://x.com/a", ["tapas"], {"x.com"}, False)
        boosted = score_page("tapas", "http://x.com/a", ["tapas"], {"x.com"}, False, signals)
        assert boosted == base + 0.5


class TestDiversify:
    def test_one_per_domain_first(self):
        picks = [_pick("a.com", 9), _pick("a.com", 8), _pick("b.com", 5)]
        assert [p.score for p in diversify(picks, limit=2)] == [9, 5]

    def test_fills_remaining_by_score(self):
        picks = [_pick("a.com", 9), _pick("a.com", 8), _pick("b.com", 5)]
        assert [p.score for p in diversify(picks, limit=3)] == [9, 5, 8]


class TestFormatReply:
    def test_empty(self):
        assert format_research_reply([], 3) == EMPTY_REPLY

    def test_lists_sources(self):
        reply = format_research_reply([_pick("a.com", 9, title="Rooftop Cinema")], 4)
        lines = reply.split("\n")

        assert "at least 4 source domains" in lines[0]
        assert lines[1].startswith("1. Rooftop Cinema")
        assert "Fresh listing that matches your request." in lines[1]
        assert "Source: a.com (https://a.com/9)" in lines[1]


class TestResearchLoop:
    @staticmethod
    def _client(pages):
        def handler(request):
            body = pages.get(request.url.host)
            if body is None:
                return httpx.Response(500)
            return httpx.Response(200, text=body)
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_scores_and_remembers_domains(self):
        memory_repo = MagicMock()
        memory_repo.list_entries = AsyncMock(return_value=[
            {"key": "recent_source_domain", "value": "timeout.com"},
        ])
        memory_repo.upsert_if_new = AsyncMock(return_value=True)
        client = self._client({"www.blogto.com": TAPAS_PAGE, "www.timeout.com": PLAIN_PAGE})
        loop = ResearchLoop(http_client=client, memory_repo=memory_repo)

        result = await loop.run(
            "tapas in toronto",
            packs=[{"data_sources": [{"label": "blogTO", "url": "https://www.blogto.com/eat_drink"}]}],
            max_fetches=3,
        )
        await loop.close()

        # blogto, eventbrite (500) and timeout are the first three candidates
        assert result.fetched == 2
        assert [p.domain for p in result.picks] == ["blogto.com", "timeout.com"]
        assert result.picks[0].title == "Best Tapas Bars"
        assert "Source: blogTO (https://www.blogto.com/eat_drink)" in result.reply
        stored = [c.args[2] for c in memory_repo.upsert_if_new.await_args_list]
        assert stored == ["blogto.com", "timeout.com"]

    @pytest.mark.asyncio
    async def test_all_fetches_failing(self):
        loop = ResearchLoop(http_client=self._client({}))
        result = await loop.run("jazz bars")
        await loop.close()

        assert result.picks == []
        assert result.reply == EMPTY_REPLY
