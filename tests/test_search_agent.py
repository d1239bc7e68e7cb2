from __future__ import annotations

import pytest

from fakes import (
    FakePageFetcher,
    FakeSearchProvider,
    MemoryPersistence,
    ScriptedLLM,
    numbered_page,
    text_response,
    tool_response,
)
from deepresearch.agents.extract_agent import ExtractAgent
from deepresearch.agents.search_agent import SearchAgent, SearchRunContext, normalize_tool_key, unique_trimmed
from deepresearch.errors import PageFetchError, SearchProviderError, StructuredOutputError
from deepresearch.models.events import SubagentStreamEvent
from deepresearch.models.research import LineRange, SearchSession
from deepresearch.models.schemas import ExtractDecision, LineRangeModel, SearchClaim, SearchDecision
from deepresearch.research_core.references import build_references, build_sources
from deepresearch.research_core.skills import SkillRegistry
from deepresearch.services.streaming import CollectingSink
from deepresearch.tools.tavily_search import SearchHit

URL = "https://example.com/report"
SESSION = SearchSession(session_id="s_1", query="q", created_at="2026-01-01T00:00:00+00:00", project_id="p_test")


def _ranges(*pairs):
    return [LineRangeModel(start=s, end=e) for s, e in pairs]


def _agent(search_llm, extract_llm=None, *, provider=None, fetcher=None, persistence=None, **kwargs) -> SearchAgent:
    return SearchAgent(
        llm=search_llm,
        model="search-model",
        search_provider=provider or FakeSearchProvider([SearchHit(title="Report", url=URL, content="snippet")]),
        page_fetcher=fetcher or FakePageFetcher({URL: numbered_page(30)}),
        persistence=persistence,
        extract_agent=ExtractAgent(llm=extract_llm or ScriptedLLM(), model="extract-model"),
        skill_profile=kwargs.pop("skill_profile", "none"),
        **kwargs,
    )


def _tool_results(llm: ScriptedLLM, turn: int) -> list[dict]:
    return llm.create_calls[turn]["messages"][-1]["content"]


def test_tool_key_helpers():
    assert normalize_tool_key("  Bitcoin   ETF ") == "bitcoin etf"
    assert unique_trimmed(["a", " a ", "", "  ", "b"]) == ["a", "b"]


class TestSearchAgentRun:
    @pytest.mark.asyncio
    async def test_validated_claims_merge_with_genuine_evidence(self):
        extract_llm = ScriptedLLM(
            turns=[text_response("Lines 10-20.")],
            parsed={"ExtractDecision": [ExtractDecision(ranges=_ranges((10, 20)))]},
        )
        search_llm = ScriptedLLM(
            turns=[
                tool_response(("c1", "search", {"query": "q"})),
                tool_response(("c2", "extract", {"url": URL, "query": "q"})),
                text_response(f"{URL}: lines 15-25"),
            ],
            parsed={
                "SearchDecision": [
                    SearchDecision(
                        results=[
                            SearchClaim(url=URL, ranges=_ranges((15, 25))),
                            SearchClaim(url="https://invented.example/", ranges=_ranges((1, 2))),
                        ]
                    )
                ]
            },
        )
        persistence = MemoryPersistence()
        sink = CollectingSink()

        outcome = await _agent(search_llm, extract_llm, persistence=persistence).run("q", SESSION, sink=sink)

        assert [r.url for r in outcome.results] == [URL, "search://subagent-error/1", "search://subagent-error/2"]
        result = outcome.results[0]
        assert result.ranges == [LineRange(15, 20)]
        assert result.title == "Report"
        assert result.page_id == "page_1"
        assert outcome.errors == [
            f"Claimed ranges clipped to extracted subset for URL: {URL}",
            "Claimed ranges for a URL that was never extracted: https://invented.example/; dropped.",
        ]
        assert not outcome.fatal_tool_failure
        assert outcome.raw_output == f"{URL}: lines 15-25"

        assert len(persistence.pages) == 1
        assert len(persistence.extractions) == 1
        assert persistence.extractions[0].ranges == [LineRange(10, 20)]

        assert len(sink.events) == 3
        assert all(isinstance(e, SubagentStreamEvent) and e.tool_name == "search" for e in sink.events)
        assert len(sink.events[-1].messages) == 3

    @pytest.mark.asyncio
    async def test_overlapping_claim_yields_clipped_reference(self):
        extract_llm = ScriptedLLM(
            turns=[text_response("Lines 10-20.")],
            parsed={"ExtractDecision": [ExtractDecision(ranges=_ranges((10, 20)))]},
        )
        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "extract", {"url": URL, "query": "q"})), text_response("done")],
            parsed={
                "SearchDecision": [
                    SearchDecision(
                        results=[SearchClaim(url=URL, ranges=_ranges((15, 25)), viewpoint="Growth slowed in Q3.")]
                    )
                ]
            },
        )

        outcome = await _agent(search_llm, extract_llm).run("q", SESSION)
        references = build_references(outcome.results, SESSION.project_id, SESSION.session_id)
        sources = build_sources(outcome.results, references)

        assert [(r.start_line, r.end_line) for r in references] == [(15, 20)]
        assert references[0].text == "\n".join(f"line {n}" for n in range(15, 21))
        assert sources[0].viewpoint == "Growth slowed in Q3."

    @pytest.mark.asyncio
    async def test_unclaimed_extract_output_is_kept(self):
        extract_llm = ScriptedLLM(
            turns=[text_response("Lines 10-20.")],
            parsed={"ExtractDecision": [ExtractDecision(ranges=_ranges((10, 20)))]},
        )
        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "extract", {"url": URL, "query": "q"})), text_response("done")]
        )

        outcome = await _agent(search_llm, extract_llm).run("q", SESSION)

        assert [r.url for r in outcome.results] == [URL]
        assert outcome.results[0].ranges == [LineRange(10, 20)]
        assert outcome.errors == []

    @pytest.mark.asyncio
    async def test_search_budget_is_enforced(self):
        search_llm = ScriptedLLM(
            turns=[
                tool_response(("c1", "search", {"query": "a"})),
                tool_response(("c2", "search", {"query": "b"})),
                text_response("done"),
            ]
        )
        agent = _agent(search_llm)
        agent.max_search_calls = 1

        outcome = await agent.run("q", SESSION)

        blocked = _tool_results(search_llm, 2)[0]
        assert "search call budget exceeded (1)." in blocked["content"]
        assert outcome.errors == ["search call budget exceeded (1)."]
        assert outcome.results[0].url == "search://subagent-error/1"
        assert outcome.results[0].title == "Search subagent"
        assert outcome.results[0].broken
        assert not outcome.fatal_tool_failure

    @pytest.mark.asyncio
    async def test_repeated_search_query_is_blocked(self):
        search_llm = ScriptedLLM(
            turns=[
                tool_response(("c1", "search", {"query": "Bitcoin ETF"})),
                tool_response(("c2", "search", {"query": " bitcoin  etf "})),
                tool_response(("c3", "search", {"query": "bitcoin etf"})),
                text_response("done"),
            ]
        )
        provider = FakeSearchProvider([])
        outcome = await _agent(search_llm, provider=provider).run("q", SESSION)

        assert len(provider.queries) == 2
        assert outcome.errors == ["repeated search query blocked (2x max): bitcoin etf"]

    @pytest.mark.asyncio
    async def test_repeated_extract_url_is_blocked(self):
        search_llm = ScriptedLLM(
            turns=[
                tool_response(("c1", "extract", {"url": URL, "query": "q"})),
                tool_response(("c2", "extract", {"url": URL, "query": "q"})),
                tool_response(("c3", "extract", {"url": URL, "query": "q"})),
                text_response("done"),
            ]
        )
        fetcher = FakePageFetcher({URL: numbered_page(5)})
        outcome = await _agent(search_llm, fetcher=fetcher).run("q", SESSION)

        assert len(fetcher.fetched) == 2
        assert f"repeated extract URL blocked (2x max): {URL}" in outcome.errors
        failed = next(r for r in outcome.results if r.url == URL)
        assert failed.broken

    @pytest.mark.asyncio
    async def test_fetch_failure_is_a_fatal_tool_failure(self):
        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "extract", {"url": URL, "query": "q"})), text_response("nothing")]
        )
        fetcher = FakePageFetcher(error=PageFetchError(URL, "Jina reader failed: 503"))

        outcome = await _agent(search_llm, fetcher=fetcher).run("q", SESSION)

        assert outcome.errors == ["fetch-markdown: Jina reader failed: 503"]
        assert outcome.fatal_tool_failure
        assert [r.url for r in outcome.results] == [URL, "search://subagent-error/1"]
        tool_result = _tool_results(search_llm, 1)[0]
        assert '"broken": true' in tool_result["content"]

    @pytest.mark.asyncio
    async def test_blank_page_fails_at_fetch_stage(self):
        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "extract", {"url": URL, "query": "q"})), text_response("nothing")]
        )
        outcome = await _agent(search_llm, fetcher=FakePageFetcher({URL: "  \n "})).run("q", SESSION)
        assert outcome.errors == ["fetch-markdown: content unavailable"]

    @pytest.mark.asyncio
    async def test_save_page_failure_names_its_stage(self):
        class FailingPersistence(MemoryPersistence):
            async def save_page(self, page):
                raise RuntimeError("disk full")

        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "extract", {"url": URL, "query": "q"})), text_response("nothing")]
        )
        outcome = await _agent(search_llm, persistence=FailingPersistence()).run("q", SESSION)
        assert outcome.errors == ["save-page: disk full"]

    @pytest.mark.asyncio
    async def test_extract_agent_failure_names_its_stage(self):
        extract_llm = ScriptedLLM(parsed={"ExtractDecision": [StructuredOutputError("ExtractDecision", "bad json")]})
        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "extract", {"url": URL, "query": "q"})), text_response("nothing")]
        )
        outcome = await _agent(search_llm, extract_llm).run("q", SESSION)
        assert outcome.errors == ["extract-agent: Structured output for ExtractDecision failed: bad json"]

    @pytest.mark.asyncio
    async def test_all_searches_failing_is_fatal(self):
        search_llm = ScriptedLLM(
            turns=[tool_response(("c1", "search", {"query": "q"})), text_response("search is down")],
            parsed={"SearchDecision": [SearchDecision(errors=["Tavily search failed: boom", " Tavily search failed: boom"])]},
        )
        provider = FakeSearchProvider(error=SearchProviderError("Tavily search failed: boom"))

        outcome = await _agent(search_llm, provider=provider).run("q", SESSION)

        assert outcome.fatal_tool_failure
        assert outcome.errors == ["Tavily search failed: boom"]
        assert [r.url for r in outcome.results] == ["search://subagent-error/1"]

    @pytest.mark.asyncio
    async def test_structured_decode_failure_propagates(self):
        search_llm = ScriptedLLM(parsed={"SearchDecision": [StructuredOutputError("SearchDecision", "bad")]})
        with pytest.raises(StructuredOutputError):
            await _agent(search_llm).run("q", SESSION)


class TestSearchAgentTools:
    def test_skill_tools_follow_profile(self):
        ctx = SearchRunContext(query="q", session=SESSION)
        with_skills = _agent(ScriptedLLM(), skills=SkillRegistry.with_presets(), skill_profile="auto")
        without = _agent(ScriptedLLM(), skills=SkillRegistry.with_presets(), skill_profile="none")

        assert with_skills.build_tools(ctx).names == ["search", "extract", "discover_skills", "load_skill"]
        assert without.build_tools(ctx).names == ["search", "extract"]
        assert "Skill registry:" in with_skills.build_system_prompt("bitcoin price")
        assert "Skill registry:" not in without.build_system_prompt("bitcoin price")

    @pytest.mark.asyncio
    async def test_load_skill_dispatch(self):
        ctx = SearchRunContext(query="q", session=SESSION)
        agent = _agent(ScriptedLLM(), skills=SkillRegistry.with_presets(), skill_profile="auto")
        tools = agent.build_tools(ctx)

        loaded = await tools.dispatch("load_skill", {"name": "Academic-Research"})
        assert loaded["name"] == "academic-research"
        discovered = await tools.dispatch("discover_skills", {"query": "crypto token risk"})
        assert discovered["suggested"] == ["web3-investing"]
        with pytest.raises(ValueError, match="Unknown skill"):
            await tools.dispatch("load_skill", {"name": "astrology"})

    def test_user_prompt_carries_budgets(self):
        prompt = _agent(ScriptedLLM()).build_user_prompt("what changed?")
        assert prompt.startswith("User question: what changed?")
        assert "at most 4 search calls and 10 extract calls" in prompt
