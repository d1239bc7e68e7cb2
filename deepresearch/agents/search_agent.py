from __future__ import annotations

import re
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from deepresearch.agents.base import BaseAgent, Tool, ToolRegistry
from deepresearch.agents.extract_agent import ExtractAgent
from deepresearch.config import settings
from deepresearch.errors import PageFetchError
from deepresearch.models.events import StreamSink, SubagentStreamEvent
from deepresearch.models.research import (
    ExtractionInput,
    PageInput,
    PersistenceAdapter,
    SearchResult,
    SearchSession,
)
from deepresearch.models.schemas import (
    DiscoverSkillsInput,
    ExtractInput,
    LoadSkillInput,
    SearchDecision,
    SearchInput,
)
from deepresearch.research_core.evidence import (
    EvidenceStore,
    has_usable_evidence,
    merge_results,
    validate_claims,
)
from deepresearch.research_core.lines import build_selections_from_ranges, split_lines
from deepresearch.research_core.skills import SKILL_PROFILE_NONE, SkillRegistry
from deepresearch.research_core.text import clamp_text
from deepresearch.services import logger as log_service
from deepresearch.services.prompt_store import render_prompt
from deepresearch.tools.jina_reader import JinaReaderFetcher, PageFetcher
from deepresearch.tools.tavily_search import TavilySearchProvider, WebSearchProvider, hits_to_dicts

ERROR_RESULT_URL = "search://subagent-error/{index}"
ERROR_RESULT_TITLE = "Search subagent"
_TOOL_KEY_RE = re.compile(r"\s+")


def normalize_tool_key(value: str) -> str:
    return _TOOL_KEY_RE.sub(" ", value).strip().lower()


def unique_trimmed(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SearchRunContext:
    """Mutable state of one search subagent run. Never shared between runs."""

    query: str
    session: SearchSession
    evidence: EvidenceStore = field(default_factory=EvidenceStore)
    extracted: list[SearchResult] = field(default_factory=list)
    search_lookup: dict[str, dict[str, str]] = field(default_factory=dict)
    search_calls: int = 0
    search_failures: int = 0
    extract_calls: int = 0
    extract_failures: int = 0
    search_calls_by_query: Counter = field(default_factory=Counter)
    extract_calls_by_url: Counter = field(default_factory=Counter)
    search_errors: list[str] = field(default_factory=list)
    extract_errors: list[str] = field(default_factory=list)

    @property
    def all_search_failed(self) -> bool:
        return self.search_calls > 0 and self.search_failures == self.search_calls

    @property
    def all_extract_failed(self) -> bool:
        return self.extract_calls > 0 and self.extract_failures == self.extract_calls

    def fail_search(self, message: str) -> dict[str, Any]:
        self.search_failures += 1
        self.search_errors.append(message)
        return {"results": [], "error": message}

    def fail_extract(self, url: str, message: str, **extra: Any) -> dict[str, Any]:
        self.extract_failures += 1
        self.extract_errors.append(message)
        result = SearchResult(
            url=url,
            title=self.search_lookup.get(url, {}).get("title"),
            page_id=extra.get("page_id"),
            line_count=extra.get("line_count"),
            broken=True,
            error=message,
        )
        self.extracted.append(result)
        return {**result.to_dict(), "raw_model_output": extra.get("raw_model_output", "")}

    def record_extract(self, result: SearchResult) -> None:
        if result.error:
            self.extract_errors.append(result.error)
        if result.ranges or result.contents or result.selections:
            self.evidence.merge(result)
        elif not (result.broken or result.irrelevant or result.error):
            return
        self.extracted.append(result)


@dataclass
class SearchOutcome:
    results: list[SearchResult]
    errors: list[str]
    fatal_tool_failure: bool = False
    raw_output: str = ""


class SearchAgent(BaseAgent):
    """Gathers evidence for a query through search and extract tools.

    Extract-tool outputs are the only evidence. The model's final report is
    decoded into a ``SearchDecision`` and validated against that evidence
    before it is merged with the genuine outputs.
    """

    name = "search_subagent"
    role = "search"

    def __init__(
        self,
        llm=None,
        model: str | None = None,
        *,
        search_provider: WebSearchProvider | None = None,
        page_fetcher: PageFetcher | None = None,
        persistence: PersistenceAdapter | None = None,
        extract_agent: ExtractAgent | None = None,
        skills: SkillRegistry | None = None,
        skill_profile: str | None = None,
    ):
        super().__init__(llm=llm, model=model)
        self.search_provider = search_provider or TavilySearchProvider()
        self.page_fetcher = page_fetcher or JinaReaderFetcher()
        self.persistence = persistence
        self.extract_agent = extract_agent or ExtractAgent(llm=llm)
        self.skills = skills if skills is not None else SkillRegistry.with_presets()
        self.skill_profile = (skill_profile or settings.skill_profile).strip().lower()
        self.max_search_calls = settings.max_search_calls
        self.max_extract_calls = settings.max_extract_calls
        self.max_repeat_search_query = settings.max_repeat_search_query
        self.max_repeat_extract_url = settings.max_repeat_extract_url

    @property
    def skills_enabled(self) -> bool:
        return self.skill_profile != SKILL_PROFILE_NONE and bool(self.skills.skills)

    # --- tools ---

    async def _search(self, ctx: SearchRunContext, args: SearchInput) -> dict[str, Any]:
        query = args.query.strip()
        ctx.search_calls += 1
        key = normalize_tool_key(query)
        ctx.search_calls_by_query[key] += 1
        if ctx.search_calls > self.max_search_calls:
            return ctx.fail_search(f"search call budget exceeded ({self.max_search_calls}).")
        if ctx.search_calls_by_query[key] > self.max_repeat_search_query:
            return ctx.fail_search(
                f"repeated search query blocked ({self.max_repeat_search_query}x max): {query}"
            )

        logger.info(f"Search subagent search query={clamp_text(query, 160)!r}")
        try:
            hits = await self.search_provider.search(query, max_results=settings.search_max_results)
        except Exception as e:
            logger.error(f"Search failed query={clamp_text(query, 160)!r}: {clamp_text(str(e), 260)}")
            return ctx.fail_search(str(e) or type(e).__name__)

        for hit in hits:
            url = hit.url.strip()
            if url:
                ctx.search_lookup[url] = {"title": hit.title, "snippet": hit.content}
        return {"results": hits_to_dicts(hits)}

    async def _extract(self, ctx: SearchRunContext, args: ExtractInput) -> dict[str, Any]:
        url = args.url.strip()
        ctx.extract_calls += 1
        ctx.extract_calls_by_url[url] += 1
        if ctx.extract_calls > self.max_extract_calls:
            return ctx.fail_extract(url, f"extract call budget exceeded ({self.max_extract_calls}).")
        if ctx.extract_calls_by_url[url] > self.max_repeat_extract_url:
            return ctx.fail_extract(
                url, f"repeated extract URL blocked ({self.max_repeat_extract_url}x max): {url}"
            )

        t0 = time.monotonic()
        stage = "init"
        title = ctx.search_lookup.get(url, {}).get("title")
        page_id: str | None = None
        line_count = 0
        raw_model_output = ""
        try:
            stage = "fetch-markdown"
            markdown = await self.page_fetcher.fetch_markdown(url)
            if not markdown.strip():
                raise PageFetchError(url, "content unavailable")
            lines = split_lines(markdown)
            line_count = len(lines)

            if self.persistence is not None:
                stage = "save-page"
                page = await self.persistence.save_page(
                    PageInput(
                        session_id=ctx.session.session_id,
                        query=args.query,
                        url=url,
                        title=title,
                        markdown=markdown,
                        fetched_at=_now_iso(),
                    )
                )
                page_id = page.page_id
                line_count = page.line_count

            stage = "extract-agent"
            outcome = await self.extract_agent.run(args.query, lines)
            raw_model_output = outcome.raw_model_output
            selections = build_selections_from_ranges(lines, outcome.ranges)

            if self.persistence is not None and page_id:
                stage = "save-extraction"
                await self.persistence.save_extraction(
                    ExtractionInput(
                        session_id=ctx.session.session_id,
                        page_id=page_id,
                        query=args.query,
                        url=url,
                        broken=outcome.broken,
                        line_count=line_count,
                        ranges=outcome.ranges,
                        selections=selections,
                        raw_model_output=raw_model_output,
                        extracted_at=_now_iso(),
                    )
                )
        except Exception as e:
            message = f"{stage}: {e}"
            logger.error(
                f"Extract failed url={clamp_text(url, 220)} stage={stage} "
                f"elapsed_ms={int((time.monotonic() - t0) * 1000)}: {clamp_text(message, 300)}"
            )
            return ctx.fail_extract(
                url,
                message,
                page_id=page_id,
                line_count=line_count or None,
                raw_model_output=raw_model_output,
            )

        result = SearchResult(
            url=url,
            title=title,
            page_id=page_id,
            line_count=line_count,
            ranges=list(outcome.ranges),
            selections=selections,
            contents=list(outcome.contents),
            broken=outcome.broken,
            irrelevant=outcome.irrelevant,
            error=outcome.error,
        )
        ctx.record_extract(result)
        logger.info(
            f"Extract done url={clamp_text(url, 220)} broken={result.broken} irrelevant={result.irrelevant} "
            f"selections={len(selections)} elapsed_ms={int((time.monotonic() - t0) * 1000)}"
        )
        return {**result.to_dict(), "raw_model_output": raw_model_output}

    async def _discover_skills(self, ctx: SearchRunContext, args: DiscoverSkillsInput) -> dict[str, Any]:
        suggested = self.skills.resolve_for_query(args.query or ctx.query, self.skill_profile)
        return {
            "skills": [skill.summary() for skill in self.skills.list_skills()],
            "suggested": [skill.name for skill in suggested],
        }

    async def _load_skill(self, ctx: SearchRunContext, args: LoadSkillInput) -> dict[str, Any]:
        skill = self.skills.get(args.name)
        if skill is None:
            raise ValueError(f"Unknown skill: {args.name}")
        return {"name": skill.name, "title": skill.title, "content": skill.content}

    def build_tools(self, ctx: SearchRunContext) -> ToolRegistry:
        async def search(args: SearchInput) -> dict[str, Any]:
            return await self._search(ctx, args)

        async def extract(args: ExtractInput) -> dict[str, Any]:
            return await self._extract(ctx, args)

        registry = ToolRegistry(
            [
                Tool(
                    name="search",
                    description="Web search for candidate pages. Returns ranked results with title, url and snippet.",
                    input_model=SearchInput,
                    handler=search,
                ),
                Tool(
                    name="extract",
                    description="Fetch one URL and return the line-numbered passages relevant to the query.",
                    input_model=ExtractInput,
                    handler=extract,
                ),
            ]
        )
        if self.skills_enabled:

            async def discover_skills(args: DiscoverSkillsInput) -> dict[str, Any]:
                return await self._discover_skills(ctx, args)

            async def load_skill(args: LoadSkillInput) -> dict[str, Any]:
                return await self._load_skill(ctx, args)

            registry.register(
                Tool(
                    name="discover_skills",
                    description="List available domain skills and the ones suggested for a topic.",
                    input_model=DiscoverSkillsInput,
                    handler=discover_skills,
                )
            )
            registry.register(
                Tool(
                    name="load_skill",
                    description="Load the full guidance of one skill by exact name.",
                    input_model=LoadSkillInput,
                    handler=load_skill,
                )
            )
        return registry

    # --- prompts ---

    def build_system_prompt(self, query: str) -> str:
        skill_tools = render_prompt("search_agent.skill_tools") if self.skills_enabled else ""
        system = render_prompt("search_agent.system_prompt", skill_tools=skill_tools)
        if self.skills_enabled:
            system = f"{system}\n\n{self.skills.prompt_block(query, self.skill_profile)}"
        return system

    def build_user_prompt(self, query: str) -> str:
        complexity = settings.search_complexity
        try:
            complexity_note = render_prompt(f"search_agent.complexity.{complexity}")
        except KeyError:
            complexity, complexity_note = "balanced", render_prompt("search_agent.complexity.balanced")
        return render_prompt(
            "search_agent.user_prompt",
            query=query,
            complexity=complexity,
            complexity_note=complexity_note,
            max_search_calls=self.max_search_calls,
            max_extract_calls=self.max_extract_calls,
            max_repeat_search_query=self.max_repeat_search_query,
            max_repeat_extract_url=self.max_repeat_extract_url,
        )

    # --- run ---

    async def run(
        self,
        query: str,
        session: SearchSession,
        *,
        sink: StreamSink | None = None,
        tool_call_id: str = "deepsearch",
    ) -> SearchOutcome:
        ctx = SearchRunContext(query=query, session=session)

        async def forward(transcript: list[dict[str, Any]]) -> None:
            if sink is not None:
                await sink.write(
                    SubagentStreamEvent(tool_call_id=tool_call_id, tool_name="search", messages=list(transcript))
                )

        loop = await self.run_tool_loop(
            system=self.build_system_prompt(query),
            prompt=self.build_user_prompt(query),
            tools=self.build_tools(ctx),
            on_message=forward,
        )

        decision = await self.client.parse(
            model=self.model,
            max_tokens=settings.llm_max_tokens,
            system=render_prompt("search_agent.structured_system"),
            prompt=render_prompt("search_agent.structured_prompt", query=query, raw_output=loop.final_text),
            schema=SearchDecision,
        )

        validated, claim_errors = validate_claims(decision.results, ctx.evidence, query=query)
        errors = unique_trimmed([*decision.errors, *claim_errors, *ctx.search_errors, *ctx.extract_errors])
        error_results = [
            SearchResult(
                url=ERROR_RESULT_URL.format(index=index),
                title=ERROR_RESULT_TITLE,
                broken=True,
                error=message,
            )
            for index, message in enumerate(errors, start=1)
        ]
        for item in validated:
            if item.title is None:
                item.title = ctx.search_lookup.get(item.url, {}).get("title")

        # A checked claim replaces the raw extract output for its URL.
        claimed_urls = {claim.url for claim in decision.results if claim.url}
        unclaimed = [item for item in ctx.extracted if item.url not in claimed_urls]
        results = merge_results([*validated, *unclaimed, *error_results])
        fatal = (ctx.all_search_failed or ctx.all_extract_failed) and not has_usable_evidence(results)
        if fatal:
            logger.warning(
                f"Search subagent fatal tool failure query={clamp_text(query, 160)!r} "
                f"all_search_failed={ctx.all_search_failed} all_extract_failed={ctx.all_extract_failed} "
                f"errors={[clamp_text(e, 180) for e in errors]}"
            )
        log_service.log_research_step(
            session_id=session.session_id,
            step_type="search_subagent",
            status="fatal_tool_failure" if fatal else "completed",
            data={
                "results": len(results),
                "search_calls": ctx.search_calls,
                "extract_calls": ctx.extract_calls,
                "errors": len(errors),
            },
        )
        return SearchOutcome(results=results, errors=errors, fatal_tool_failure=fatal, raw_output=loop.final_text)
