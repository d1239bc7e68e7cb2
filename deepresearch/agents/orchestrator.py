from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from deepresearch.agents.search_agent import SearchAgent
from deepresearch.errors import EmptyQueryError, FinalizeProtocolError
from deepresearch.llm_client import LanguageModelInvoker
from deepresearch.models.events import StreamSink
from deepresearch.models.research import (
    PersistedSearchRecord,
    PersistenceAdapter,
    Reference,
    SearchSession,
    Source,
)
from deepresearch.research_core.citations import CitationLinker
from deepresearch.research_core.references import build_context_prompt, build_references, build_sources
from deepresearch.research_core.synthesis import (
    NO_CONCLUSION,
    SynthesisStreamer,
    build_no_evidence_prompt,
    collect_result_errors,
)
from deepresearch.services import logger as log_service
from deepresearch.services.streaming import (
    OrderedEventWriter,
    session_complete,
    session_failed,
    session_running,
)

CANCELLED_MESSAGE = "Deep search cancelled."


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DeepSearchResult:
    session: SearchSession
    query: str
    prompt: str
    conclusion_raw: str
    conclusion: str
    sources: list[Source] = field(default_factory=list)
    references: list[Reference] = field(default_factory=list)
    fatal_tool_failure: bool = False


@dataclass
class RunState:
    """Per-run bookkeeping shared between ``run`` and its pipeline task."""

    session: SearchSession | None = None
    committing: bool = False
    finalized: bool = False


class SearchOrchestrator:
    """Runs one deep search: search subagent, references, streamed synthesis, finalize.

    Each ``run`` emits ``running`` events followed by exactly one terminal
    event (``complete`` or ``failed``). Finalize is the single commit point
    and is skipped when the run is cancelled before it starts. A cancel that
    arrives once the commit has begun lets the run complete.
    """

    def __init__(
        self,
        llm: LanguageModelInvoker | None = None,
        *,
        persistence: PersistenceAdapter | None = None,
        search_agent: SearchAgent | None = None,
        synthesizer: SynthesisStreamer | None = None,
    ):
        self.persistence = persistence
        self.search_agent = search_agent or SearchAgent(llm=llm, persistence=persistence)
        self.synthesizer = synthesizer or SynthesisStreamer(llm=llm)

    async def _open_session(self, query: str) -> SearchSession:
        if self.persistence is not None:
            return await self.persistence.create_search_session(query)
        return SearchSession(session_id=f"local-{uuid.uuid4().hex}", query=query, created_at=_now_iso())

    async def _finalize_once(self, record: PersistedSearchRecord, run: RunState) -> None:
        if run.finalized:
            raise FinalizeProtocolError(record.session_id)
        run.finalized = True
        if self.persistence is not None:
            await asyncio.shield(self.persistence.finalize_search(record))

    async def run(
        self,
        query: str,
        sink: StreamSink | None = None,
        *,
        cancel: asyncio.Event | None = None,
        tool_call_id: str = "deepsearch",
    ) -> DeepSearchResult:
        writer = OrderedEventWriter(sink)
        normalized = query.strip()
        if not normalized:
            error = EmptyQueryError()
            await writer.write(session_failed(query, error.message))
            raise error

        state = RunState()
        pipeline = asyncio.create_task(self._pipeline(normalized, writer, state, tool_call_id, cancel))
        waiter = asyncio.create_task(cancel.wait()) if cancel is not None else None
        try:
            if waiter is not None:
                await asyncio.wait({pipeline, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not pipeline.done() and not state.committing:
                    pipeline.cancel()
            return await asyncio.shield(pipeline)
        except asyncio.CancelledError:
            if not state.committing:
                pipeline.cancel()
            await asyncio.gather(pipeline, return_exceptions=True)
            session = state.session
            if state.finalized and writer.closed:
                logger.warning(f"Deep search cancelled after commit query={normalized!r}")
                raise
            logger.warning(f"Deep search cancelled query={normalized!r}")
            if session is not None:
                log_service.log_research_step(session.session_id, "deepsearch", "cancelled")
            if not writer.closed:
                await writer.write(session_failed(normalized, CANCELLED_MESSAGE, session))
            raise
        except Exception as e:
            session = state.session
            message = str(e) or "Deep search failed."
            logger.error(f"Deep search failed query={normalized!r}: {message}")
            if session is not None:
                log_service.log_research_step(session.session_id, "deepsearch", "failed", {"error": message})
            if not writer.closed:
                await writer.write(session_failed(normalized, message, session))
            raise
        finally:
            if waiter is not None and not waiter.done():
                waiter.cancel()

    async def _pipeline(
        self,
        query: str,
        writer: OrderedEventWriter,
        state: RunState,
        tool_call_id: str,
        cancel: asyncio.Event | None = None,
    ) -> DeepSearchResult:
        session = await self._open_session(query)
        state.session = session
        log_service.log_research_step(session.session_id, "deepsearch", "started", {"query": query})
        await writer.write(session_running(query, session))

        outcome = await self.search_agent.run(query, session, sink=writer, tool_call_id=tool_call_id)
        references = build_references(outcome.results, session.project_id, session.session_id)
        sources = build_sources(outcome.results, references)
        await writer.write(session_running(query, session, sources=sources, references=references))

        has_evidence = bool(sources) and bool(references)
        if has_evidence:
            prompt = build_context_prompt(query, references)
        else:
            prompt = build_no_evidence_prompt(
                query,
                collect_result_errors(outcome.results),
                fatal_tool_failure=outcome.fatal_tool_failure,
            )

        linker = CitationLinker(references)
        conclusion_raw = ""
        async for delta in self.synthesizer.stream(prompt=prompt, has_evidence=has_evidence):
            conclusion_raw += delta
            await writer.write(
                session_running(
                    query,
                    session,
                    sources=sources,
                    references=references,
                    prompt=prompt,
                    conclusion=linker.linkify(conclusion_raw),
                )
            )

        final_raw = conclusion_raw.strip() or NO_CONCLUSION
        final_linked = linker.linkify(final_raw)
        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError()
        state.committing = True
        await self._finalize_once(
            PersistedSearchRecord(
                session_id=session.session_id,
                project_id=session.project_id,
                query=query,
                prompt=prompt,
                conclusion_raw=final_raw,
                conclusion_linked=final_linked,
                references=references,
                created_at=session.created_at,
                completed_at=_now_iso(),
            ),
            state,
        )
        await writer.write(
            session_complete(
                query,
                session,
                sources=sources,
                references=references,
                prompt=prompt,
                conclusion=final_linked,
            )
        )
        log_service.log_research_step(
            session.session_id,
            "deepsearch",
            "completed",
            {"sources": len(sources), "references": len(references), "evidence": has_evidence},
        )
        return DeepSearchResult(
            session=session,
            query=query,
            prompt=prompt,
            conclusion_raw=final_raw,
            conclusion=final_linked,
            sources=sources,
            references=references,
            fatal_tool_failure=outcome.fatal_tool_failure,
        )
