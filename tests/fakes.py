from __future__ import annotations

import asyncio
from typing import Any

from deepresearch.llm_client import MessageResponse, TextBlock, ToolUseBlock, Usage
from deepresearch.models.research import PersistedPage, PersistedSearchRecord, SearchSession
from deepresearch.research_core.lines import split_lines
from deepresearch.tools.tavily_search import SearchHit


def text_response(text: str) -> MessageResponse:
    return MessageResponse(content=[TextBlock(type="text", text=text)], usage=Usage(10, 5))


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> MessageResponse:
    content: list[Any] = [TextBlock(type="text", text=text)] if text else []
    content.extend(ToolUseBlock(type="tool_use", id=cid, name=name, input=args) for cid, name, args in calls)
    return MessageResponse(content=content, usage=Usage(10, 5))


class FakeStream:
    def __init__(self, chunks: list[str], error: Exception | None = None, gate: asyncio.Event | None = None):
        self._chunks = chunks
        self._error = error
        self._gate = gate
        self.usage = Usage(3, len(chunks))
        self.closed = False

    async def __aenter__(self) -> "FakeStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.closed = True

    async def _iter(self):
        for chunk in self._chunks:
            if self._gate is not None:
                await self._gate.wait()
            yield chunk
        if self._error is not None:
            raise self._error

    @property
    def text_stream(self):
        return self._iter()


class ScriptedLLM:
    """Returns queued responses for create/parse/stream and records every call."""

    def __init__(
        self,
        *,
        turns: list[MessageResponse] | None = None,
        parsed: dict[str, list[Any]] | None = None,
        chunks: list[str] | None = None,
        stream_error: Exception | None = None,
        stream_gate: asyncio.Event | None = None,
    ):
        self.turns = list(turns or [])
        self.parsed = {name: list(values) for name, values in (parsed or {}).items()}
        self.chunks = list(chunks or [])
        self.stream_error = stream_error
        self.stream_gate = stream_gate
        self.create_calls: list[dict[str, Any]] = []
        self.parse_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []
        self.streams: list[FakeStream] = []

    async def create(self, **kwargs: Any) -> MessageResponse:
        self.create_calls.append(kwargs)
        if self.turns:
            return self.turns.pop(0)
        return text_response("done")

    async def parse(self, *, schema, **kwargs: Any):
        self.parse_calls.append({"schema": schema, **kwargs})
        queue = self.parsed.get(schema.__name__)
        value = queue.pop(0) if queue else schema()
        if isinstance(value, Exception):
            raise value
        return value

    def stream(self, **kwargs: Any) -> FakeStream:
        self.stream_calls.append(kwargs)
        stream = FakeStream(self.chunks, self.stream_error, self.stream_gate)
        self.streams.append(stream)
        return stream


class FakeSearchProvider:
    def __init__(self, hits: list[SearchHit] | None = None, error: Exception | None = None):
        self.hits = hits or []
        self.error = error
        self.queries: list[str] = []

    async def search(self, query: str, *, max_results: int | None = None) -> list[SearchHit]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.hits)


class FakePageFetcher:
    def __init__(self, pages: dict[str, str] | None = None, error: Exception | None = None):
        self.pages = pages or {}
        self.error = error
        self.fetched: list[str] = []

    async def fetch_markdown(self, url: str) -> str:
        self.fetched.append(url)
        if self.error is not None:
            raise self.error
        return self.pages[url]


class MemoryPersistence:
    def __init__(self, project_id: str | None = "p_test"):
        self._project_id = project_id
        self.pages: dict[tuple[str, str], Any] = {}
        self.extractions: list[Any] = []
        self.finalized: list[PersistedSearchRecord] = []
        self.sessions: list[SearchSession] = []

    @property
    def project_id(self) -> str | None:
        return self._project_id

    async def create_search_session(self, query: str) -> SearchSession:
        session = SearchSession(
            session_id=f"s_{len(self.sessions) + 1}",
            query=query,
            created_at="2026-01-01T00:00:00+00:00",
            project_id=self._project_id,
        )
        self.sessions.append(session)
        return session

    async def save_page(self, page):
        key = (page.session_id, page.url)
        if key not in self.pages:
            self.pages[key] = PersistedPage(page_id=f"page_{len(self.pages) + 1}", line_count=len(split_lines(page.markdown)))
        return self.pages[key]

    async def save_extraction(self, extraction) -> None:
        self.extractions.append(extraction)

    async def finalize_search(self, record: PersistedSearchRecord) -> None:
        self.finalized.append(record)


def numbered_page(count: int, prefix: str = "line") -> str:
    return "\n".join(f"{prefix} {n}" for n in range(1, count + 1))
