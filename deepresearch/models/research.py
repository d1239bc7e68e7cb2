from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True, order=True)
class LineRange:
    """Inclusive, 1-based line span inside one fetched page."""

    start: int
    end: int

    @property
    def key(self) -> str:
        return f"{self.start}:{self.end}"

    def contains(self, other: "LineRange") -> bool:
        return other.start >= self.start and other.end <= self.end

    def intersect(self, other: "LineRange") -> "LineRange | None":
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if end < start:
            return None
        return LineRange(start, end)

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True, slots=True)
class LineSelection:
    start: int
    end: int
    text: str

    @property
    def range(self) -> LineRange:
        return LineRange(self.start, self.end)

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}


@dataclass(frozen=True, slots=True)
class SearchSession:
    session_id: str
    query: str
    created_at: str
    project_id: str | None = None


@dataclass(slots=True)
class SearchResult:
    """Per-URL evidence record produced by the search subagent."""

    url: str
    title: str | None = None
    page_id: str | None = None
    line_count: int | None = None
    ranges: list[LineRange] = field(default_factory=list)
    selections: list[LineSelection] = field(default_factory=list)
    contents: list[str] = field(default_factory=list)
    broken: bool = False
    irrelevant: bool = False
    error: str | None = None
    viewpoint: str | None = None

    @property
    def has_usable_evidence(self) -> bool:
        return (
            not self.error
            and not self.broken
            and not self.irrelevant
            and bool(self.ranges)
            and bool(self.contents)
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "url": self.url,
            "title": self.title,
            "page_id": self.page_id,
            "line_count": self.line_count,
            "ranges": [r.to_dict() for r in self.ranges],
            "selections": [s.to_dict() for s in self.selections],
            "contents": list(self.contents),
            "broken": self.broken,
            "inrelavate": self.irrelevant,
        }
        if self.error:
            payload["error"] = self.error
        if self.viewpoint:
            payload["viewpoint"] = self.viewpoint
        return payload


@dataclass(frozen=True, slots=True)
class Reference:
    ref_id: int
    uri: str
    page_id: str
    url: str
    title: str | None
    start_line: int
    end_line: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref_id": self.ref_id,
            "uri": self.uri,
            "page_id": self.page_id,
            "url": self.url,
            "title": self.title,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Reference":
        return cls(
            ref_id=int(payload["ref_id"]),
            uri=str(payload.get("uri") or ""),
            page_id=str(payload.get("page_id") or ""),
            url=str(payload["url"]),
            title=payload.get("title"),
            start_line=int(payload["start_line"]),
            end_line=int(payload["end_line"]),
            text=str(payload.get("text") or ""),
        )


@dataclass(slots=True)
class Source:
    url: str
    title: str
    snippet: str
    excerpts: list[str] = field(default_factory=list)
    reference_ids: list[int] = field(default_factory=list)
    error: str | None = None
    viewpoint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "excerpts": list(self.excerpts),
            "reference_ids": list(self.reference_ids),
        }
        if self.error:
            payload["error"] = self.error
        if self.viewpoint:
            payload["viewpoint"] = self.viewpoint
        return payload


# --- Persistence inputs ---


@dataclass(slots=True)
class PageInput:
    session_id: str
    query: str
    url: str
    markdown: str
    fetched_at: str
    title: str | None = None


@dataclass(frozen=True, slots=True)
class PersistedPage:
    page_id: str
    line_count: int


@dataclass(slots=True)
class ExtractionInput:
    session_id: str
    page_id: str
    query: str
    url: str
    broken: bool
    line_count: int
    ranges: list[LineRange]
    selections: list[LineSelection]
    raw_model_output: str
    extracted_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "page_id": self.page_id,
            "query": self.query,
            "url": self.url,
            "broken": self.broken,
            "line_count": self.line_count,
            "ranges": [r.to_dict() for r in self.ranges],
            "selections": [s.to_dict() for s in self.selections],
            "raw_model_output": self.raw_model_output,
            "extracted_at": self.extracted_at,
        }


@dataclass(slots=True)
class PersistedSearchRecord:
    session_id: str
    project_id: str | None
    query: str
    prompt: str
    conclusion_raw: str
    conclusion_linked: str
    references: list[Reference]
    created_at: str
    completed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": 1,
            "project_id": self.project_id,
            "session_id": self.session_id,
            "query": self.query,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "prompt": self.prompt,
            "conclusion_raw": self.conclusion_raw,
            "conclusion_linked": self.conclusion_linked,
            "references": [r.to_dict() for r in self.references],
        }


@runtime_checkable
class PersistenceAdapter(Protocol):
    """Storage boundary for pages, extractions and finalized searches.

    ``save_page`` must be idempotent per ``(session_id, url)`` and
    ``save_extraction`` append-only. ``finalize_search`` is the single commit
    point of a search session.
    """

    @property
    def project_id(self) -> str | None: ...

    async def create_search_session(self, query: str) -> SearchSession: ...

    async def save_page(self, page: PageInput) -> PersistedPage: ...

    async def save_extraction(self, extraction: ExtractionInput) -> None: ...

    async def finalize_search(self, record: PersistedSearchRecord) -> None: ...
