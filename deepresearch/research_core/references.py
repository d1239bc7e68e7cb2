"""Reference numbering, source summaries and the synthesis context prompt."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlparse

from deepresearch.config import settings
from deepresearch.models.research import Reference, SearchResult, Source
from deepresearch.research_core.text import clamp_text, derive_source_title, normalize_key_text

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

SOURCE_CONTENT_MAX_CHARS = 900
SOURCE_CONTENTS_TOTAL_CHARS = 3200
SOURCE_CONTENTS_MAX_ITEMS = 6
SOURCE_SNIPPET_MAX_CHARS = 400
SOURCE_ERROR_MAX_CHARS = 260
SOURCE_VIEWPOINT_MAX_CHARS = 240


@dataclass(frozen=True, slots=True)
class RefUriParts:
    project_id: str
    session_id: str
    ref_id: int


def build_ref_uri(project_id: str, session_id: str, ref_id: int, *, scheme: str | None = None) -> str:
    scheme = scheme or settings.citation_uri_scheme
    return (
        f"{scheme}://project/{quote(project_id, safe='')}"
        f"/search/{quote(session_id, safe='')}/ref/{ref_id}"
    )


def parse_ref_uri(value: str, *, scheme: str | None = None) -> RefUriParts | None:
    """Inverse of ``build_ref_uri``; returns None for anything not a valid reference URI."""
    scheme = scheme or settings.citation_uri_scheme
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        parsed = urlparse(trimmed)
    except ValueError:
        return None
    if parsed.scheme != scheme or parsed.netloc != "project":
        return None
    segments = [unquote(s.strip()) for s in parsed.path.split("/") if s.strip()]
    if len(segments) < 5 or segments[1] != "search" or segments[3] != "ref":
        return None
    project_id, session_id, raw_ref_id = segments[0], segments[2], segments[4]
    if not SAFE_ID_RE.match(project_id) or not SAFE_ID_RE.match(session_id):
        return None
    if not raw_ref_id.isdigit() or int(raw_ref_id) <= 0:
        return None
    return RefUriParts(project_id=project_id, session_id=session_id, ref_id=int(raw_ref_id))


def build_references(
    results: list[SearchResult],
    project_id: str | None,
    session_id: str | None,
    *,
    max_chars: int | None = None,
    per_url: int | None = None,
) -> list[Reference]:
    """Number citable excerpts 1..N across all non-broken, relevant results."""
    max_chars = max_chars or settings.reference_text_max_chars
    per_url = per_url or settings.references_per_url
    references: list[Reference] = []
    seen: set[str] = set()

    for result in results:
        if result.broken or result.irrelevant:
            continue
        if result.selections:
            raw = [(s.start, s.end, s.text) for s in result.selections]
        else:
            raw = [(1, 1, content) for content in result.contents]
        candidates = []
        for start, end, text in raw:
            clamped = clamp_text(text.strip(), max_chars)
            if clamped:
                candidates.append((max(1, start), max(1, end), clamped))

        for start, end, text in candidates[:per_url]:
            dedupe_key = f"{result.url}::{normalize_key_text(text)}"
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)
            ref_id = len(references) + 1
            uri = build_ref_uri(project_id, session_id, ref_id) if project_id and session_id else ""
            references.append(
                Reference(
                    ref_id=ref_id,
                    uri=uri,
                    page_id=result.page_id or "",
                    url=result.url,
                    title=result.title,
                    start_line=start,
                    end_line=end,
                    text=text,
                )
            )
    return references


def normalize_contents(contents: list[str]) -> list[str]:
    limited: list[str] = []
    total = 0
    for entry in (c.strip() for c in contents):
        if not entry:
            continue
        piece = clamp_text(entry, SOURCE_CONTENT_MAX_CHARS)
        if total + len(piece) > SOURCE_CONTENTS_TOTAL_CHARS:
            break
        limited.append(piece)
        total += len(piece)
        if len(limited) >= SOURCE_CONTENTS_MAX_ITEMS:
            break
    return limited


def build_sources(results: list[SearchResult], references: list[Reference]) -> list[Source]:
    reference_ids: dict[str, list[int]] = {}
    for reference in references:
        reference_ids.setdefault(reference.url, []).append(reference.ref_id)

    sources: list[Source] = []
    for result in results:
        ids = reference_ids.get(result.url)
        if not ids:
            continue
        viewpoint = (result.viewpoint or "").strip()
        if result.error:
            sources.append(
                Source(
                    url=result.url,
                    title=result.title or derive_source_title(result.url, result.url),
                    snippet=f"Extraction error: {clamp_text(result.error, SOURCE_ERROR_MAX_CHARS)}",
                    reference_ids=ids,
                    error=result.error,
                    viewpoint=clamp_text(viewpoint, SOURCE_VIEWPOINT_MAX_CHARS) if viewpoint else None,
                )
            )
            continue
        excerpts = normalize_contents(result.contents)
        snippet = clamp_text("\n".join(excerpts), SOURCE_SNIPPET_MAX_CHARS) if excerpts else ""
        sources.append(
            Source(
                url=result.url,
                title=result.title or derive_source_title(result.url, snippet.split("\n")[0]),
                snippet=snippet,
                excerpts=excerpts,
                reference_ids=ids,
                viewpoint=clamp_text(viewpoint, SOURCE_VIEWPOINT_MAX_CHARS) if viewpoint else None,
            )
        )
    return sources


def build_context_prompt(query: str, references: list[Reference]) -> str:
    blocks = []
    for reference in references:
        title = reference.title or derive_source_title(reference.url)
        blocks.append(
            "\n".join(
                [
                    f"[{reference.ref_id}] {title}",
                    f"URL: {reference.url}",
                    f"Lines: {reference.start_line}-{reference.end_line}",
                    "Excerpt:",
                    reference.text,
                ]
            )
        )
    return "\n".join(
        [
            f"Question: {query}",
            "Use only the numbered references below.",
            "Every supported claim must include one or more citations like [1].",
            "",
            "\n\n".join(blocks),
        ]
    )
