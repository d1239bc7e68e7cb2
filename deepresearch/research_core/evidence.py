"""Evidence accumulation and validation for the search subagent.

Only outputs of extract-tool executions are treated as evidence. Claims the
model makes afterwards in its structured answer are intersected with that
evidence, so a fabricated URL or line range can never reach the references.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

from deepresearch.models.research import LineRange, LineSelection, SearchResult
from deepresearch.models.schemas import SearchClaim
from deepresearch.research_core.lines import (
    filter_numbered_lines,
    format_line_numbered,
    normalize_ranges,
    strip_line_numbers,
)

# Upper bound used to clamp claimed ranges before intersecting them with evidence.
_MAX_CLAIM_LINE = 10_000_000


@dataclass(slots=True)
class EvidenceEntry:
    ranges: set[LineRange] = field(default_factory=set)
    selections: set[LineSelection] = field(default_factory=set)
    contents_by_range: dict[LineRange, str] = field(default_factory=dict)
    title: str | None = None
    page_id: str | None = None
    line_count: int | None = None


class EvidenceStore:
    """Per-session, per-URL store of genuine extract-tool outputs.

    Merges are set and map unions, so the final state does not depend on the
    order in which concurrent tool calls complete.
    """

    def __init__(self) -> None:
        self._entries: dict[str, EvidenceEntry] = {}

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, url: str) -> EvidenceEntry | None:
        return self._entries.get(url)

    @property
    def urls(self) -> list[str]:
        return list(self._entries)

    def merge(self, output: SearchResult) -> None:
        if not output.url:
            return
        entry = self._entries.setdefault(output.url, EvidenceEntry())
        entry.ranges.update(output.ranges)
        entry.selections.update(output.selections)
        entry.title = entry.title or output.title
        entry.page_id = entry.page_id or output.page_id
        entry.line_count = entry.line_count or output.line_count
        for line_range, content in zip(output.ranges, output.contents):
            if content and line_range not in entry.contents_by_range:
                entry.contents_by_range[line_range] = content
        width_total = entry.line_count
        for selection in output.selections:
            key = selection.range
            if key in entry.contents_by_range:
                continue
            selection_lines = selection.text.split("\n")
            if len(selection_lines) == selection.end - selection.start + 1:
                entry.contents_by_range[key] = format_line_numbered(
                    selection_lines,
                    offset=selection.start - 1,
                    total_lines=width_total or selection.end,
                )


def intersect_claimed_ranges(claimed: Iterable[LineRange], genuine: Iterable[LineRange]) -> list[LineRange]:
    genuine = list(genuine)
    overlaps: set[LineRange] = set()
    for claim in claimed:
        for evidence_range in genuine:
            overlap = claim.intersect(evidence_range)
            if overlap is not None:
                overlaps.add(overlap)
    return sorted(overlaps)


def derive_numbered_content(target: LineRange, entry: EvidenceEntry) -> str | None:
    exact = entry.contents_by_range.get(target)
    if exact and exact.strip():
        return exact.strip()
    for key, content in entry.contents_by_range.items():
        if not key.contains(target):
            continue
        selected = filter_numbered_lines(content, target)
        if selected:
            return selected
    return None


def _selection_text_for(target: LineRange, entry: EvidenceEntry) -> str | None:
    for selection in sorted(entry.selections, key=lambda s: (s.start, s.end, s.text)):
        if selection.range == target:
            return selection.text
        if not selection.range.contains(target):
            continue
        selection_lines = selection.text.split("\n")
        if len(selection_lines) != selection.end - selection.start + 1:
            continue
        offset = target.start - selection.start
        text = "\n".join(selection_lines[offset : offset + target.end - target.start + 1]).strip()
        if text:
            return text
    return None


def _viewpoint(claim: SearchClaim) -> str | None:
    viewpoint = (claim.viewpoint or "").strip()
    return viewpoint or None


def _cleared(claim: SearchClaim) -> SearchResult:
    return SearchResult(
        url=claim.url or "",
        broken=claim.broken,
        irrelevant=claim.irrelevant,
        error=claim.error,
        viewpoint=_viewpoint(claim),
    )


def validate_claims(
    claims: Iterable[SearchClaim],
    store: EvidenceStore,
    *,
    query: str = "",
) -> tuple[list[SearchResult], list[str]]:
    """Keep only the parts of the structured claims backed by genuine evidence.

    Also returns one error message per claim that was dropped or clipped.
    """
    validated: list[SearchResult] = []
    errors: list[str] = []
    for claim in claims:
        if not claim.url:
            continue
        if claim.broken or claim.irrelevant:
            validated.append(_cleared(claim))
            continue
        if not claim.ranges:
            if claim.error:
                validated.append(_cleared(claim))
            continue

        entry = store.get(claim.url)
        if entry is None or not entry.ranges:
            logger.warning(
                f"Dropping claim without evidence: query={query!r} url={claim.url} ranges={len(claim.ranges)}"
            )
            errors.append(f"Claimed ranges for a URL that was never extracted: {claim.url}; dropped.")
            continue

        claimed = normalize_ranges(claim.ranges, _MAX_CLAIM_LINE)
        converged = intersect_claimed_ranges(claimed, entry.ranges)
        if not converged:
            logger.warning(f"Dropping claim without overlap: query={query!r} url={claim.url}")
            errors.append(f"Claimed ranges do not overlap extracted evidence for URL: {claim.url}; dropped.")
            continue

        ranges: list[LineRange] = []
        selections: dict[tuple[int, int, str], LineSelection] = {}
        contents: list[str] = []
        for line_range in converged:
            numbered = derive_numbered_content(line_range, entry)
            if numbered:
                text = strip_line_numbers(numbered)
            else:
                text = _selection_text_for(line_range, entry)
                numbered = text
            if not numbered or not text:
                continue
            ranges.append(line_range)
            contents.append(numbered)
            selections.setdefault(
                (line_range.start, line_range.end, text),
                LineSelection(line_range.start, line_range.end, text),
            )

        if not ranges:
            logger.warning(f"Dropping claim without resolved content: query={query!r} url={claim.url}")
            errors.append(f"Claimed ranges resolved to no extracted content for URL: {claim.url}; dropped.")
            continue

        if set(ranges) != set(claimed):
            errors.append(f"Claimed ranges clipped to extracted subset for URL: {claim.url}")

        validated.append(
            SearchResult(
                url=claim.url,
                title=entry.title,
                page_id=entry.page_id,
                line_count=entry.line_count,
                ranges=ranges,
                selections=list(selections.values()),
                contents=contents,
                viewpoint=_viewpoint(claim),
            )
        )
    return validated, errors


def merge_results(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Deduplicate by URL, unioning evidence; concrete content clears stale flags."""
    merged: dict[str, SearchResult] = {}
    for item in results:
        existing = merged.get(item.url)
        if existing is None:
            merged[item.url] = SearchResult(
                url=item.url,
                title=item.title,
                page_id=item.page_id,
                line_count=item.line_count,
                ranges=list(dict.fromkeys(item.ranges)),
                selections=list(dict.fromkeys(item.selections)),
                contents=list(dict.fromkeys(item.contents)),
                broken=item.broken,
                irrelevant=item.irrelevant,
                error=item.error,
                viewpoint=item.viewpoint,
            )
            continue
        existing.ranges = list(dict.fromkeys([*existing.ranges, *item.ranges]))
        existing.selections = list(dict.fromkeys([*existing.selections, *item.selections]))
        existing.contents = list(dict.fromkeys([*existing.contents, *item.contents]))
        existing.title = existing.title if existing.title is not None else item.title
        existing.page_id = existing.page_id if existing.page_id is not None else item.page_id
        existing.line_count = existing.line_count if existing.line_count is not None else item.line_count
        existing.broken = existing.broken or item.broken
        existing.irrelevant = existing.irrelevant or item.irrelevant
        existing.error = existing.error or item.error
        existing.viewpoint = existing.viewpoint or item.viewpoint

    for item in merged.values():
        if item.ranges or item.selections or item.contents:
            item.broken = False
            item.irrelevant = False
            item.error = None
    return list(merged.values())


def has_usable_evidence(results: Iterable[SearchResult]) -> bool:
    return any(item.has_usable_evidence for item in results)
