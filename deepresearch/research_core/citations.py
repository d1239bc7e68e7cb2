from __future__ import annotations

import re
from typing import Iterable

from deepresearch.config import settings
from deepresearch.models.research import Reference

GROUP_MARKER_RE = re.compile(r"\[([\d\s,，、;；-]+)\](?!\()")
SINGLE_MARKER_RE = re.compile(r"\[(\d+)\](?!\()")
FOOTNOTE_MARKER_RE = re.compile(r"\[\^(\d+)\]")
GROUP_SEPARATOR_RE = re.compile(r"[\s,，、;；]+")
RANGE_TOKEN_RE = re.compile(r"^(\d+)-(\d+)$")


class CitationLinker:
    """Rewrite ``[n]``, ``[n, m]``, ``[a-b]`` and ``[^n]`` markers into reference links.

    Already-linked markers (``[n](...)``) are left alone, so running the linker
    on its own output is a no-op.
    """

    def __init__(self, references: Iterable[Reference], *, max_range_span: int | None = None):
        self.uri_by_id = {ref.ref_id: ref.uri for ref in references if ref.uri}
        self.max_range_span = settings.citation_range_span if max_range_span is None else max_range_span

    def expand_group(self, group: str) -> list[int]:
        ids: list[int] = []
        for token in GROUP_SEPARATOR_RE.split(group.strip()):
            if not token:
                continue
            range_match = RANGE_TOKEN_RE.match(token)
            if range_match:
                start, end = int(range_match.group(1)), int(range_match.group(2))
                if start <= end and end - start <= self.max_range_span:
                    ids.extend(range(start, end + 1))
                continue
            if token.isdigit():
                ids.append(int(token))
        return ids

    def _link(self, ref_id: int) -> str | None:
        uri = self.uri_by_id.get(ref_id)
        if not uri:
            return None
        return f"[{ref_id}]({uri})"

    def _replace_group(self, match: re.Match[str]) -> str:
        ids = self.expand_group(match.group(1))
        links = [self._link(ref_id) for ref_id in ids]
        if not any(links):
            return match.group(0)
        return ", ".join(link or f"[{ref_id}]" for ref_id, link in zip(ids, links))

    def _replace_single(self, match: re.Match[str]) -> str:
        return self._link(int(match.group(1))) or match.group(0)

    def linkify(self, text: str) -> str:
        if not self.uri_by_id or not text:
            return text
        text = GROUP_MARKER_RE.sub(self._replace_group, text)
        text = SINGLE_MARKER_RE.sub(self._replace_single, text)
        return FOOTNOTE_MARKER_RE.sub(self._replace_single, text)


def linkify_citation_markers(text: str, references: Iterable[Reference]) -> str:
    return CitationLinker(references).linkify(text)
