from __future__ import annotations

from deepresearch.models.research import Reference
from deepresearch.research_core.citations import CitationLinker, linkify_citation_markers


def _refs(count: int) -> list[Reference]:
    return [
        Reference(n, f"deepresearch://project/p/search/s/ref/{n}", "page", f"https://{n}.example/", None, 1, 1, "t")
        for n in range(1, count + 1)
    ]


def _uri(n: int) -> str:
    return f"deepresearch://project/p/search/s/ref/{n}"


def test_single_and_grouped_markers_are_linked():
    text = linkify_citation_markers("X [1] and Y [2,3]", _refs(3))
    assert text == f"X [1]({_uri(1)}) and Y [2]({_uri(2)}), [3]({_uri(3)})"


def test_linkify_is_idempotent():
    refs = _refs(3)
    once = linkify_citation_markers("A [1]. B [2, 3]. C [^1].", refs)
    assert linkify_citation_markers(once, refs) == once


def test_footnote_markers_are_linked():
    assert linkify_citation_markers("see [^2]", _refs(2)) == f"see [2]({_uri(2)})"


def test_ranges_expand_within_span_limit():
    linker = CitationLinker(_refs(12), max_range_span=8)
    assert linker.expand_group("1-3, 5") == [1, 2, 3, 5]
    assert linker.expand_group("1-12") == []
    assert linker.expand_group("4-2") == []
    assert linker.linkify("[1-12]") == "[1-12]"


def test_unresolved_ids_are_left_as_plain_markers():
    refs = _refs(1)
    assert linkify_citation_markers("only [7]", refs) == "only [7]"
    assert linkify_citation_markers("mixed [1, 7]", refs) == f"mixed [1]({_uri(1)}), [7]"


def test_references_without_uri_leave_text_untouched():
    refs = [Reference(1, "", "page", "https://a.example/", None, 1, 1, "t")]
    assert linkify_citation_markers("claim [1]", refs) == "claim [1]"
