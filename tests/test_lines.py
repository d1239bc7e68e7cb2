from __future__ import annotations

from deepresearch.models.research import LineRange, LineSelection
from deepresearch.research_core.lines import (
    build_numbered_contents_from_ranges,
    build_selections_from_ranges,
    filter_numbered_lines,
    format_line_numbered,
    normalize_ranges,
    numbered_slice,
    split_lines,
    strip_line_numbers,
    summarize_ranges,
)


def test_split_lines_handles_crlf_and_empty_input():
    assert split_lines("") == []
    assert split_lines("a\r\nb\nc") == ["a", "b", "c"]


def test_format_line_numbered_pads_to_total_width():
    lines = ["alpha", "beta"]
    assert format_line_numbered(lines) == "1 | alpha\n2 | beta"
    assert format_line_numbered(lines, offset=8, total_lines=120) == "009 | alpha\n010 | beta"


class TestNormalizeRanges:
    def test_floors_and_clamps_to_page(self):
        ranges = normalize_ranges([{"start": 0, "end": 3.7}, (28, 99)], 30)
        assert ranges == [LineRange(1, 3), LineRange(28, 30)]

    def test_drops_inverted_and_unparseable_spans(self):
        ranges = normalize_ranges([(9, 4), {"start": "x", "end": 2}, {"start": None, "end": 5}], 30)
        assert ranges == []

    def test_dedupes_after_clamping(self):
        ranges = normalize_ranges([(25, 40), (25, 30), LineRange(25, 31)], 30)
        assert ranges == [LineRange(25, 30)]

    def test_empty_page_yields_no_ranges(self):
        assert normalize_ranges([(1, 2)], 0) == []


def test_selections_skip_blank_spans_and_dedupe():
    lines = ["intro", "", "  ", "body"]
    selections = build_selections_from_ranges(lines, [LineRange(2, 3), LineRange(1, 1), LineRange(1, 1)])
    assert selections == [LineSelection(1, 1, "intro")]


def test_numbered_contents_follow_page_width():
    lines = [f"row {n}" for n in range(1, 13)]
    assert numbered_slice(lines, LineRange(9, 10)) == "09 | row 9\n10 | row 10"
    contents = build_numbered_contents_from_ranges(lines, [LineRange(9, 10), LineRange(9, 10), LineRange(1, 1)])
    assert contents == ["09 | row 9\n10 | row 10", "01 | row 1"]


def test_strip_and_filter_numbered_lines():
    numbered = "10 | ten\n11 | eleven\n12 | twelve"
    assert strip_line_numbers(numbered) == "ten\neleven\ntwelve"
    assert filter_numbered_lines(numbered, LineRange(11, 12)) == "11 | eleven\n12 | twelve"
    assert filter_numbered_lines("no numbers here", LineRange(1, 5)) == ""


def test_summarize_ranges_limits_output():
    ranges = [LineRange(n, n + 1) for n in range(1, 10)]
    assert summarize_ranges(ranges, limit=2) == ["1-2", "2-3"]
