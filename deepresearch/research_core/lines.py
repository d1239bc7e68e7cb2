from __future__ import annotations

import math
import re
from typing import Any, Iterable

from deepresearch.models.research import LineRange, LineSelection

LINE_SPLIT_RE = re.compile(r"\r?\n")
NUMBERED_LINE_RE = re.compile(r"^(\d+)\s+\|\s?(.*)$")


def split_lines(markdown: str) -> list[str]:
    if not markdown:
        return []
    return LINE_SPLIT_RE.split(markdown)


def format_line_numbered(
    lines: list[str],
    *,
    offset: int = 0,
    total_lines: int | None = None,
) -> str:
    """Prefix each line with its 1-based number, zero-padded to the total width."""
    width = len(str(total_lines if total_lines is not None else len(lines) + offset))
    return "\n".join(
        f"{str(index + 1 + offset).zfill(width)} | {line}"
        for index, line in enumerate(lines)
    )


def _coerce_bound(value: Any) -> int | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


def normalize_ranges(ranges: Iterable[Any], line_count: int) -> list[LineRange]:
    """Floor, clamp to ``[1, line_count]``, drop inverted spans and dedupe.

    Accepts ``LineRange`` objects, pydantic models, mappings or pairs.
    """
    if line_count <= 0:
        return []
    normalized: list[LineRange] = []
    seen: set[LineRange] = set()
    for item in ranges:
        if isinstance(item, dict):
            raw_start, raw_end = item.get("start"), item.get("end")
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            raw_start, raw_end = item
        else:
            raw_start, raw_end = getattr(item, "start", None), getattr(item, "end", None)
        start = _coerce_bound(raw_start)
        end = _coerce_bound(raw_end)
        if start is None or end is None:
            continue
        start = max(1, min(line_count, start))
        end = max(1, min(line_count, end))
        if end < start:
            continue
        line_range = LineRange(start, end)
        if line_range in seen:
            continue
        seen.add(line_range)
        normalized.append(line_range)
    return normalized


def build_selections_from_ranges(lines: list[str], ranges: Iterable[LineRange]) -> list[LineSelection]:
    selections: dict[tuple[int, int, str], LineSelection] = {}
    for line_range in ranges:
        text = "\n".join(lines[line_range.start - 1 : line_range.end]).strip()
        if not text:
            continue
        selections.setdefault(
            (line_range.start, line_range.end, text),
            LineSelection(line_range.start, line_range.end, text),
        )
    return list(selections.values())


def numbered_slice(lines: list[str], line_range: LineRange) -> str:
    return format_line_numbered(
        lines[line_range.start - 1 : line_range.end],
        offset=line_range.start - 1,
        total_lines=len(lines),
    ).strip()


def build_numbered_contents_from_ranges(lines: list[str], ranges: Iterable[LineRange]) -> list[str]:
    contents: dict[LineRange, str] = {}
    for line_range in ranges:
        text = numbered_slice(lines, line_range)
        if text and line_range not in contents:
            contents[line_range] = text
    return list(contents.values())


def strip_line_numbers(numbered: str) -> str:
    stripped = []
    for line in LINE_SPLIT_RE.split(numbered):
        match = NUMBERED_LINE_RE.match(line)
        stripped.append(match.group(2) if match else line)
    return "\n".join(stripped).strip()


def filter_numbered_lines(numbered: str, line_range: LineRange) -> str:
    """Keep only the numbered lines of ``numbered`` that fall inside ``line_range``."""
    kept = []
    for line in LINE_SPLIT_RE.split(numbered):
        line = line.rstrip()
        match = NUMBERED_LINE_RE.match(line)
        if not match:
            continue
        if line_range.start <= int(match.group(1)) <= line_range.end:
            kept.append(line)
    return "\n".join(kept)


def summarize_ranges(ranges: list[LineRange], limit: int = 6) -> list[str]:
    return [f"{r.start}-{r.end}" for r in ranges[:limit]]
