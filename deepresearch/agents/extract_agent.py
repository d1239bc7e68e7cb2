from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from deepresearch.agents.base import BaseAgent, Tool, ToolRegistry
from deepresearch.config import settings
from deepresearch.models.research import LineRange
from deepresearch.models.schemas import ExtractDecision, GrepInput, ReadLinesInput
from deepresearch.research_core.lines import (
    build_numbered_contents_from_ranges,
    format_line_numbered,
    normalize_ranges,
    summarize_ranges,
)
from deepresearch.research_core.text import clamp_text
from deepresearch.services.prompt_store import render_prompt

GREP_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
GREP_MAX_CONTEXT = 8
GREP_MAX_MATCHES = 40


@dataclass
class ExtractOutcome:
    ranges: list[LineRange] = field(default_factory=list)
    broken: bool = False
    irrelevant: bool = False
    contents: list[str] = field(default_factory=list)
    error: str | None = None
    raw_model_output: str = ""


def _clamp(value: int | None, default: int, low: int, high: int) -> int:
    if value is None:
        return default
    return max(low, min(high, int(value)))


def grep_lines(
    lines: list[str],
    pattern: str,
    *,
    flags: str | None = None,
    before: int | None = None,
    after: int | None = None,
    max_matches: int | None = None,
) -> dict[str, Any]:
    """Regex search over ``lines`` with numbered context around each match."""
    before = _clamp(before, 2, 0, GREP_MAX_CONTEXT)
    after = _clamp(after, 2, 0, GREP_MAX_CONTEXT)
    max_matches = _clamp(max_matches, 20, 1, GREP_MAX_MATCHES)
    re_flags = 0
    for flag in flags if flags is not None else "i":
        re_flags |= GREP_FLAG_MAP.get(flag, 0)
    try:
        regex = re.compile(pattern, re_flags)
    except re.error as exc:
        raise ValueError(f"Invalid regex pattern for grep tool: {exc}") from exc

    matches: list[dict[str, Any]] = []
    for index, line in enumerate(lines):
        if not regex.search(line):
            continue
        start = max(0, index - before)
        end = min(len(lines), index + after + 1)
        matches.append(
            {
                "line": index + 1,
                "text": line,
                "before": format_line_numbered(lines[start:index], offset=start, total_lines=len(lines)).split("\n")
                if start < index
                else [],
                "after": format_line_numbered(lines[index + 1 : end], offset=index + 1, total_lines=len(lines)).split("\n")
                if index + 1 < end
                else [],
            }
        )
        if len(matches) >= max_matches:
            break
    logger.debug(f"grep pattern={clamp_text(pattern, 120)!r} matches={len(matches)}")
    return {"matches": matches, "total": len(matches)}


def read_line_slice(lines: list[str], start: int, end: int) -> dict[str, Any]:
    line_count = len(lines)
    safe_start = max(1, min(line_count, int(start)))
    safe_end = max(safe_start, min(line_count, int(end)))
    return {
        "start": safe_start,
        "end": safe_end,
        "lines": format_line_numbered(
            lines[safe_start - 1 : safe_end],
            offset=safe_start - 1,
            total_lines=line_count,
        ),
    }


class ExtractAgent(BaseAgent):
    """Selects the line ranges of one page that answer a query.

    Runs a free-text tool loop over the numbered page (grep/read_lines),
    then a separate structured pass that decodes the final answer into an
    ``ExtractDecision``.
    """

    name = "extract_subagent"
    role = "extract"

    def __init__(
        self,
        llm=None,
        model: str | None = None,
        *,
        max_lines: int | None = None,
        max_chars: int | None = None,
        preview_lines: int | None = None,
    ):
        super().__init__(llm=llm, model=model)
        self.max_lines = max_lines or settings.extract_max_lines
        self.max_chars = max_chars or settings.extract_max_chars
        self.preview_lines = preview_lines or settings.extract_preview_lines

    def build_tools(self, lines: list[str]) -> ToolRegistry:
        async def grep(args: GrepInput) -> dict[str, Any]:
            return grep_lines(
                lines,
                args.pattern,
                flags=args.flags,
                before=args.before,
                after=args.after,
                max_matches=args.max_matches,
            )

        async def read_lines(args: ReadLinesInput) -> dict[str, Any]:
            return read_line_slice(lines, args.start, args.end)

        return ToolRegistry(
            [
                Tool(
                    name="grep",
                    description="Search all lines with a regex and return matching line numbers with surrounding context.",
                    input_model=GrepInput,
                    handler=grep,
                ),
                Tool(
                    name="read_lines",
                    description="Read an inclusive, 1-based line range as line-numbered markdown.",
                    input_model=ReadLinesInput,
                    handler=read_lines,
                ),
            ]
        )

    def is_too_large(self, lines: list[str]) -> bool:
        char_count = sum(len(line) + 1 for line in lines)
        return len(lines) > self.max_lines or char_count > self.max_chars

    def build_prompt(self, query: str, lines: list[str]) -> str:
        line_count = len(lines)
        if self.is_too_large(lines):
            preview_lines = lines[: self.preview_lines]
            size_note = render_prompt(
                "extract_agent.size_note_large",
                line_count=line_count,
                preview_lines=self.preview_lines,
            )
        else:
            preview_lines = lines
            size_note = render_prompt("extract_agent.size_note", line_count=line_count)
        preview = format_line_numbered(preview_lines, total_lines=line_count)
        return render_prompt("extract_agent.user_prompt", query=query, size_note=size_note, preview=preview)

    async def run(self, query: str, lines: list[str]) -> ExtractOutcome:
        line_count = len(lines)
        if line_count == 0:
            logger.info(f"Extract subagent skipped empty page for query={clamp_text(query, 160)!r}")
            return ExtractOutcome(broken=True, raw_model_output="Empty markdown input.")

        loop = await self.run_tool_loop(
            system=render_prompt("extract_agent.system_prompt"),
            prompt=self.build_prompt(query, lines),
            tools=self.build_tools(lines),
        )
        raw_output = loop.final_text

        decision = await self.client.parse(
            model=self.model,
            max_tokens=settings.llm_max_tokens,
            system=render_prompt("extract_agent.structured_system"),
            prompt=render_prompt(
                "extract_agent.structured_prompt",
                query=query,
                line_count=line_count,
                raw_output=raw_output,
            ),
            schema=ExtractDecision,
        )
        ranges = [] if decision.irrelevant else normalize_ranges(decision.ranges, line_count)
        error = decision.error.strip() if decision.error and decision.error.strip() else None
        contents = build_numbered_contents_from_ranges(lines, ranges)

        logger.info(
            f"Extract subagent parsed query={clamp_text(query, 160)!r} broken={decision.broken} "
            f"irrelevant={decision.irrelevant} ranges={summarize_ranges(ranges)}"
        )
        return ExtractOutcome(
            ranges=ranges,
            broken=decision.broken,
            irrelevant=decision.irrelevant,
            contents=contents,
            error=error,
            raw_model_output=raw_output,
        )
