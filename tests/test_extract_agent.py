from __future__ import annotations

import pytest

from fakes import ScriptedLLM, text_response, tool_response
from deepresearch.agents.extract_agent import ExtractAgent, grep_lines, read_line_slice
from deepresearch.errors import StructuredOutputError
from deepresearch.models.research import LineRange
from deepresearch.models.schemas import ExtractDecision, LineRangeModel


def _lines(count: int) -> list[str]:
    return [f"line {n}" for n in range(1, count + 1)]


def _decision(*pairs, **flags) -> ExtractDecision:
    return ExtractDecision(ranges=[LineRangeModel(start=s, end=e) for s, e in pairs], **flags)


class TestGrepLines:
    def test_returns_numbered_context(self):
        lines = ["alpha", "beta", "Gamma ray", "delta", "epsilon"]
        result = grep_lines(lines, "gamma", before=1, after=1)

        assert result["total"] == 1
        match = result["matches"][0]
        assert match["line"] == 3
        assert match["text"] == "Gamma ray"
        assert match["before"] == ["2 | beta"]
        assert match["after"] == ["4 | delta"]

    def test_flags_override_default_case_insensitivity(self):
        assert grep_lines(["Gamma"], "gamma", flags="")["total"] == 0
        assert grep_lines(["Gamma"], "gamma")["total"] == 1

    def test_caps_matches_and_context(self):
        lines = ["hit"] * 100
        result = grep_lines(lines, "hit", before=50, after=50, max_matches=500)
        assert result["total"] == 40
        assert len(result["matches"][20]["before"]) == 8

    def test_invalid_pattern_raises(self):
        with pytest.raises(ValueError, match="Invalid regex pattern for grep tool"):
            grep_lines(["x"], "(")


def test_read_line_slice_clamps_bounds():
    lines = _lines(12)
    assert read_line_slice(lines, -5, 2) == {"start": 1, "end": 2, "lines": "01 | line 1\n02 | line 2"}
    clamped = read_line_slice(lines, 11, 400)
    assert (clamped["start"], clamped["end"]) == (11, 12)
    inverted = read_line_slice(lines, 5, 1)
    assert (inverted["start"], inverted["end"]) == (5, 5)


class TestExtractAgent:
    @pytest.mark.asyncio
    async def test_empty_page_is_broken_without_model_call(self):
        llm = ScriptedLLM()
        outcome = await ExtractAgent(llm=llm, model="m").run("q", [])

        assert outcome.broken
        assert outcome.ranges == []
        assert outcome.raw_model_output == "Empty markdown input."
        assert llm.create_calls == [] and llm.parse_calls == []

    @pytest.mark.asyncio
    async def test_ranges_are_clamped_and_contents_numbered(self):
        llm = ScriptedLLM(
            turns=[
                tool_response(("t1", "grep", {"pattern": "line 3"})),
                text_response("Lines 3-4 and 9-99 answer it."),
            ],
            parsed={"ExtractDecision": [_decision((3, 4), (9, 99), (0.5, 1.9), (7, 2))]},
        )
        outcome = await ExtractAgent(llm=llm, model="m").run("q", _lines(10))

        assert outcome.ranges == [LineRange(3, 4), LineRange(9, 10), LineRange(1, 1)]
        assert outcome.contents[0] == "03 | line 3\n04 | line 4"
        assert outcome.raw_model_output == "Lines 3-4 and 9-99 answer it."
        assert len(llm.create_calls) == 2
        tool_result = llm.create_calls[1]["messages"][-1]["content"][0]
        assert tool_result["tool_use_id"] == "t1"
        assert '"line": 3' in tool_result["content"]

    @pytest.mark.asyncio
    async def test_irrelevant_page_has_no_ranges(self):
        llm = ScriptedLLM(
            turns=[text_response("Not related.")],
            parsed={"ExtractDecision": [ExtractDecision.model_validate({"inrelavate": True, "ranges": [{"start": 1, "end": 2}]})]},
        )
        outcome = await ExtractAgent(llm=llm, model="m").run("q", _lines(5))

        assert outcome.irrelevant
        assert outcome.ranges == [] and outcome.contents == []

    @pytest.mark.asyncio
    async def test_blank_error_is_dropped(self):
        llm = ScriptedLLM(parsed={"ExtractDecision": [_decision(broken=True, error="   ")]})
        outcome = await ExtractAgent(llm=llm, model="m").run("q", _lines(3))
        assert outcome.broken and outcome.error is None

    @pytest.mark.asyncio
    async def test_structured_failure_propagates(self):
        llm = ScriptedLLM(parsed={"ExtractDecision": [StructuredOutputError("ExtractDecision", "bad json")]})
        with pytest.raises(StructuredOutputError):
            await ExtractAgent(llm=llm, model="m").run("q", _lines(3))

    @pytest.mark.asyncio
    async def test_tool_errors_are_reported_to_the_model(self):
        llm = ScriptedLLM(
            turns=[tool_response(("t1", "grep", {"pattern": "("})), text_response("none")],
        )
        await ExtractAgent(llm=llm, model="m").run("q", _lines(3))

        tool_result = llm.create_calls[1]["messages"][-1]["content"][0]
        assert tool_result["is_error"] is True
        assert "Invalid regex pattern" in tool_result["content"]


def test_large_page_prompt_shows_preview_only():
    agent = ExtractAgent(llm=ScriptedLLM(), model="m", max_lines=50, preview_lines=5)
    prompt = agent.build_prompt("q", _lines(60))

    assert "Markdown is large (60 lines). Only the first 5 lines are shown." in prompt
    assert "05 | line 5" in prompt
    assert "06 | line 6" not in prompt


def test_small_page_prompt_shows_all_lines():
    agent = ExtractAgent(llm=ScriptedLLM(), model="m")
    prompt = agent.build_prompt("find x", _lines(3))

    assert prompt.startswith("Query: find x\nTotal markdown lines: 3.")
    assert "3 | line 3" in prompt


def test_char_limit_marks_page_too_large():
    agent = ExtractAgent(llm=ScriptedLLM(), model="m", max_chars=20)
    assert agent.is_too_large(["x" * 30])
    assert not agent.is_too_large(["short"])
