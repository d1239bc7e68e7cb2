from __future__ import annotations

from deepresearch.research_core.skills import AgentSkill, SkillRegistry


def test_presets_and_extra_skills_are_registered():
    extra = AgentSkill(name="Legal", title="Legal", description="Case law.", content="# Legal", keywords=("court",))
    registry = SkillRegistry.with_presets([extra])

    assert [s.name for s in registry.list_skills()] == ["web3-investing", "academic-research", "news-analysis", "Legal"]
    assert registry.get(" legal ") is extra
    assert registry.get("unknown") is None


def test_match_query_ranks_by_keyword_hits():
    registry = SkillRegistry.with_presets()
    matched = registry.match_query("Latest bitcoin ETF news about crypto token flows")
    assert [s.name for s in matched][:2] == ["web3-investing", "news-analysis"]


def test_resolve_for_query_honours_profile():
    registry = SkillRegistry.with_presets()
    assert registry.resolve_for_query("bitcoin", "none") == []
    assert [s.name for s in registry.resolve_for_query("anything", "academic-research")] == ["academic-research"]
    assert registry.resolve_for_query("anything", "missing-skill") == []
    assert [s.name for s in registry.resolve_for_query("new arxiv paper", "auto")] == ["academic-research"]


def test_prompt_block_mentions_suggestions():
    block = SkillRegistry.with_presets().prompt_block("peer reviewed study on sleep", "auto")
    assert block.startswith("Skill registry:")
    assert "- news-analysis:" in block
    assert block.endswith("Suggested skills for this query: academic-research.")
    assert SkillRegistry().prompt_block("q", "auto") == ""
