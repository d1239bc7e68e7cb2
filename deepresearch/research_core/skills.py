from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SKILL_PROFILE_AUTO = "auto"
SKILL_PROFILE_NONE = "none"


@dataclass(frozen=True)
class AgentSkill:
    name: str
    title: str
    description: str
    content: str
    activation_hints: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    source: str = "preset"

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "activation_hints": list(self.activation_hints),
            "source": self.source,
        }


PRESET_SKILLS: tuple[AgentSkill, ...] = (
    AgentSkill(
        name="web3-investing",
        title="Web3 / Investing",
        description="Crypto, tokenomics, protocol risk, regulation and investment-style evaluation.",
        activation_hints=(
            "token valuation and investment risk",
            "crypto regulation or exchange compliance",
            "protocol security, governance and treasury analysis",
        ),
        keywords=(
            "web3", "crypto", "cryptocurrency", "blockchain", "token", "defi", "nft",
            "staking", "yield", "airdrop", "invest", "investment", "portfolio", "sec",
            "etf", "bitcoin", "ethereum", "btc", "eth",
        ),
        content="\n".join(
            [
                "# Skill: Web3 / Investing",
                "",
                "## Source ranking",
                "1. Regulators, court filings, exchange disclosures, protocol docs and governance proposals.",
                "2. Institutional research and audited technical reports.",
                "3. Established financial media with transparent editorial standards.",
                "4. Social posts only as weak context, never as the sole evidence.",
                "",
                "## Practice",
                "- Keep facts, assumptions and forecasts apart.",
                "- Date every time-sensitive figure.",
                "- Surface downside scenarios whenever the answer could drive a financial decision.",
                "- Cross-check token or protocol claims against two independent sources when possible.",
            ]
        ),
    ),
    AgentSkill(
        name="academic-research",
        title="Academic Research",
        description="Literature review, methodology comparison and evidence strength assessment.",
        activation_hints=(
            "paper summary or comparison",
            "methodology quality and reproducibility",
            "meta-analysis and consensus strength",
        ),
        keywords=(
            "paper", "study", "studies", "journal", "doi", "meta-analysis", "systematic review",
            "randomized", "rct", "benchmark", "research", "arxiv", "pubmed", "citation",
        ),
        content="\n".join(
            [
                "# Skill: Academic Research",
                "",
                "## Source ranking",
                "1. Peer-reviewed journals, top conference proceedings and systematic reviews.",
                "2. Preprints from recognized groups, flagged as not yet peer reviewed.",
                "3. University or lab pages summarizing published work.",
                "",
                "## Practice",
                "- Report sample size, design and effect size when the source gives them.",
                "- Prefer meta-analyses over single studies for consensus questions.",
                "- Note conflicting findings instead of averaging them away.",
            ]
        ),
    ),
    AgentSkill(
        name="news-analysis",
        title="News / Current Events",
        description="Breaking news, timelines, policy changes and multi-outlet verification.",
        activation_hints=(
            "what happened and when",
            "policy or market reaction to an event",
            "verifying claims across outlets",
        ),
        keywords=(
            "news", "latest", "today", "yesterday", "breaking", "announced", "election",
            "policy", "war", "conflict", "earnings", "launch", "report", "update",
        ),
        content="\n".join(
            [
                "# Skill: News / Current Events",
                "",
                "## Source ranking",
                "1. Official statements, filings and primary documents.",
                "2. Wire services and outlets with public correction policies.",
                "3. Specialist trade press for domain detail.",
                "",
                "## Practice",
                "- Build a dated timeline before drawing conclusions.",
                "- Confirm each key claim in at least two independent outlets.",
                "- Mark unverified or developing information explicitly.",
            ]
        ),
    ),
)


@dataclass
class SkillRegistry:
    """Preset skills plus optional local ones, keyed by normalized name."""

    skills: dict[str, AgentSkill] = field(default_factory=dict)

    @classmethod
    def with_presets(cls, extra: list[AgentSkill] | None = None) -> "SkillRegistry":
        registry = cls()
        for skill in (*PRESET_SKILLS, *(extra or [])):
            registry.skills[skill.name.strip().lower()] = skill
        return registry

    def list_skills(self) -> list[AgentSkill]:
        return list(self.skills.values())

    def get(self, name: str) -> AgentSkill | None:
        return self.skills.get(name.strip().lower())

    def match_query(self, query: str) -> list[AgentSkill]:
        """Skills whose keywords appear in ``query``, best match first."""
        lowered = query.lower()
        scored = []
        for index, skill in enumerate(self.skills.values()):
            score = sum(1 for keyword in skill.keywords if keyword.lower() in lowered)
            if score:
                scored.append((-score, index, skill))
        return [skill for _, _, skill in sorted(scored, key=lambda item: item[:2])]

    def resolve_for_query(self, query: str, profile: str) -> list[AgentSkill]:
        profile = (profile or SKILL_PROFILE_AUTO).strip().lower()
        if profile == SKILL_PROFILE_NONE:
            return []
        if profile == SKILL_PROFILE_AUTO:
            return self.match_query(query)
        skill = self.get(profile)
        return [skill] if skill else []

    def prompt_block(self, query: str, profile: str) -> str:
        if not self.skills:
            return ""
        lines = [
            "Skill registry:",
            "You can load domain-specific guidance with the skill tools when relevant.",
        ]
        for skill in self.skills.values():
            lines.append(f"- {skill.name}: {skill.description} (Use for: {'; '.join(skill.activation_hints)})")
        suggested = self.resolve_for_query(query, profile)
        if suggested:
            lines.append(f"Suggested skills for this query: {', '.join(s.name for s in suggested)}.")
        return "\n".join(lines)
