from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


# --- Structured decoding outputs ---


class LineRangeModel(BaseModel):
    start: float = Field(description="First line number, 1-based, inclusive.")
    end: float = Field(description="Last line number, 1-based, inclusive.")


class ExtractDecision(BaseModel):
    """Final decision of the extract subagent for one page."""

    model_config = ConfigDict(populate_by_name=True)

    broken: bool = Field(
        default=False,
        description="True when the page is unreadable, blocked or empty.",
    )
    irrelevant: bool = Field(
        default=False,
        alias="inrelavate",
        description="True when the page has nothing relevant to the query.",
    )
    ranges: list[LineRangeModel] = Field(default_factory=list)
    error: str | None = None


class SearchClaim(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str | None = None
    ranges: list[LineRangeModel] = Field(default_factory=list)
    broken: bool = False
    irrelevant: bool = Field(default=False, alias="inrelavate")
    error: str | None = None
    viewpoint: str | None = None


class SearchDecision(BaseModel):
    """Final decision of the search subagent: per-URL claims plus global errors."""

    results: list[SearchClaim] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# --- Search provider payloads ---


class TavilyResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    title: str = ""
    content: str = ""
    score: float = 0.0


class TavilyResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str = ""
    results: list[TavilyResult] = Field(default_factory=list)


# --- Tool inputs ---


class SearchInput(BaseModel):
    query: str = Field(min_length=1, description="Web search query.")


class ExtractInput(BaseModel):
    url: str = Field(min_length=1, description="Page URL taken from search results.")
    query: str = Field(
        min_length=1,
        description="What to look for on this page, phrased as a focused question.",
    )


class GrepInput(BaseModel):
    pattern: str = Field(min_length=1, description="Regular expression to search for.")
    flags: str | None = Field(
        default=None, description="Regex flags: any of i, m, s. Defaults to i."
    )
    before: int | None = Field(default=None, description="Context lines before a match (0-8).")
    after: int | None = Field(default=None, description="Context lines after a match (0-8).")
    max_matches: int | None = Field(default=None, description="Maximum matches to return (1-40).")


class ReadLinesInput(BaseModel):
    start: int = Field(description="First line to read, 1-based.")
    end: int = Field(description="Last line to read, inclusive.")


class DiscoverSkillsInput(BaseModel):
    query: str = Field(default="", description="Topic used to rank available skills.")


class LoadSkillInput(BaseModel):
    name: str = Field(min_length=1, description="Skill name returned by discover_skills.")
