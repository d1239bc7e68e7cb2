from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError
from tavily import AsyncTavilyClient

from deepresearch.config import settings
from deepresearch.errors import SearchProviderError
from deepresearch.models.schemas import TavilyResponse
from deepresearch.services.env_safety import require_setting


@dataclass
class SearchHit:
    title: str
    url: str
    content: str
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "url": self.url, "snippet": self.content, "score": self.score}


class WebSearchProvider(Protocol):
    async def search(self, query: str, *, max_results: int) -> list[SearchHit]: ...


class TavilySearchProvider:
    """Web search through the Tavily API."""

    def __init__(self, api_key: str | None = None, *, search_depth: str | None = None):
        self.api_key = api_key if api_key is not None else settings.tavily_api_key
        self.search_depth = search_depth or settings.tavily_search_depth
        self._client: AsyncTavilyClient | None = None

    def _get_client(self) -> AsyncTavilyClient:
        if self._client is None:
            self._client = AsyncTavilyClient(api_key=require_setting("TAVILY_API_KEY", self.api_key))
        return self._client

    async def search(self, query: str, *, max_results: int | None = None) -> list[SearchHit]:
        client = self._get_client()
        response = await client.search(
            query=query,
            search_depth=self.search_depth,
            max_results=max_results or settings.search_max_results,
            include_raw_content=False,
        )
        try:
            parsed = TavilyResponse.model_validate(response)
        except ValidationError as exc:
            raise SearchProviderError("Tavily search response schema invalid.") from exc
        return [
            SearchHit(title=r.title, url=r.url, content=r.content, score=r.score)
            for r in parsed.results
            if r.url.strip()
        ]


def hits_to_dicts(hits: list[SearchHit]) -> list[dict[str, Any]]:
    """Convert search hits to JSON-serializable dicts."""
    return [hit.to_dict() for hit in hits]
