from __future__ import annotations

import json
from typing import Any, Protocol

import httpx

from deepresearch.config import settings
from deepresearch.errors import PageFetchError


class PageFetcher(Protocol):
    async def fetch_markdown(self, url: str) -> str: ...


def _unwrap_payload(raw: str, url: str) -> str:
    """Jina returns either markdown or a JSON envelope carrying it."""
    if not raw.strip().startswith("{"):
        return raw
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PageFetchError(url, f"Jina response JSON parse failed for {url}: {exc}") from exc
    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict):
        if isinstance(parsed.get("content"), str):
            return parsed["content"]
        nested = parsed.get("data")
        if isinstance(nested, dict) and isinstance(nested.get("content"), str):
            return nested["content"]
        return json.dumps(parsed, indent=2, ensure_ascii=False)
    return raw


class JinaReaderFetcher:
    """Fetch pages as markdown through the Jina reader API.

    API: GET {base_url}{url}
    Headers:
        - Accept: application/json
        - Authorization: Bearer <api_key> (optional)
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.jina_reader_base_url).strip() or "https://r.jina.ai/"
        self.api_key = settings.jina_api_key if api_key is None else api_key
        self.timeout = timeout or settings.fetch_timeout_seconds
        self._http_client = http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def fetch_markdown(self, url: str) -> str:
        reader_url = f"{self.base_url}{url}"
        if self._http_client is not None:
            response = await self._http_client.get(reader_url, headers=self._headers(), timeout=self.timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(reader_url, headers=self._headers(), timeout=self.timeout)
        if response.status_code >= 400:
            raise PageFetchError(url, f"Jina reader failed: {response.status_code}")
        markdown = _unwrap_payload(response.text, url)
        if not markdown.strip():
            raise PageFetchError(url, "Jina content unavailable.")
        return markdown
