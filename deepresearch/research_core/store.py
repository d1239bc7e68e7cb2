from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from deepresearch.config import settings
from deepresearch.errors import FinalizeProtocolError
from deepresearch.models.research import (
    ExtractionInput,
    PageInput,
    PersistedPage,
    PersistedSearchRecord,
    Reference,
    SearchSession,
)
from deepresearch.research_core.lines import split_lines
from deepresearch.research_core.references import parse_ref_uri
from deepresearch.services import logger as log_service

PAGE_MARKDOWN_FILENAME = "page.md"
PAGE_META_FILENAME = "meta.json"
EXTRACTIONS_FILENAME = "extractions.jsonl"


def project_id_for_path(project_path: str) -> str:
    digest = hashlib.sha256(str(Path(project_path).resolve()).encode("utf-8")).hexdigest()
    return f"p_{digest[:16]}"


@dataclass(frozen=True, slots=True)
class ResolvedReference:
    project_id: str
    session_id: str
    query: str
    reference: Reference


class DeepResearchRepository:
    """File-backed persistence for deep search sessions.

    Layout under ``base_dir``::

        pages/<page_id>/page.md
        pages/<page_id>/meta.json
        pages/<page_id>/extractions.jsonl
        searches/<session_id>.json
    """

    def __init__(self, *, project_path: str = ".", base_dir: str | None = None):
        self._project_id = project_id_for_path(project_path)
        self.base_dir = Path(base_dir or settings.store_dir) / "deepresearch"
        self.pages_dir = self.base_dir / "pages"
        self.searches_dir = self.base_dir / "searches"
        self.pages_dir.mkdir(parents=True, exist_ok=True)
        self.searches_dir.mkdir(parents=True, exist_ok=True)

    @property
    def project_id(self) -> str:
        return self._project_id

    def _search_path(self, session_id: str) -> Path:
        return self.searches_dir / f"{session_id}.json"

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    @staticmethod
    def _read_json(path: Path) -> Any | None:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    async def create_search_session(self, query: str) -> SearchSession:
        session = SearchSession(
            session_id=f"s_{uuid.uuid4().hex}",
            query=query,
            created_at=datetime.now(timezone.utc).isoformat(),
            project_id=self.project_id,
        )
        self._write_json(
            self._search_path(session.session_id),
            {
                "version": 1,
                "project_id": self.project_id,
                "session_id": session.session_id,
                "query": query,
                "created_at": session.created_at,
                "completed_at": None,
                "prompt": "",
                "conclusion_raw": "",
                "conclusion_linked": "",
                "references": [],
            },
        )
        log_service.log_db_operation("create", "searches", "success", details=session.session_id)
        return session

    async def save_page(self, page: PageInput) -> PersistedPage:
        key = hashlib.sha1(f"{page.session_id}\n{page.url}".encode("utf-8")).hexdigest()[:16]
        page_id = f"page_{key}"
        page_dir = self.pages_dir / page_id
        meta = self._read_json(page_dir / PAGE_META_FILENAME)
        if meta is not None:
            return PersistedPage(page_id=page_id, line_count=int(meta["line_count"]))

        line_count = len(split_lines(page.markdown))
        page_dir.mkdir(parents=True, exist_ok=True)
        (page_dir / PAGE_MARKDOWN_FILENAME).write_text(page.markdown, encoding="utf-8")
        self._write_json(
            page_dir / PAGE_META_FILENAME,
            {
                "page_id": page_id,
                "session_id": page.session_id,
                "query": page.query,
                "url": page.url,
                "title": page.title,
                "fetched_at": page.fetched_at,
                "line_count": line_count,
            },
        )
        return PersistedPage(page_id=page_id, line_count=line_count)

    async def save_extraction(self, extraction: ExtractionInput) -> None:
        page_dir = self.pages_dir / extraction.page_id
        if not page_dir.exists():
            raise FileNotFoundError(f"Page not found: {extraction.page_id}")
        with (page_dir / EXTRACTIONS_FILENAME).open("a", encoding="utf-8") as f:
            f.write(json.dumps(extraction.to_dict(), ensure_ascii=False) + "\n")

    async def finalize_search(self, record: PersistedSearchRecord) -> None:
        path = self._search_path(record.session_id)
        existing = self._read_json(path)
        if existing is not None and existing.get("completed_at"):
            raise FinalizeProtocolError(record.session_id)
        self._write_json(path, record.to_dict())
        log_service.log_db_operation(
            "finalize",
            "searches",
            "success",
            details=f"{record.session_id} references={len(record.references)}",
        )

    # --- reads ---

    def load_search(self, session_id: str) -> dict[str, Any] | None:
        return self._read_json(self._search_path(session_id))

    def read_page_markdown(self, page_id: str) -> str | None:
        path = self.pages_dir / page_id / PAGE_MARKDOWN_FILENAME
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def load_extractions(self, page_id: str) -> list[dict[str, Any]]:
        path = self.pages_dir / page_id / EXTRACTIONS_FILENAME
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def resolve_reference(self, uri: str) -> ResolvedReference | None:
        parts = parse_ref_uri(uri)
        if parts is None or parts.project_id != self.project_id:
            return None
        record = self.load_search(parts.session_id)
        if not record:
            return None
        for payload in record.get("references", []):
            if int(payload.get("ref_id", 0)) == parts.ref_id:
                return ResolvedReference(
                    project_id=parts.project_id,
                    session_id=parts.session_id,
                    query=record.get("query", ""),
                    reference=Reference.from_dict(payload),
                )
        return None
