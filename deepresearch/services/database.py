"""PostgreSQL persistence adapter using asyncpg."""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any

import asyncpg

from deepresearch.config import settings
from deepresearch.errors import ConfigurationError, FinalizeProtocolError
from deepresearch.models.research import (
    ExtractionInput,
    PageInput,
    PersistedPage,
    PersistedSearchRecord,
    SearchSession,
)
from deepresearch.research_core.lines import split_lines
from deepresearch.services.logger import log_db_operation

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS deepresearch_searches (
    session_id TEXT PRIMARY KEY,
    project_id TEXT,
    query TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    prompt TEXT NOT NULL DEFAULT '',
    conclusion_raw TEXT NOT NULL DEFAULT '',
    conclusion_linked TEXT NOT NULL DEFAULT '',
    references_json JSONB NOT NULL DEFAULT '[]'::jsonb
);

CREATE TABLE IF NOT EXISTS deepresearch_pages (
    page_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES deepresearch_searches(session_id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    title TEXT,
    query TEXT NOT NULL,
    markdown TEXT NOT NULL,
    line_count INTEGER NOT NULL,
    fetched_at TIMESTAMPTZ NOT NULL,
    UNIQUE (session_id, url)
);

CREATE TABLE IF NOT EXISTS deepresearch_extractions (
    id BIGSERIAL PRIMARY KEY,
    page_id TEXT NOT NULL REFERENCES deepresearch_pages(page_id) ON DELETE CASCADE,
    session_id TEXT NOT NULL,
    query TEXT NOT NULL,
    url TEXT NOT NULL,
    broken BOOLEAN NOT NULL,
    line_count INTEGER NOT NULL,
    ranges JSONB NOT NULL,
    selections JSONB NOT NULL,
    raw_model_output TEXT NOT NULL,
    extracted_at TIMESTAMPTZ NOT NULL
);
"""


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class PostgresPersistenceAdapter:
    """Stores sessions, pages and extractions in PostgreSQL.

    ``save_page`` upserts on ``(session_id, url)``; extractions are insert-only;
    ``finalize_search`` only updates a session that has not completed yet.
    """

    def __init__(self, *, database_url: str | None = None, project_id: str | None = None):
        self.database_url = database_url if database_url is not None else settings.database_url
        self._project_id = project_id
        self._pool: asyncpg.Pool | None = None

    @property
    def project_id(self) -> str | None:
        return self._project_id

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise ConfigurationError("Database not configured. Set DATABASE_URL in .env")
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=10)
        return self._pool

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_search_session(self, query: str) -> SearchSession:
        session = SearchSession(
            session_id=f"s_{uuid.uuid4().hex}",
            query=query,
            created_at=datetime.now(timezone.utc).isoformat(),
            project_id=self.project_id,
        )
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO deepresearch_searches (session_id, project_id, query, created_at)
                VALUES ($1, $2, $3, $4)
                """,
                session.session_id,
                session.project_id,
                query,
                _parse_ts(session.created_at),
            )
        log_db_operation("insert", "deepresearch_searches", "success", details=session.session_id)
        return session

    async def save_page(self, page: PageInput) -> PersistedPage:
        key = hashlib.sha1(f"{page.session_id}\n{page.url}".encode("utf-8")).hexdigest()[:16]
        line_count = len(split_lines(page.markdown))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO deepresearch_pages
                    (page_id, session_id, url, title, query, markdown, line_count, fetched_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (session_id, url) DO UPDATE SET session_id = EXCLUDED.session_id
                RETURNING page_id, line_count
                """,
                f"page_{key}",
                page.session_id,
                page.url,
                page.title,
                page.query,
                page.markdown,
                line_count,
                _parse_ts(page.fetched_at),
            )
        return PersistedPage(page_id=row["page_id"], line_count=row["line_count"])

    async def save_extraction(self, extraction: ExtractionInput) -> None:
        payload = extraction.to_dict()
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO deepresearch_extractions
                    (page_id, session_id, query, url, broken, line_count,
                     ranges, selections, raw_model_output, extracted_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10)
                """,
                extraction.page_id,
                extraction.session_id,
                extraction.query,
                extraction.url,
                extraction.broken,
                extraction.line_count,
                json.dumps(payload["ranges"]),
                json.dumps(payload["selections"], ensure_ascii=False),
                extraction.raw_model_output,
                _parse_ts(extraction.extracted_at),
            )

    async def finalize_search(self, record: PersistedSearchRecord) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE deepresearch_searches
                SET completed_at = $2, prompt = $3, conclusion_raw = $4,
                    conclusion_linked = $5, references_json = $6::jsonb
                WHERE session_id = $1 AND completed_at IS NULL
                RETURNING session_id
                """,
                record.session_id,
                _parse_ts(record.completed_at),
                record.prompt,
                record.conclusion_raw,
                record.conclusion_linked,
                json.dumps([r.to_dict() for r in record.references], ensure_ascii=False),
            )
        if row is None:
            log_db_operation(
                "finalize", "deepresearch_searches", "failed", error=f"already finalized: {record.session_id}"
            )
            raise FinalizeProtocolError(record.session_id)
        log_db_operation("finalize", "deepresearch_searches", "success", details=record.session_id)

    async def load_search(self, session_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM deepresearch_searches WHERE session_id = $1", session_id)
        if row is None:
            return None
        result = dict(row)
        references = result.pop("references_json", "[]")
        result["references"] = json.loads(references) if isinstance(references, str) else references
        return result
