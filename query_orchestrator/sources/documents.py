from __future__ import annotations

import asyncio
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from query_orchestrator.agent.state import SourceDescriptor
from query_orchestrator.db.session import SessionLocal
from query_orchestrator.models.document_chunk import DocumentChunk
from query_orchestrator.services.relevance_service import term_coverage
from query_orchestrator.sources.base import DocumentStore, SourceExecutionError


class SQLAlchemyDocumentStore(DocumentStore):
    """Lexical passage search over the ``document_chunks`` table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def _search(self, source: SourceDescriptor, query: str, limit: int) -> list[str]:
        stmt = (
            select(DocumentChunk.content)
            .where(DocumentChunk.source_id == source.id)
            .order_by(DocumentChunk.position.asc())
        )
        try:
            with self._session_factory() as db:
                contents = db.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            raise SourceExecutionError(f"Passage lookup failed for {source.name}: {exc}") from exc

        scored = [(term_coverage(query, [content]), index, content) for index, content in enumerate(contents)]
        scored = [item for item in scored if item[0] > 0]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [content for _, _, content in scored[:limit]]

    async def search(self, source: SourceDescriptor, query: str, limit: int) -> list[str]:
        return await asyncio.to_thread(self._search, source, query, limit)
