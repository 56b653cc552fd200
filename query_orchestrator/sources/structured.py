from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from query_orchestrator.agent.state import SourceDescriptor
from query_orchestrator.sources.base import SourceExecutionError, StructuredStoreClient

logger = logging.getLogger(__name__)


class SQLAlchemyStructuredStore(StructuredStoreClient):
    """
    Runs vetted statements against the database named by a source's
    ``connection_url`` metadata. One engine per URL, created lazily.
    """

    def __init__(self) -> None:
        self._engines: dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine(self, source: SourceDescriptor) -> Engine:
        url = source.metadata.get("connection_url")
        if not url:
            raise SourceExecutionError(f"Source {source.id} has no connection_url")
        with self._lock:
            engine = self._engines.get(url)
            if engine is None:
                kwargs: dict = {"pool_pre_ping": True}
                if url.startswith("sqlite"):
                    kwargs["connect_args"] = {"check_same_thread": False}
                engine = create_engine(url, **kwargs)
                self._engines[url] = engine
        return engine

    def _run(self, source: SourceDescriptor, statement: str, row_limit: int) -> list[dict[str, Any]]:
        engine = self._engine(source)
        try:
            with engine.connect() as connection:
                result = connection.execute(text(statement))
                rows = result.mappings().fetchmany(row_limit)
                connection.rollback()
        except SQLAlchemyError as exc:
            raise SourceExecutionError(f"Query failed on {source.name}: {exc}") from exc
        return [dict(row) for row in rows]

    async def execute(
        self,
        source: SourceDescriptor,
        statement: str,
        row_limit: int,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._run, source, statement, row_limit)

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
