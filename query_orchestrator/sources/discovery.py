from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from query_orchestrator.agent.state import SourceDescriptor, SourceKind
from query_orchestrator.db.session import SessionLocal
from query_orchestrator.models.data_source import DataSource
from query_orchestrator.sources.base import SourceDiscovery

logger = logging.getLogger(__name__)


class StaticSourceDiscovery(SourceDiscovery):
    """Fixed descriptor list, optionally keyed by workspace."""

    def __init__(
        self,
        sources: Iterable[SourceDescriptor] = (),
        by_workspace: dict[str, list[SourceDescriptor]] | None = None,
    ) -> None:
        self._sources = list(sources)
        self._by_workspace = by_workspace or {}

    async def list_sources(self, workspace_id: str) -> list[SourceDescriptor]:
        return list(self._by_workspace.get(workspace_id, self._sources))


def _to_descriptor(row: DataSource) -> SourceDescriptor | None:
    try:
        kind = SourceKind(row.kind)
    except ValueError:
        logger.warning("Discovery: source %s has unknown kind %r, skipping", row.id, row.kind)
        return None
    try:
        metadata = json.loads(row.metadata_json) if row.metadata_json else {}
    except json.JSONDecodeError:
        logger.warning("Discovery: source %s has malformed metadata, ignoring it", row.id)
        metadata = {}
    return SourceDescriptor(
        id=row.id,
        name=row.name,
        kind=kind,
        summary=row.summary or "",
        metadata=metadata,
    )


class DatabaseSourceDiscovery(SourceDiscovery):
    """Reads enabled ``DataSource`` rows for a workspace."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def _load(self, workspace_id: str) -> list[SourceDescriptor]:
        stmt = (
            select(DataSource)
            .where(DataSource.workspace_id == workspace_id, DataSource.enabled.is_(True))
            .order_by(DataSource.name.asc())
        )
        with self._session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            descriptors = [_to_descriptor(row) for row in rows]
        return [descriptor for descriptor in descriptors if descriptor is not None]

    async def list_sources(self, workspace_id: str) -> list[SourceDescriptor]:
        return await asyncio.to_thread(self._load, workspace_id)
