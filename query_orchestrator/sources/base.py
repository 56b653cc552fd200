"""
Interfaces to the data a workspace can be queried against.

The orchestration core only sees these abstractions; concrete clients live
next to them and can be swapped per deployment (or faked in tests).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from query_orchestrator.agent.state import SourceDescriptor


class SourceExecutionError(RuntimeError):
    pass


class SourceDiscovery(ABC):
    @abstractmethod
    async def list_sources(self, workspace_id: str) -> list[SourceDescriptor]:
        """Current descriptors for *workspace_id*."""


class StructuredStoreClient(ABC):
    @abstractmethod
    async def execute(
        self,
        source: SourceDescriptor,
        statement: str,
        row_limit: int,
    ) -> list[dict[str, Any]]:
        """Run a read-only statement and return at most *row_limit* rows."""

    def describe_schema(self, source: SourceDescriptor) -> str:
        schema = source.metadata.get("schema")
        if schema:
            return str(schema)
        tables = source.metadata.get("tables") or source.metadata.get("fields") or []
        return ", ".join(map(str, tables))


class DocumentStore(ABC):
    @abstractmethod
    async def search(self, source: SourceDescriptor, query: str, limit: int) -> list[str]:
        """Passages of *source* most relevant to *query*."""


class ExternalConnector(ABC):
    @abstractmethod
    async def fetch(self, source: SourceDescriptor, query: str) -> list[dict[str, Any]]:
        """Records the connector returns for *query*."""
