from query_orchestrator.models.data_source import DataSource
from query_orchestrator.models.document_chunk import DocumentChunk
from query_orchestrator.models.query_run import QueryRun

__all__ = ["DataSource", "DocumentChunk", "QueryRun"]
