from query_orchestrator.sources.base import (
    DocumentStore,
    ExternalConnector,
    SourceDiscovery,
    SourceExecutionError,
    StructuredStoreClient,
)

__all__ = [
    "DocumentStore",
    "ExternalConnector",
    "SourceDiscovery",
    "SourceExecutionError",
    "StructuredStoreClient",
]
