from query_orchestrator.schemas.payloads import AgentResult
from query_orchestrator.schemas.query import QueryRequest, QueryResponse, QueryRunListItem, QueryStreamEvent

__all__ = [
    "AgentResult",
    "QueryRequest",
    "QueryResponse",
    "QueryRunListItem",
    "QueryStreamEvent",
]
