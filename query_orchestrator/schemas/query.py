"""Pydantic schemas for the query API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from query_orchestrator.agent.state import ConversationMessage, QueryContext
from query_orchestrator.core.config import settings


# ──────────────────────────────────────────────
# Request
# ──────────────────────────────────────────────

class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    text: str = Field(min_length=1, max_length=8000)
    timestamp: datetime | None = None


class QueryRequest(BaseModel):
    query: str = Field(min_length=1, max_length=4000, description="The user's data question")
    workspace_id: str = Field(min_length=1, max_length=64)
    user_id: str | None = Field(default=None, max_length=64)
    history: list[HistoryMessage] = Field(default_factory=list)
    source_ids: list[str] | None = Field(
        default=None,
        description="Restrict the run to these sources (optional)",
    )

    def to_context(self) -> QueryContext:
        history = [
            ConversationMessage(role=m.role, text=m.text, timestamp=m.timestamp)
            if m.timestamp is not None
            else ConversationMessage(role=m.role, text=m.text)
            for m in self.history
        ]
        return QueryContext.create(
            query=self.query,
            workspace_id=self.workspace_id,
            user_id=self.user_id,
            history=history,
            selected_source_ids=self.source_ids,
            max_history=settings.history_max_messages,
        )


# ──────────────────────────────────────────────
# Response
# ──────────────────────────────────────────────

class QueryResponse(BaseModel):
    status: Literal["answered", "degraded", "partial", "refused", "rejected", "conversational"]
    answer: str
    confidence: float
    sources_cited: list[str] = Field(default_factory=list)
    follow_up_suggestions: list[str] = Field(default_factory=list)
    notice: str | None = None
    risk_level: str | None = None
    validation_level: str | None = None
    resource_units: int = 0
    elapsed_ms: float = 0.0
    agents: list[dict[str, Any]] = Field(default_factory=list)
    plan: dict[str, Any] | None = None
    visualization: dict[str, Any] | None = None


# ──────────────────────────────────────────────
# SSE stream events
# ──────────────────────────────────────────────

class QueryStreamEvent(BaseModel):
    """
    Every Server-Sent Event the stream endpoint emits follows this shape.

    plan         → ExecutionPlan.to_dict()
    stage_start  → {index, agents}
    stage_result → {index, elapsed_ms, timed_out, degraded, agents: [summary]}
    final        → QueryResponse fields
    error        → {message}
    """

    type: Literal["plan", "stage_start", "stage_result", "final", "error"]
    data: dict[str, Any]


# ──────────────────────────────────────────────
# Stored run (GET /query/runs)
# ──────────────────────────────────────────────

class QueryRunListItem(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    workspace_id: str
    user_id: str | None
    query: str
    status: str
    confidence: float | None
    resource_units: int
    duration_ms: float | None
    created_at: datetime
    completed_at: datetime | None
