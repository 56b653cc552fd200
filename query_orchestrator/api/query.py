"""
Query API endpoints.

POST   /query          — Answer one question (single JSON response).
POST   /query/stream   — Same run, progress streamed via SSE.
GET    /query/runs     — Recent runs recorded by telemetry.
GET    /query/cache    — Result/plan cache statistics.
DELETE /query/cache    — Drop every cached plan, analysis and agent result.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from query_orchestrator.agent.engine import QueryEngine
from query_orchestrator.api.dependencies import get_engine
from query_orchestrator.schemas.query import QueryRequest, QueryResponse, QueryRunListItem, QueryStreamEvent

router = APIRouter(prefix="/query", tags=["query"])
logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _sse_line(event_type: str, data: dict[str, Any]) -> str:
    """Format a single SSE message (terminated by a blank line)."""
    payload = json.dumps({"type": event_type, "data": data}, ensure_ascii=False, default=str)
    return f"event: {event_type}\ndata: {payload}\n\n"


# ──────────────────────────────────────────────────────────────────────────────
# POST /query
# ──────────────────────────────────────────────────────────────────────────────

@router.post("", response_model=QueryResponse)
async def run_query(
    request: QueryRequest,
    engine: QueryEngine = Depends(get_engine),
):
    """
    Answer a data question.

    Rejections, refusals and low-confidence answers are normal responses;
    inspect ``status`` rather than the HTTP code.
    """
    try:
        answer = await engine.answer(request.to_context())
    except Exception as exc:
        logger.exception("Query run failed: %s", exc)
        raise HTTPException(status_code=500, detail="Query orchestration failed") from exc
    return QueryResponse(**answer.to_dict())


# ──────────────────────────────────────────────────────────────────────────────
# POST /query/stream
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/stream")
async def stream_query(
    request: QueryRequest,
    engine: QueryEngine = Depends(get_engine),
) -> StreamingResponse:
    """
    Run the query and stream progress events via Server-Sent Events.

    Event types (in order):
    - ``plan``         — the execution plan that will run
    - ``stage_start``  — a stage's agents were launched
    - ``stage_result`` — a stage joined (per-agent summaries)
    - ``final``        — the answer (last event)
    - ``error``        — emitted if an unrecoverable error occurs
    """
    context = request.to_context()

    async def event_stream():
        async for raw in engine.stream(context):
            event = QueryStreamEvent.model_validate(raw)
            yield _sse_line(event.type, event.data)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",    # disable nginx buffering
        },
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /query/runs
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/runs", response_model=list[QueryRunListItem])
def list_query_runs(
    workspace_id: str = Query(min_length=1, max_length=64),
    user_id: str | None = None,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    engine: QueryEngine = Depends(get_engine),
):
    """Return the most recent recorded runs for a workspace."""
    telemetry = engine.telemetry
    if telemetry is None or not telemetry.enabled:
        return []
    return telemetry.list_runs(workspace_id, user_id=user_id, limit=limit, offset=offset)


# ──────────────────────────────────────────────────────────────────────────────
# /query/cache
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/cache")
def cache_stats(
    top: int = Query(default=5, ge=0, le=50),
    engine: QueryEngine = Depends(get_engine),
):
    if engine.cache is None:
        raise HTTPException(status_code=404, detail="Caching is disabled")
    return engine.cache.stats(top).to_dict()


@router.delete("/cache")
def clear_cache(engine: QueryEngine = Depends(get_engine)):
    cleared = engine.invalidate_cache()
    logger.info("Cache cleared via API (%d entries)", cleared)
    return {"cleared": cleared}
