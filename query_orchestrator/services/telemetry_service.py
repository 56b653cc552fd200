"""
Usage/performance telemetry for orchestrated requests.

One ``QueryRun`` row per request.  Writes happen on a worker thread so the
event loop never blocks on the database, and a failed write is logged and
dropped: telemetry must never cost the caller their answer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from query_orchestrator.agent.state import FinalAnswer, QueryContext
from query_orchestrator.core.config import settings
from query_orchestrator.models.query_run import QueryRun

logger = logging.getLogger(__name__)


class TelemetryRecorder:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        enabled: bool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._enabled = settings.telemetry_enabled if enabled is None else enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def record(self, context: QueryContext, answer: FinalAnswer) -> int | None:
        """Persist *answer*; returns the row id, or ``None`` if nothing was written."""
        if not self._enabled:
            return None
        try:
            return await asyncio.to_thread(self._write, context, answer)
        except Exception as exc:
            logger.warning("Telemetry: failed to record query run: %s", exc)
            return None

    async def record_failure(self, context: QueryContext, error: str) -> None:
        if not self._enabled:
            return
        try:
            await asyncio.to_thread(self._write_failure, context, error)
        except Exception as exc:
            logger.warning("Telemetry: failed to record failed run: %s", exc)

    def list_runs(
        self,
        workspace_id: str,
        user_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[QueryRun]:
        """Most recent runs for a workspace (optionally one user), newest first."""
        stmt = select(QueryRun).where(QueryRun.workspace_id == workspace_id)
        if user_id is not None:
            stmt = stmt.where(QueryRun.user_id == user_id)
        stmt = stmt.order_by(QueryRun.created_at.desc(), QueryRun.id.desc()).limit(limit).offset(offset)
        with self._session_factory() as db:
            runs = list(db.execute(stmt).scalars().all())
            db.expunge_all()
        return runs

    # ──────────────────────────────────────────
    # Worker-thread bodies
    # ──────────────────────────────────────────

    def _write(self, context: QueryContext, answer: FinalAnswer) -> int:
        run = QueryRun(
            workspace_id=context.workspace_id,
            user_id=context.user_id,
            query=context.query,
            status=answer.status.value,
            plan_json=json.dumps(answer.plan) if answer.plan is not None else None,
            agents_json=json.dumps(answer.agents),
            confidence=answer.confidence,
            resource_units=answer.resource_units,
            duration_ms=answer.elapsed_ms,
            answer=answer.answer,
            created_at=answer.created_at,
            completed_at=datetime.now(timezone.utc),
        )
        with self._session_factory() as db:
            db.add(run)
            db.commit()
            return run.id

    def _write_failure(self, context: QueryContext, error: str) -> None:
        with self._session_factory() as db:
            db.add(
                QueryRun(
                    workspace_id=context.workspace_id,
                    user_id=context.user_id,
                    query=context.query,
                    status="failed",
                    answer=error,
                    completed_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
