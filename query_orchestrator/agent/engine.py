"""
QueryEngine — the in-process entry point for one orchestrated request.

discover sources → plan (cache-checked) → validate topology → execute
stages → aggregate → record telemetry.

``stream`` yields the same run as SSE-ready event dicts so the API layer
can forward progress to the frontend.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from query_orchestrator.agent.aggregator import ResultAggregator
from query_orchestrator.agent.agents import (
    BaseAgent,
    CrossValidationAgent,
    DocumentExecutionAgent,
    ExternalExecutionAgent,
    GuardrailsAgent,
    HallucinationCheckAgent,
    IntentValidationAgent,
    QueryOptimizationAgent,
    SourceFilterAgent,
    StructuredExecutionAgent,
    SynthesisAgent,
    VisualizationAgent,
)
from query_orchestrator.agent.classifier import LLMClassifier, TwoTierClassifier
from query_orchestrator.agent.executor import Observer, PipelineExecutor
from query_orchestrator.agent.graph import PlanTopologyError, validate_topology
from query_orchestrator.agent.planner import QueryPlanner
from query_orchestrator.agent.state import AgentType, ExecutionPlan, FinalAnswer, QueryContext, SourceDescriptor
from query_orchestrator.core.config import Settings, settings as default_settings
from query_orchestrator.services.cache_service import ResultCache
from query_orchestrator.services.embedding_service import EmbeddingService
from query_orchestrator.services.llm_service import LLMService
from query_orchestrator.services.telemetry_service import TelemetryRecorder
from query_orchestrator.sources.base import DocumentStore, ExternalConnector, SourceDiscovery, StructuredStoreClient

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Event type literals (match the SSE event names)
# ──────────────────────────────────────────────
EVT_PLAN = "plan"
EVT_FINAL = "final"
EVT_ERROR = "error"

EngineEvent = dict[str, Any]


class QueryEngine:
    """
    Wires discovery, planning, execution and aggregation together.

    Parameters
    ----------
    discovery : SourceDiscovery
        Lists the sources of a workspace.
    planner : QueryPlanner
        Builds (or returns the cached) execution plan.
    executor : PipelineExecutor
        Runs the plan's stages.
    aggregator : ResultAggregator | None
        Turns the pipeline outcome into the final answer.
    telemetry : TelemetryRecorder | None
        Optional usage/performance recorder; failures never reach callers.
    cache : ResultCache | None
        The shared cache, exposed for stats and invalidation.
    """

    def __init__(
        self,
        discovery: SourceDiscovery,
        planner: QueryPlanner,
        executor: PipelineExecutor,
        aggregator: ResultAggregator | None = None,
        telemetry: TelemetryRecorder | None = None,
        cache: ResultCache | None = None,
    ) -> None:
        self._discovery = discovery
        self._planner = planner
        self._executor = executor
        self._aggregator = aggregator or ResultAggregator()
        self._telemetry = telemetry
        self._cache = cache

    @property
    def cache(self) -> ResultCache | None:
        return self._cache

    @property
    def telemetry(self) -> TelemetryRecorder | None:
        return self._telemetry

    # ──────────────────────────────────────────
    # Public entry points
    # ──────────────────────────────────────────

    async def answer(self, context: QueryContext, observer: Observer | None = None) -> FinalAnswer:
        """
        Run one request end to end.

        Parameters
        ----------
        context : QueryContext
            Immutable request input.
        observer : Observer | None
            Receives ``plan`` and per-stage progress events.

        Returns
        -------
        FinalAnswer
            Always structurally valid; refusals and rejections are answers,
            not exceptions.
        """
        started = time.perf_counter()
        deadline = time.monotonic() + self._executor.deadline_seconds
        logger.info("Engine: query received | workspace=%s | query=%r", context.workspace_id, context.query)

        try:
            sources = await self._discover_within(context, deadline)
            plan = await self._plan_within(context, sources, deadline)
            try:
                validate_topology(plan)
            except PlanTopologyError as exc:
                logger.warning("Engine: plan failed topology check (%s), using fallback plan", exc)
                plan = self._planner.fallback_plan(sources)

            if observer is not None:
                await observer(EVT_PLAN, plan.to_dict())

            outcome = await self._executor.run(plan, context, sources, observer, deadline=deadline)
            answer = self._aggregator.finalize(context, plan, outcome)
        except Exception as exc:
            if self._telemetry is not None:
                await self._telemetry.record_failure(context, str(exc))
            raise

        answer.elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Engine: %s | confidence=%.2f | units=%d | %.0fms",
            answer.status.value,
            answer.confidence,
            answer.resource_units,
            answer.elapsed_ms,
        )
        if self._telemetry is not None:
            await self._telemetry.record(context, answer)
        return answer

    async def stream(self, context: QueryContext) -> AsyncIterator[EngineEvent]:
        """
        Yield ``plan``, ``stage_start``, ``stage_result`` and finally one
        ``final`` (or ``error``) event for the run.
        """
        queue: asyncio.Queue[EngineEvent | None] = asyncio.Queue()

        async def observer(event_type: str, data: dict[str, Any]) -> None:
            await queue.put(self._evt(event_type, data))

        async def produce() -> None:
            try:
                answer = await self.answer(context, observer)
                await queue.put(self._evt(EVT_FINAL, answer.to_dict()))
            except Exception as exc:
                logger.exception("Engine: run failed: %s", exc)
                await queue.put(self._evt(EVT_ERROR, {"message": str(exc)}))
            finally:
                await queue.put(None)

        task = asyncio.create_task(produce())
        try:
            while (event := await queue.get()) is not None:
                yield event
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def discover(self, context: QueryContext) -> list[SourceDescriptor]:
        """Workspace sources, restricted to the caller's explicit selection."""
        try:
            sources = await self._discovery.list_sources(context.workspace_id)
        except Exception as exc:
            logger.warning("Engine: source discovery failed (%s), continuing with no sources", exc)
            return []

        if context.selected_source_ids is not None:
            sources = [source for source in sources if source.id in context.selected_source_ids]
        return list(sources)

    # ──────────────────────────────────────────
    # Deadline-bounded setup
    # ──────────────────────────────────────────

    def _setup_budget(self, deadline: float) -> float:
        # Discovery and planning each get at most one stage timeout
        return max(0.0, min(self._executor.stage_timeout, deadline - time.monotonic()))

    async def _discover_within(self, context: QueryContext, deadline: float) -> list[SourceDescriptor]:
        try:
            return await asyncio.wait_for(self.discover(context), self._setup_budget(deadline))
        except asyncio.TimeoutError:
            logger.warning("Engine: source discovery timed out, continuing with no sources")
            return []

    async def _plan_within(
        self,
        context: QueryContext,
        sources: list[SourceDescriptor],
        deadline: float,
    ) -> ExecutionPlan:
        try:
            return await asyncio.wait_for(
                self._planner.create_plan(context, sources),
                self._setup_budget(deadline),
            )
        except asyncio.TimeoutError:
            logger.warning("Engine: planning timed out, using fallback plan")
            return self._planner.fallback_plan(sources)

    def invalidate_cache(self) -> int:
        if self._cache is None:
            return 0
        count = len(self._cache)
        self._cache.clear()
        return count

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _evt(event_type: str, data: dict[str, Any]) -> EngineEvent:
        return {"type": event_type, "data": data}


# ──────────────────────────────────────────────
# Default wiring
# ──────────────────────────────────────────────

def build_agents(
    llm: LLMService | None,
    cache: ResultCache | None,
    embeddings: EmbeddingService | None = None,
    structured_store: StructuredStoreClient | None = None,
    document_store: DocumentStore | None = None,
    connector: ExternalConnector | None = None,
    config: Settings | None = None,
) -> dict[AgentType, BaseAgent]:
    """One instance of every agent type, sharing the LLM service and cache."""
    cfg = config or default_settings
    shared = {"llm": llm, "cache": cache, "cache_ttl": cfg.cache_short_ttl_seconds}
    agents: list[BaseAgent] = [
        GuardrailsAgent(**shared, threshold=cfg.agent_llm_threshold),
        IntentValidationAgent(**shared, threshold=cfg.agent_llm_threshold),
        QueryOptimizationAgent(**shared),
        SourceFilterAgent(
            **shared,
            embeddings=embeddings,
            min_relevance=cfg.source_min_relevance,
            max_selected=cfg.source_max_selected,
            default_relevance=cfg.source_default_relevance,
        ),
        StructuredExecutionAgent(llm, store=structured_store, row_limit=cfg.structured_row_limit),
        DocumentExecutionAgent(
            llm,
            store=document_store,
            passage_limit=cfg.document_passage_limit,
            min_coverage=cfg.document_min_coverage,
        ),
        ExternalExecutionAgent(llm, connector=connector),
        CrossValidationAgent(llm),
        SynthesisAgent(llm),
        HallucinationCheckAgent(llm, confidence_floor=cfg.answer_confidence_floor),
        VisualizationAgent(llm, threshold=cfg.agent_llm_threshold),
    ]
    return {agent.agent_type: agent for agent in agents}


def build_default_engine(config: Settings | None = None) -> QueryEngine:
    """Engine backed by the configured providers and the application database."""
    # Imported here so tests that build their own engine never touch the database module
    from query_orchestrator.db.session import SessionLocal
    from query_orchestrator.sources.discovery import DatabaseSourceDiscovery
    from query_orchestrator.sources.documents import SQLAlchemyDocumentStore
    from query_orchestrator.sources.external import HttpConnector
    from query_orchestrator.sources.structured import SQLAlchemyStructuredStore

    cfg = config or default_settings
    cache = ResultCache(max_entries=cfg.cache_max_entries, default_ttl=cfg.cache_short_ttl_seconds)
    llm = LLMService()
    agents = build_agents(
        llm,
        cache,
        embeddings=EmbeddingService(),
        structured_store=SQLAlchemyStructuredStore(),
        document_store=SQLAlchemyDocumentStore(SessionLocal),
        connector=HttpConnector(),
        config=cfg,
    )
    planner = QueryPlanner(
        TwoTierClassifier(llm=LLMClassifier(llm), threshold=cfg.planner_llm_threshold),
        cache,
        cfg,
    )
    return QueryEngine(
        discovery=DatabaseSourceDiscovery(SessionLocal),
        planner=planner,
        executor=PipelineExecutor(
            agents,
            stage_timeout=cfg.stage_timeout_seconds,
            deadline_seconds=cfg.request_deadline_seconds,
        ),
        aggregator=ResultAggregator(cfg.answer_confidence_floor),
        telemetry=TelemetryRecorder(SessionLocal, enabled=cfg.telemetry_enabled),
        cache=cache,
    )
