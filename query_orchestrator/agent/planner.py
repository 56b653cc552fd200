"""
QueryPlanner: turns a query context into an ``ExecutionPlan``.

Plans are cached per (query, source set, user scope); the query analysis is
cached separately per query text because it does not depend on sources or
user.  Any failure while planning yields the fixed fallback plan, which is
never cached so the next request gets another chance at a real plan.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from query_orchestrator.agent.classifier import TwoTierClassifier
from query_orchestrator.agent.graph import layer_stages
from query_orchestrator.agent.state import (
    EXECUTION_AGENTS,
    AgentType,
    Complexity,
    DataRequirements,
    DataSourceStrategy,
    ExecutionOrder,
    ExecutionPlan,
    QueryAnalysis,
    QueryContext,
    QueryType,
    SourceDescriptor,
    SourceKind,
    TimeoutPolicy,
    ValidationLevel,
)
from query_orchestrator.core.config import Settings, settings as default_settings
from query_orchestrator.services.cache_service import ResultCache, analysis_key, plan_key

logger = logging.getLogger(__name__)

# Priority weight of a source kind when the query needs that kind of data
_KIND_WEIGHTS = {
    SourceKind.STRUCTURED: 0.8,
    SourceKind.DOCUMENT: 0.6,
    SourceKind.EXTERNAL: 0.4,
}
_PRIMARY_THRESHOLD = 0.5

_VALIDATION_BY_COMPLEXITY = {
    Complexity.SIMPLE: ValidationLevel.LIGHT,
    Complexity.MEDIUM: ValidationLevel.MEDIUM,
    Complexity.COMPLEX: ValidationLevel.HEAVY,
}

_FALLBACK_SKIPPED = frozenset({AgentType.CROSS_VALIDATION, AgentType.HALLUCINATION_CHECK})
_FALLBACK_ESTIMATE_MS = 10000

DEFAULT_ANALYSIS = QueryAnalysis(
    complexity=Complexity.MEDIUM,
    query_type=QueryType.FACTUAL,
    requirements=DataRequirements(needs_structured=True, needs_documents=True),
    confidence=0.5,
    tier="default",
)


def select_policies(complexity: Complexity) -> tuple[ExecutionOrder, TimeoutPolicy]:
    if complexity is Complexity.SIMPLE:
        return ExecutionOrder.PARALLEL, TimeoutPolicy.FAIL_FAST
    if complexity is Complexity.COMPLEX:
        return ExecutionOrder.HYBRID, TimeoutPolicy.WAIT_ALL
    return ExecutionOrder.PARALLEL, TimeoutPolicy.PARTIAL_RESULTS


class QueryPlanner:
    """
    Classifies a query and assembles its execution plan.

    Parameters
    ----------
    classifier : TwoTierClassifier
        Produces the query analysis.
    cache : ResultCache
        Shared result cache; plans and analyses live under their own keys.
    config : Settings | None
        TTLs and duration-estimate constants.
    """

    def __init__(
        self,
        classifier: TwoTierClassifier,
        cache: ResultCache,
        config: Settings | None = None,
    ) -> None:
        self._classifier = classifier
        self._cache = cache
        self._config = config or default_settings

    # ──────────────────────────────────────────
    # Public entry points
    # ──────────────────────────────────────────

    async def create_plan(
        self,
        context: QueryContext,
        sources: Sequence[SourceDescriptor],
    ) -> ExecutionPlan:
        return await self._cache.get_or_compute(
            plan_key(context.query, sources, context.user_scope),
            lambda: self._plan_or_fallback(context, sources),
            ttl=self._config.cache_plan_ttl_seconds,
            should_cache=lambda plan: not plan.is_fallback,
        )

    def invalidate(self, context: QueryContext, sources: Sequence[SourceDescriptor]) -> bool:
        return self._cache.invalidate(plan_key(context.query, sources, context.user_scope))

    def invalidate_all(self) -> int:
        return self._cache.invalidate_prefix("plan:") + self._cache.invalidate_prefix("analysis:")

    def fallback_plan(self, sources: Sequence[SourceDescriptor]) -> ExecutionPlan:
        """Runnable plan that assumes nothing about the query."""
        agents = frozenset(AgentType) - _FALLBACK_SKIPPED
        return ExecutionPlan(
            stages=layer_stages(agents),
            skipped=_FALLBACK_SKIPPED,
            strategy=DataSourceStrategy(
                primary_source_ids=tuple(source.id for source in sources),
                fallback_source_ids=(),
                weights=dict(_KIND_WEIGHTS),
                execution_order=ExecutionOrder.PARALLEL,
                timeout_policy=TimeoutPolicy.PARTIAL_RESULTS,
            ),
            validation_level=ValidationLevel.LIGHT,
            estimated_duration_ms=_FALLBACK_ESTIMATE_MS,
            confidence=0.5,
            analysis=DEFAULT_ANALYSIS,
            reasoning="Fallback plan: query analysis unavailable",
            is_fallback=True,
        )

    # ──────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────

    async def _plan_or_fallback(
        self,
        context: QueryContext,
        sources: Sequence[SourceDescriptor],
    ) -> ExecutionPlan:
        try:
            analysis = await self._analyze(context)
            plan = self.build_plan(analysis, sources)
        except Exception as exc:
            logger.warning("Planner: planning failed (%s), using fallback plan", exc)
            return self.fallback_plan(sources)

        logger.info(
            "Planner: %s | stages=%d | skipped=%s | est=%dms",
            plan.reasoning,
            len(plan.stages),
            sorted(agent.value for agent in plan.skipped),
            plan.estimated_duration_ms,
        )
        return plan

    async def _analyze(self, context: QueryContext) -> QueryAnalysis:
        key = analysis_key(context.query)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        analysis = await self._classifier.classify(context.query, context.history)
        self._cache.set(key, analysis, self._config.cache_analysis_ttl_seconds)
        return analysis

    def build_plan(
        self,
        analysis: QueryAnalysis,
        sources: Sequence[SourceDescriptor],
    ) -> ExecutionPlan:
        requirements = analysis.requirements

        # ── Source strategy ──────────────────────────────────────────
        weights = {
            kind: weight if requirements.needs(kind) else 0.0
            for kind, weight in _KIND_WEIGHTS.items()
        }
        primary = tuple(s.id for s in sources if weights[s.kind] >= _PRIMARY_THRESHOLD)
        fallback = tuple(s.id for s in sources if weights[s.kind] < _PRIMARY_THRESHOLD)
        order, policy = select_policies(analysis.complexity)

        available = {source.kind for source in sources}
        wanted = {kind for kind in available if requirements.needs(kind)}
        execution_kinds = wanted or available

        # ── Agent selection ──────────────────────────────────────────
        validation = _VALIDATION_BY_COMPLEXITY[analysis.complexity]
        agents = {AgentType.GUARDRAILS, AgentType.INTENT_VALIDATION, AgentType.SOURCE_FILTER, AgentType.SYNTHESIS}
        if analysis.complexity is not Complexity.SIMPLE:
            agents.add(AgentType.QUERY_OPTIMIZATION)
        if validation in (ValidationLevel.MEDIUM, ValidationLevel.HEAVY):
            agents.add(AgentType.CROSS_VALIDATION)
        if validation is ValidationLevel.HEAVY:
            agents.add(AgentType.HALLUCINATION_CHECK)
        if requirements.needs_visualization:
            agents.add(AgentType.VISUALIZATION)
        agents.update(EXECUTION_AGENTS[kind] for kind in execution_kinds)

        strategy = DataSourceStrategy(
            primary_source_ids=primary,
            fallback_source_ids=fallback,
            weights=weights,
            execution_order=order,
            timeout_policy=policy,
        )
        return ExecutionPlan(
            stages=layer_stages(agents),
            skipped=frozenset(AgentType) - agents,
            strategy=strategy,
            validation_level=validation,
            estimated_duration_ms=self.estimate_duration(analysis.complexity, len(primary), agents),
            confidence=analysis.confidence,
            analysis=analysis,
            reasoning=(
                f"Query complexity: {analysis.complexity.value}, "
                f"Query type: {analysis.query_type.value}, "
                f"Data sources needed: {len(primary)}, "
                f"Execution strategy: {order.value}"
            ),
        )

    def estimate_duration(
        self,
        complexity: Complexity,
        primary_sources: int,
        agents: set[AgentType] | frozenset[AgentType],
    ) -> int:
        cfg = self._config
        estimate = cfg.planner_base_estimate_ms
        if complexity is Complexity.MEDIUM:
            estimate += cfg.planner_medium_surcharge_ms
        elif complexity is Complexity.COMPLEX:
            estimate += cfg.planner_complex_surcharge_ms
        estimate += primary_sources * cfg.planner_per_source_ms
        if AgentType.CROSS_VALIDATION in agents:
            estimate += cfg.planner_cross_validation_ms
        if AgentType.HALLUCINATION_CHECK in agents:
            estimate += cfg.planner_hallucination_ms
        return min(estimate, cfg.planner_max_estimate_ms)
