import asyncio

from conftest import EXAMPLE_QUERY, FakeProvider
from query_orchestrator.agent.classifier import LLMClassifier, TwoTierClassifier
from query_orchestrator.agent.graph import validate_topology
from query_orchestrator.agent.planner import QueryPlanner
from query_orchestrator.agent.state import (
    AgentType,
    Complexity,
    ExecutionOrder,
    QueryContext,
    DataRequirements,
    QueryAnalysis,
    QueryType,
    SourceDescriptor,
    SourceKind,
    TimeoutPolicy,
    ValidationLevel,
)
from query_orchestrator.services.cache_service import ResultCache
from query_orchestrator.services.llm_service import LLMService

A = AgentType

CLASSIFICATION = {
    "classification": {
        "complexity": "complex",
        "query_type": "analytical",
        "data_requirements": {"needs_structured": True, "needs_documents": True},
        "confidence": 0.8,
    }
}


def _planner(script=None) -> tuple[QueryPlanner, FakeProvider]:
    provider = FakeProvider(script)
    llm = LLMService(primary=provider, use_fallback=False)
    return QueryPlanner(TwoTierClassifier(llm=LLMClassifier(llm)), ResultCache(max_entries=50)), provider


def _context(query: str, user_id: str = "u1") -> QueryContext:
    return QueryContext.create(query=query, workspace_id="ws", user_id=user_id)


def test_example_query_plan(warehouse):
    planner, provider = _planner()

    plan = asyncio.run(planner.create_plan(_context(EXAMPLE_QUERY), [warehouse]))

    validate_topology(plan)
    assert provider.calls == []
    assert plan.stages[0].agents == {A.GUARDRAILS, A.INTENT_VALIDATION}
    assert A.QUERY_OPTIMIZATION in plan.skipped
    assert A.CROSS_VALIDATION in plan.skipped
    assert A.HALLUCINATION_CHECK in plan.skipped
    assert A.STRUCTURED_EXECUTION in plan.scheduled
    assert A.DOCUMENT_EXECUTION not in plan.scheduled
    assert plan.validation_level is ValidationLevel.LIGHT
    assert plan.strategy.execution_order is ExecutionOrder.PARALLEL
    assert plan.strategy.timeout_policy is TimeoutPolicy.FAIL_FAST
    assert plan.strategy.primary_source_ids == ("warehouse",)
    assert plan.is_fallback is False


def test_plan_is_cached_and_second_call_makes_no_llm_calls(warehouse):
    planner, provider = _planner(CLASSIFICATION)
    context = _context("what happened")

    first = asyncio.run(planner.create_plan(context, [warehouse]))
    calls_after_first = len(provider.calls)
    second = asyncio.run(planner.create_plan(context, [warehouse]))

    assert calls_after_first == 1
    assert second is first
    assert len(provider.calls) == calls_after_first


def test_analysis_is_reused_across_users_but_plans_are_not(warehouse):
    planner, provider = _planner(CLASSIFICATION)

    first = asyncio.run(planner.create_plan(_context("what happened", "u1"), [warehouse]))
    second = asyncio.run(planner.create_plan(_context("what happened", "u2"), [warehouse]))

    assert second is not first
    assert second.analysis == first.analysis
    assert provider.calls == ["classification"]


def test_complex_plan_schedules_heavy_validation(warehouse):
    planner, _ = _planner(CLASSIFICATION)
    handbook = SourceDescriptor(id="handbook", name="Handbook", kind=SourceKind.DOCUMENT)

    plan = asyncio.run(planner.create_plan(_context("what happened"), [warehouse, handbook]))

    validate_topology(plan)
    assert plan.analysis.complexity is Complexity.COMPLEX
    assert plan.validation_level is ValidationLevel.HEAVY
    assert {A.QUERY_OPTIMIZATION, A.CROSS_VALIDATION, A.HALLUCINATION_CHECK} <= plan.scheduled
    assert plan.strategy.execution_order is ExecutionOrder.HYBRID
    assert plan.strategy.timeout_policy is TimeoutPolicy.WAIT_ALL
    # base 2000 + complex 6000 + 2 sources + cross validation 2000 + hallucination 3000, capped
    assert plan.estimated_duration_ms == 15000


def test_needed_external_sources_stay_behind_the_primaries(warehouse):
    crm = SourceDescriptor(id="crm", name="CRM", kind=SourceKind.EXTERNAL)
    planner, _ = _planner()
    analysis = QueryAnalysis(
        complexity=Complexity.MEDIUM,
        query_type=QueryType.ANALYTICAL,
        requirements=DataRequirements(needs_structured=True, needs_external=True),
        confidence=0.8,
    )

    plan = planner.build_plan(analysis, [warehouse, crm])

    assert plan.strategy.primary_source_ids == ("warehouse",)
    assert plan.strategy.fallback_source_ids == ("crm",)
    assert A.EXTERNAL_EXECUTION in plan.scheduled

def test_empty_sources_still_produce_a_valid_plan():
    planner, _ = _planner()

    plan = asyncio.run(planner.create_plan(_context(EXAMPLE_QUERY), []))

    validate_topology(plan)
    assert plan.strategy.primary_source_ids == ()
    assert A.SYNTHESIS in plan.scheduled
    assert not plan.scheduled & {A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION, A.EXTERNAL_EXECUTION}


def test_classification_failure_yields_uncached_fallback_plan(warehouse):
    planner, provider = _planner()
    context = _context("what happened")

    plan = asyncio.run(planner.create_plan(context, [warehouse]))

    validate_topology(plan)
    assert plan.is_fallback is True
    assert plan.validation_level is ValidationLevel.LIGHT
    assert {A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION, A.EXTERNAL_EXECUTION} <= plan.scheduled
    assert plan.strategy.execution_order is ExecutionOrder.PARALLEL

    # Not cached: the next request retries classification
    asyncio.run(planner.create_plan(context, [warehouse]))
    assert provider.calls == ["classification", "classification"]


def test_invalidate_forces_replanning(warehouse):
    planner, _ = _planner()
    context = _context(EXAMPLE_QUERY)

    first = asyncio.run(planner.create_plan(context, [warehouse]))
    assert planner.invalidate(context, [warehouse]) is True
    second = asyncio.run(planner.create_plan(context, [warehouse]))

    assert second is not first
    assert second.stages == first.stages


def test_invalidate_all_drops_plans_and_analyses_only(warehouse):
    planner, _ = _planner()
    cache = planner._cache
    cache.set("agent:guardrails:abc", "kept")

    asyncio.run(planner.create_plan(_context(EXAMPLE_QUERY), [warehouse]))

    assert planner.invalidate_all() == 2
    assert len(cache) == 1
