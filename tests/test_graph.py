from dataclasses import replace

import pytest

from query_orchestrator.agent.graph import (
    PlanTopologyError,
    effective_dependencies,
    layer_stages,
    validate_topology,
)
from query_orchestrator.agent.planner import DEFAULT_ANALYSIS, QueryPlanner
from query_orchestrator.agent.state import AgentType, Stage
from query_orchestrator.services.cache_service import ResultCache

A = AgentType


def test_layering_orders_synthesis_after_execution():
    stages = layer_stages({
        A.GUARDRAILS,
        A.INTENT_VALIDATION,
        A.SOURCE_FILTER,
        A.STRUCTURED_EXECUTION,
        A.DOCUMENT_EXECUTION,
        A.SYNTHESIS,
        A.VISUALIZATION,
    })

    assert [stage.agents for stage in stages] == [
        frozenset({A.GUARDRAILS, A.INTENT_VALIDATION}),
        frozenset({A.SOURCE_FILTER}),
        frozenset({A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION}),
        frozenset({A.SYNTHESIS}),
        frozenset({A.VISUALIZATION}),
    ]


def test_effective_dependencies_look_through_unscheduled_agents():
    scheduled = frozenset({A.GUARDRAILS, A.INTENT_VALIDATION, A.SOURCE_FILTER, A.SYNTHESIS})

    # No execution agent and no cross validation: synthesis still waits for the filter
    assert effective_dependencies(A.SYNTHESIS, scheduled) == {A.SOURCE_FILTER}
    assert effective_dependencies(A.SOURCE_FILTER, scheduled) == {A.GUARDRAILS, A.INTENT_VALIDATION}


def test_full_plan_is_topologically_valid():
    plan = QueryPlanner(classifier=None, cache=ResultCache()).fallback_plan([])

    validate_topology(plan)
    assert plan.stages[0].agents == {A.GUARDRAILS, A.INTENT_VALIDATION}


def test_validate_topology_rejects_out_of_order_stages():
    plan = QueryPlanner(classifier=None, cache=ResultCache()).fallback_plan([])
    swapped = replace(plan, stages=(plan.stages[1], plan.stages[0], *plan.stages[2:]))

    with pytest.raises(PlanTopologyError):
        validate_topology(swapped)


def test_validate_topology_rejects_overlap_and_empty_stage():
    plan = QueryPlanner(classifier=None, cache=ResultCache()).fallback_plan([])

    with pytest.raises(PlanTopologyError):
        validate_topology(replace(plan, skipped=plan.skipped | {A.SYNTHESIS}))
    with pytest.raises(PlanTopologyError):
        validate_topology(replace(plan, stages=(*plan.stages, Stage(agents=frozenset()))))
    assert plan.analysis is DEFAULT_ANALYSIS
