"""
Agent dependency graph.

Stages are derived from declared dependencies rather than from the order in
which a plan happens to be assembled.  When a dependency is not scheduled
(skipped, or no sources of that kind) it is replaced by its own
dependencies, so ordering still holds transitively.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from query_orchestrator.agent.state import AgentType, ExecutionPlan, Stage

A = AgentType

_EXECUTION = frozenset({A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION, A.EXTERNAL_EXECUTION})

AGENT_DEPENDENCIES: Mapping[AgentType, frozenset[AgentType]] = MappingProxyType({
    A.GUARDRAILS: frozenset(),
    A.INTENT_VALIDATION: frozenset(),
    A.QUERY_OPTIMIZATION: frozenset({A.GUARDRAILS, A.INTENT_VALIDATION}),
    A.SOURCE_FILTER: frozenset({A.GUARDRAILS, A.INTENT_VALIDATION, A.QUERY_OPTIMIZATION}),
    A.STRUCTURED_EXECUTION: frozenset({A.SOURCE_FILTER, A.QUERY_OPTIMIZATION}),
    A.DOCUMENT_EXECUTION: frozenset({A.SOURCE_FILTER, A.QUERY_OPTIMIZATION}),
    A.EXTERNAL_EXECUTION: frozenset({A.SOURCE_FILTER, A.QUERY_OPTIMIZATION}),
    A.CROSS_VALIDATION: _EXECUTION,
    A.SYNTHESIS: _EXECUTION | {A.CROSS_VALIDATION},
    A.HALLUCINATION_CHECK: frozenset({A.SYNTHESIS}),
    A.VISUALIZATION: frozenset({A.SYNTHESIS}),
})


class PlanTopologyError(ValueError):
    pass


def effective_dependencies(agent: AgentType, scheduled: frozenset[AgentType]) -> frozenset[AgentType]:
    """Scheduled agents *agent* must run after, looking through unscheduled ones."""
    resolved: set[AgentType] = set()
    pending = list(AGENT_DEPENDENCIES[agent])
    seen: set[AgentType] = set()
    while pending:
        dependency = pending.pop()
        if dependency in seen:
            continue
        seen.add(dependency)
        if dependency in scheduled:
            resolved.add(dependency)
        else:
            pending.extend(AGENT_DEPENDENCIES[dependency])
    return frozenset(resolved)


def layer_stages(agents: Iterable[AgentType]) -> tuple[Stage, ...]:
    """
    Group *agents* into the fewest stages consistent with the graph.

    Kahn's algorithm, one layer at a time: every agent whose effective
    dependencies are all in earlier layers joins the current layer.
    """
    scheduled = frozenset(agents)
    remaining = {agent: set(effective_dependencies(agent, scheduled)) for agent in scheduled}
    stages: list[Stage] = []
    while remaining:
        ready = frozenset(agent for agent, deps in remaining.items() if not deps)
        if not ready:
            raise PlanTopologyError(
                f"Dependency cycle among {sorted(a.value for a in remaining)}"
            )
        stages.append(Stage(agents=ready))
        for agent in ready:
            del remaining[agent]
        for deps in remaining.values():
            deps -= ready
    return tuple(stages)


def validate_topology(plan: ExecutionPlan) -> None:
    """Raise ``PlanTopologyError`` if *plan* cannot be executed in stage order."""
    scheduled = plan.scheduled
    placed: set[AgentType] = set()

    overlap = scheduled & plan.skipped
    if overlap:
        raise PlanTopologyError(
            f"Agents both scheduled and skipped: {sorted(a.value for a in overlap)}"
        )

    for index, stage in enumerate(plan.stages):
        if not stage.agents:
            raise PlanTopologyError(f"Stage {index} is empty")
        duplicated = stage.agents & placed
        if duplicated:
            raise PlanTopologyError(
                f"Stage {index} repeats {sorted(a.value for a in duplicated)}"
            )
        for agent in stage.agents:
            missing = effective_dependencies(agent, scheduled) - placed
            if missing:
                raise PlanTopologyError(
                    f"{agent.value} in stage {index} runs before "
                    f"{sorted(a.value for a in missing)}"
                )
        placed |= stage.agents
