import asyncio

import pytest

from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.executor import (
    EVT_STAGE_RESULT,
    EVT_STAGE_START,
    PipelineConfigurationError,
    PipelineExecutor,
)
from query_orchestrator.agent.planner import DEFAULT_ANALYSIS
from query_orchestrator.agent.state import (
    AgentType,
    DataSourceStrategy,
    ExecutionOrder,
    ExecutionPlan,
    PipelineState,
    QueryContext,
    SourceKind,
    Stage,
    TimeoutPolicy,
    ValidationLevel,
)
from query_orchestrator.schemas.payloads import GuardrailsPayload, IntentPayload, SourceExecutionPayload

A = AgentType


class ScriptedAgent(BaseAgent):
    def __init__(self, agent_type: AgentType, payload=None, delay: float = 0.0, fail: bool = False) -> None:
        super().__init__()
        self.agent_type = agent_type
        self.payload = payload or SourceExecutionPayload(source_kind=SourceKind.STRUCTURED)
        self.delay = delay
        self.fail = fail
        self.seen: list[set[AgentType]] = []
        self.cancelled = False

    async def run(self, inp: AgentInput) -> AgentOutcome:
        self.seen.append(set(inp.prior))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")
        return AgentOutcome(payload=self.payload, confidence=0.8, resource_units=5)

    def fallback_payload(self, inp: AgentInput, reason: str):
        return self.payload


class LeakyAgent(ScriptedAgent):
    """Breaks the execute() contract by raising."""

    async def execute(self, inp: AgentInput):
        raise RuntimeError("leaked")


def _gate_agents(allowed: bool = True, intent: str = "data_query") -> dict[AgentType, BaseAgent]:
    return {
        A.GUARDRAILS: ScriptedAgent(A.GUARDRAILS, GuardrailsPayload(allowed=allowed, reason="blocked")),
        A.INTENT_VALIDATION: ScriptedAgent(
            A.INTENT_VALIDATION,
            IntentPayload(is_valid=True, query_type=intent),
        ),
    }


def _plan(*stages, policy: TimeoutPolicy = TimeoutPolicy.PARTIAL_RESULTS) -> ExecutionPlan:
    return ExecutionPlan(
        stages=tuple(Stage(agents=frozenset(stage)) for stage in stages),
        skipped=frozenset(),
        strategy=DataSourceStrategy(
            primary_source_ids=(),
            fallback_source_ids=(),
            weights={},
            execution_order=ExecutionOrder.PARALLEL,
            timeout_policy=policy,
        ),
        validation_level=ValidationLevel.LIGHT,
        estimated_duration_ms=0,
        confidence=0.5,
        analysis=DEFAULT_ANALYSIS,
    )


GATE = (A.GUARDRAILS, A.INTENT_VALIDATION)
CONTEXT = QueryContext.create(query="revenue by region", workspace_id="ws")


def _run(agents, plan, **kwargs):
    executor = PipelineExecutor(agents, **kwargs)
    return asyncio.run(executor.run(plan, CONTEXT, []))


def test_agents_in_a_stage_see_only_earlier_stages():
    def run_with(document_fails: bool):
        agents = {
            **_gate_agents(),
            A.STRUCTURED_EXECUTION: ScriptedAgent(A.STRUCTURED_EXECUTION),
            A.DOCUMENT_EXECUTION: ScriptedAgent(A.DOCUMENT_EXECUTION, fail=document_fails),
            A.SYNTHESIS: ScriptedAgent(A.SYNTHESIS),
        }
        plan = _plan(GATE, (A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION), (A.SYNTHESIS,))
        return _run(agents, plan), agents

    control, control_agents = run_with(document_fails=False)
    perturbed, perturbed_agents = run_with(document_fails=True)

    assert control_agents[A.STRUCTURED_EXECUTION].seen == [{A.GUARDRAILS, A.INTENT_VALIDATION}]
    assert perturbed_agents[A.STRUCTURED_EXECUTION].seen == [{A.GUARDRAILS, A.INTENT_VALIDATION}]
    assert perturbed_agents[A.SYNTHESIS].seen == [
        {A.GUARDRAILS, A.INTENT_VALIDATION, A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION}
    ]

    structured_control = control.results[A.STRUCTURED_EXECUTION]
    structured_perturbed = perturbed.results[A.STRUCTURED_EXECUTION]
    assert structured_perturbed.payload == structured_control.payload
    assert structured_perturbed.success and structured_perturbed.confidence == structured_control.confidence

    assert perturbed.results[A.DOCUMENT_EXECUTION].success is False
    assert perturbed.results[A.DOCUMENT_EXECUTION].confidence <= 0.3
    assert perturbed.state is PipelineState.COMPLETE


def test_fail_fast_aborts_on_stage_timeout_and_cancels_stragglers():
    slow = ScriptedAgent(A.DOCUMENT_EXECUTION, delay=5)
    synthesis = ScriptedAgent(A.SYNTHESIS)
    agents = {
        **_gate_agents(),
        A.STRUCTURED_EXECUTION: ScriptedAgent(A.STRUCTURED_EXECUTION),
        A.DOCUMENT_EXECUTION: slow,
        A.SYNTHESIS: synthesis,
    }
    plan = _plan(
        GATE,
        (A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION),
        (A.SYNTHESIS,),
        policy=TimeoutPolicy.FAIL_FAST,
    )

    outcome = _run(agents, plan, stage_timeout=0.05)

    assert outcome.state is PipelineState.ABORTED
    assert slow.cancelled is True
    assert synthesis.seen == []
    timed_out = outcome.results[A.DOCUMENT_EXECUTION]
    assert timed_out.degraded is True
    assert timed_out.error == "timed out"
    assert outcome.results[A.STRUCTURED_EXECUTION].success is True
    assert outcome.traces[-1].timed_out is True
    assert outcome.traces[-1].degraded == [A.DOCUMENT_EXECUTION]


def test_partial_results_continues_with_degraded_result():
    agents = {
        **_gate_agents(),
        A.DOCUMENT_EXECUTION: ScriptedAgent(A.DOCUMENT_EXECUTION, delay=5),
        A.SYNTHESIS: ScriptedAgent(A.SYNTHESIS),
    }
    plan = _plan(GATE, (A.DOCUMENT_EXECUTION,), (A.SYNTHESIS,))

    outcome = _run(agents, plan, stage_timeout=0.05)

    assert outcome.state is PipelineState.COMPLETE
    assert outcome.results[A.DOCUMENT_EXECUTION].degraded is True
    assert outcome.results[A.SYNTHESIS].success is True


def test_wait_all_ignores_the_stage_timeout():
    slow = ScriptedAgent(A.DOCUMENT_EXECUTION, delay=0.2)
    agents = {**_gate_agents(), A.DOCUMENT_EXECUTION: slow}
    plan = _plan(GATE, (A.DOCUMENT_EXECUTION,), policy=TimeoutPolicy.WAIT_ALL)

    outcome = _run(agents, plan, stage_timeout=0.05)

    assert outcome.state is PipelineState.COMPLETE
    assert outcome.results[A.DOCUMENT_EXECUTION].success is True
    assert slow.cancelled is False


def test_fail_fast_aborts_when_every_agent_in_a_stage_fails():
    agents = {
        **_gate_agents(),
        A.STRUCTURED_EXECUTION: ScriptedAgent(A.STRUCTURED_EXECUTION, fail=True),
        A.SYNTHESIS: ScriptedAgent(A.SYNTHESIS),
    }
    plan = _plan(GATE, (A.STRUCTURED_EXECUTION,), (A.SYNTHESIS,), policy=TimeoutPolicy.FAIL_FAST)

    outcome = _run(agents, plan)

    assert outcome.state is PipelineState.ABORTED
    assert A.SYNTHESIS not in outcome.results


def test_guardrails_rejection_stops_the_pipeline():
    synthesis = ScriptedAgent(A.SYNTHESIS)
    agents = {**_gate_agents(allowed=False), A.SYNTHESIS: synthesis}

    outcome = _run(agents, _plan(GATE, (A.SYNTHESIS,), policy=TimeoutPolicy.WAIT_ALL))

    assert outcome.state is PipelineState.REJECTED
    assert outcome.reason == "blocked"
    assert synthesis.seen == []


def test_greeting_short_circuits_after_the_gate():
    synthesis = ScriptedAgent(A.SYNTHESIS)
    agents = {**_gate_agents(intent="greeting"), A.SYNTHESIS: synthesis}

    outcome = _run(agents, _plan(GATE, (A.SYNTHESIS,)))

    assert outcome.state is PipelineState.SHORT_CIRCUITED
    assert synthesis.seen == []


def test_deadline_stops_the_run():
    later = ScriptedAgent(A.SYNTHESIS)
    agents = {
        **_gate_agents(),
        A.DOCUMENT_EXECUTION: ScriptedAgent(A.DOCUMENT_EXECUTION, delay=5),
        A.SYNTHESIS: later,
    }
    plan = _plan(GATE, (A.DOCUMENT_EXECUTION,), (A.SYNTHESIS,), policy=TimeoutPolicy.WAIT_ALL)

    outcome = _run(agents, plan, stage_timeout=5, deadline_seconds=0.1)

    assert outcome.state is PipelineState.DEADLINE_EXCEEDED
    assert outcome.results[A.DOCUMENT_EXECUTION].degraded is True
    assert later.seen == []


def test_agent_raising_past_execute_is_contained():
    agents = {
        **_gate_agents(),
        A.STRUCTURED_EXECUTION: LeakyAgent(A.STRUCTURED_EXECUTION),
        A.DOCUMENT_EXECUTION: ScriptedAgent(A.DOCUMENT_EXECUTION),
    }

    outcome = _run(agents, _plan(GATE, (A.STRUCTURED_EXECUTION, A.DOCUMENT_EXECUTION)))

    leaked = outcome.results[A.STRUCTURED_EXECUTION]
    assert leaked.success is False
    assert leaked.degraded is True
    assert "leaked" in leaked.error
    assert outcome.results[A.DOCUMENT_EXECUTION].success is True


def test_observer_sees_each_stage_start_and_result():
    events: list[tuple[str, dict]] = []

    async def observer(event_type, data):
        events.append((event_type, data))

    agents = {**_gate_agents(), A.SYNTHESIS: ScriptedAgent(A.SYNTHESIS)}
    executor = PipelineExecutor(agents)
    asyncio.run(executor.run(_plan(GATE, (A.SYNTHESIS,)), CONTEXT, [], observer))

    assert [event_type for event_type, _ in events] == [
        EVT_STAGE_START,
        EVT_STAGE_RESULT,
        EVT_STAGE_START,
        EVT_STAGE_RESULT,
    ]
    assert events[-1][1]["agents"][0]["agent"] == "synthesis"


def test_missing_agent_is_a_configuration_error():
    with pytest.raises(PipelineConfigurationError):
        _run(_gate_agents(), _plan(GATE, (A.SYNTHESIS,)))


def test_resource_units_are_summed_over_results():
    agents = {**_gate_agents(), A.SYNTHESIS: ScriptedAgent(A.SYNTHESIS)}

    outcome = _run(agents, _plan(GATE, (A.SYNTHESIS,)))

    assert outcome.resource_units == 15
