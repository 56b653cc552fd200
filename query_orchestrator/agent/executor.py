"""
PipelineExecutor — walks an ``ExecutionPlan`` stage by stage.

Every agent in a stage is launched as its own task against the same
read-only snapshot of earlier results; the stage joins under a timeout
chosen by the plan's timeout policy, and only then are the new results
merged for the next stage.  The first stage is a gate: a guardrails or
intent rejection ends the run whatever the policy says.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from types import MappingProxyType
from typing import Any

from query_orchestrator.agent.agents.base import AgentInput, BaseAgent
from query_orchestrator.agent.state import (
    AgentType,
    ExecutionPlan,
    PipelineOutcome,
    PipelineState,
    QueryContext,
    SourceDescriptor,
    Stage,
    StageTrace,
    TimeoutPolicy,
)
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.payloads import AgentResult, GuardrailsPayload, IntentPayload

logger = logging.getLogger(__name__)

Observer = Callable[[str, dict[str, Any]], Awaitable[None]]

# Event type literals shared with the streaming endpoint
EVT_STAGE_START = "stage_start"
EVT_STAGE_RESULT = "stage_result"


class PipelineConfigurationError(RuntimeError):
    """The plan names an agent that has no registered implementation."""


class PipelineExecutor:
    """
    Runs plans against a fixed registry of agents.

    Parameters
    ----------
    agents : Mapping[AgentType, BaseAgent]
        One implementation per agent type the plans may schedule.
    stage_timeout : float | None
        Seconds a stage may take under ``fail_fast`` / ``partial_results``.
    deadline_seconds : float | None
        Overall time allowed for one request; no stage starts after it passes.
    """

    def __init__(
        self,
        agents: Mapping[AgentType, BaseAgent],
        stage_timeout: float | None = None,
        deadline_seconds: float | None = None,
    ) -> None:
        self._agents = dict(agents)
        self._stage_timeout = stage_timeout or settings.stage_timeout_seconds
        self._deadline_seconds = deadline_seconds or settings.request_deadline_seconds

    @property
    def agents(self) -> Mapping[AgentType, BaseAgent]:
        return MappingProxyType(self._agents)

    @property
    def stage_timeout(self) -> float:
        return self._stage_timeout

    @property
    def deadline_seconds(self) -> float:
        return self._deadline_seconds

    async def run(
        self,
        plan: ExecutionPlan,
        context: QueryContext,
        sources: Sequence[SourceDescriptor],
        observer: Observer | None = None,
        deadline: float | None = None,
    ) -> PipelineOutcome:
        """
        Execute *plan* and return every result collected.

        Parameters
        ----------
        plan : ExecutionPlan
            Topologically valid plan.
        context : QueryContext
            Request input, shared read-only by all agents.
        sources : Sequence[SourceDescriptor]
            Sources available to this request.
        observer : Observer | None
            Awaited with ``(event_type, data)`` before and after each stage.
        deadline : float | None
            Absolute ``time.monotonic()`` value the run must finish by. Defaults
            to ``deadline_seconds`` from now; callers that spent part of the
            request budget before execution pass their own.

        Returns
        -------
        PipelineOutcome
            Final state, the merged results, and one trace per stage run.
            Never raises for agent faults or timeouts.
        """
        missing = plan.scheduled - set(self._agents)
        if missing:
            raise PipelineConfigurationError(
                f"No implementation registered for {sorted(agent.value for agent in missing)}"
            )

        started = time.monotonic()
        if deadline is None:
            deadline = started + self._deadline_seconds
        policy = plan.strategy.timeout_policy
        outcome = PipelineOutcome(state=PipelineState.RUNNING)
        frozen_sources = tuple(sources)

        logger.info(
            "Executor: starting | stages=%d | policy=%s | deadline=%.0fs",
            len(plan.stages),
            policy.value,
            max(deadline - time.monotonic(), 0.0),
        )

        for index, stage in enumerate(plan.stages):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                outcome.state = PipelineState.DEADLINE_EXCEEDED
                outcome.reason = f"Request deadline reached before stage {index}"
                break

            if observer is not None:
                await observer(EVT_STAGE_START, {"index": index, "agents": [a.value for a in stage]})

            inp = AgentInput(
                context=context,
                plan=plan,
                sources=frozen_sources,
                prior=MappingProxyType(dict(outcome.results)),
            )
            timeout = remaining if policy is TimeoutPolicy.WAIT_ALL else min(self._stage_timeout, remaining)
            stage_results, trace = await self._run_stage(index, stage, inp, timeout)

            # Join point: the only place results are merged
            outcome.results.update(stage_results)
            outcome.traces.append(trace)

            if observer is not None:
                await observer(EVT_STAGE_RESULT, {
                    "index": index,
                    "elapsed_ms": round(trace.elapsed_ms, 2),
                    "timed_out": trace.timed_out,
                    "degraded": [a.value for a in trace.degraded],
                    "agents": [stage_results[a].summary() for a in stage],
                })

            gate = self._gate(stage, outcome.results)
            if gate is not None:
                outcome.state, outcome.reason = gate
                break

            if trace.timed_out and time.monotonic() >= deadline:
                outcome.state = PipelineState.DEADLINE_EXCEEDED
                outcome.reason = f"Request deadline reached during stage {index}"
                break
            if policy is TimeoutPolicy.FAIL_FAST:
                if trace.timed_out:
                    outcome.state = PipelineState.ABORTED
                    outcome.reason = f"Stage {index} timed out"
                    break
                if not any(result.success for result in stage_results.values()):
                    outcome.state = PipelineState.ABORTED
                    outcome.reason = f"Every agent in stage {index} failed"
                    break
        else:
            outcome.state = PipelineState.COMPLETE

        outcome.elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Executor: %s | stages_run=%d/%d | %.0fms%s",
            outcome.state.value,
            len(outcome.traces),
            len(plan.stages),
            outcome.elapsed_ms,
            f" | {outcome.reason}" if outcome.reason else "",
        )
        return outcome

    # ──────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────

    async def _run_stage(
        self,
        index: int,
        stage: Stage,
        inp: AgentInput,
        timeout: float,
    ) -> tuple[dict[AgentType, AgentResult], StageTrace]:
        started = time.perf_counter()
        tasks = {
            asyncio.create_task(self._agents[agent].execute(inp), name=f"stage{index}:{agent.value}"): agent
            for agent in stage
        }
        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        finally:
            # Also reached when the request itself is cancelled
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        elapsed = (time.perf_counter() - started) * 1000

        results: dict[AgentType, AgentResult] = {}
        degraded: list[AgentType] = []
        for task, agent in tasks.items():
            implementation = self._agents[agent]
            if task in pending:
                logger.warning("Executor: %s timed out in stage %d after %.0fms", agent.value, index, elapsed)
                results[agent] = implementation.timeout_result(inp, elapsed)
                degraded.append(agent)
            elif task.cancelled() or task.exception() is not None:
                # execute() is not supposed to raise; keep the stage valid anyway
                error = "cancelled" if task.cancelled() else repr(task.exception())
                logger.error("Executor: %s raised past its boundary: %s", agent.value, error)
                results[agent] = implementation.failure_result(inp, error, elapsed, degraded=True)
                degraded.append(agent)
            else:
                results[agent] = task.result()

        trace = StageTrace(
            index=index,
            agents=list(stage),
            elapsed_ms=elapsed,
            timed_out=bool(pending),
            degraded=degraded,
        )
        logger.info(
            "Executor: stage %d done | agents=%s | %.0fms | timed_out=%s",
            index,
            [agent.value for agent in stage],
            elapsed,
            trace.timed_out,
        )
        return results, trace

    @staticmethod
    def _gate(
        stage: Stage,
        results: Mapping[AgentType, AgentResult],
    ) -> tuple[PipelineState, str] | None:
        """Rejection or short-circuit decided by the guardrails/intent stage."""
        if AgentType.GUARDRAILS in stage.agents:
            guard = results[AgentType.GUARDRAILS].payload
            if isinstance(guard, GuardrailsPayload) and not guard.allowed:
                return PipelineState.REJECTED, guard.reason or "Blocked by content safety rules"
        if AgentType.INTENT_VALIDATION in stage.agents:
            intent = results[AgentType.INTENT_VALIDATION].payload
            if isinstance(intent, IntentPayload):
                if not intent.is_valid:
                    return PipelineState.REJECTED, intent.reason or f"Query is {intent.query_type}"
                if not intent.requires_data:
                    return PipelineState.SHORT_CIRCUITED, f"Conversational turn ({intent.query_type})"
        return None
