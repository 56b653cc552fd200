from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel

from query_orchestrator.agent.state import (
    AgentType,
    ExecutionPlan,
    QueryContext,
    SourceDescriptor,
)
from query_orchestrator.schemas.payloads import (
    AgentResult,
    QueryOptimizationPayload,
)
from query_orchestrator.services.cache_service import ResultCache, agent_key
from query_orchestrator.services.llm_service import CallOptions, ChatMessage, LLMService, LLMServiceError

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)

# Upper bound on the confidence of any result produced by a fallback path
FALLBACK_CONFIDENCE = 0.3


@dataclass(frozen=True)
class AgentInput:
    """Read-only snapshot handed to every agent in a stage."""

    context: QueryContext
    plan: ExecutionPlan
    sources: tuple[SourceDescriptor, ...]
    prior: Mapping[AgentType, AgentResult]

    def payload(self, agent: AgentType, payload_cls: type[P]) -> P | None:
        result = self.prior.get(agent)
        if result is None or not isinstance(result.payload, payload_cls):
            return None
        return result.payload

    @property
    def effective_query(self) -> str:
        optimized = self.payload(AgentType.QUERY_OPTIMIZATION, QueryOptimizationPayload)
        if optimized and optimized.optimized_query.strip():
            return optimized.optimized_query
        return self.context.query


@dataclass(frozen=True)
class AgentOutcome:
    payload: BaseModel
    confidence: float
    resource_units: int = 0
    success: bool = True
    error: str | None = None


class BaseAgent(ABC):
    """
    One orchestration step.

    Subclasses implement ``run`` and ``fallback_payload``; callers only ever
    use ``execute``, which always resolves to an ``AgentResult``.
    """

    agent_type: AgentType
    cacheable: bool = False
    # Set when the output depends on context.history; the history then joins the cache key
    reads_history: bool = False

    def __init__(
        self,
        llm: LLMService | None = None,
        cache: ResultCache | None = None,
        cache_ttl: float | None = None,
    ) -> None:
        self._llm = llm
        self._cache = cache
        self._cache_ttl = cache_ttl

    @property
    def name(self) -> str:
        return self.agent_type.value

    @abstractmethod
    async def run(self, inp: AgentInput) -> AgentOutcome:
        """Do the work. May raise; ``execute`` converts faults."""

    @abstractmethod
    def fallback_payload(self, inp: AgentInput, reason: str) -> BaseModel:
        """Structurally valid payload used when ``run`` fails or times out."""

    # ──────────────────────────────────────────
    # Contract entry point
    # ──────────────────────────────────────────

    async def execute(self, inp: AgentInput) -> AgentResult:
        if not (self.cacheable and self._cache is not None):
            return await self._execute_uncached(inp)

        produced: list[AgentResult] = []

        async def compute() -> AgentResult:
            result = await self._execute_uncached(inp)
            produced.append(result)
            return result

        key = agent_key(
            self.name,
            inp.effective_query,
            inp.sources,
            inp.context.user_scope,
            inp.context.history if self.reads_history else (),
        )
        result = await self._cache.get_or_compute(
            key,
            compute,
            ttl=self._cache_ttl,
            should_cache=lambda r: r.success,
        )
        if produced and result is produced[0]:
            return result
        logger.debug("%s: served from cache", self.name)
        return result.model_copy(update={"cached": True, "processing_ms": 0.0, "resource_units": 0})

    async def _execute_uncached(self, inp: AgentInput) -> AgentResult:
        started = time.perf_counter()
        try:
            outcome = await self.run(inp)
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning("%s: failed (%s), using fallback result", self.name, exc)
            return self.failure_result(inp, str(exc) or type(exc).__name__, elapsed)

        elapsed = (time.perf_counter() - started) * 1000
        return AgentResult(
            agent=self.agent_type,
            success=outcome.success,
            payload=outcome.payload,
            processing_ms=elapsed,
            resource_units=outcome.resource_units,
            confidence=max(0.0, min(outcome.confidence, 1.0)),
            error=outcome.error,
        )

    def failure_result(
        self,
        inp: AgentInput,
        reason: str,
        processing_ms: float = 0.0,
        degraded: bool = False,
    ) -> AgentResult:
        return AgentResult(
            agent=self.agent_type,
            success=False,
            payload=self.fallback_payload(inp, reason),
            processing_ms=processing_ms,
            confidence=FALLBACK_CONFIDENCE,
            error=reason,
            degraded=degraded,
        )

    def timeout_result(self, inp: AgentInput, processing_ms: float) -> AgentResult:
        return self.failure_result(inp, "timed out", processing_ms, degraded=True)

    # ──────────────────────────────────────────
    # LLM helper
    # ──────────────────────────────────────────

    async def _ask(
        self,
        prompt: str,
        model_cls: type[P],
        temperature: float = 0.1,
        max_output_tokens: int = 512,
    ) -> tuple[P, int]:
        if self._llm is None:
            raise LLMServiceError(f"{self.name}: no LLM service configured")
        parsed, response = await self._llm.call_json(
            [ChatMessage(role="user", content=prompt)],
            model_cls,
            CallOptions(
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                purpose=self.name,
            ),
        )
        return parsed, response.resource_units_used
