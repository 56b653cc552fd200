"""
Orchestration state dataclasses.

These are plain Python dataclasses (no ORM, no Pydantic) passed between the
planner, executor and aggregator.  Everything a stage reads is frozen: a
stage receives an immutable snapshot and hands back new result objects,
which the executor merges after the join point.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from query_orchestrator.schemas.payloads import AgentResult


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────
# Query context
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class ConversationMessage:
    role: str
    text: str
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class QueryContext:
    """Immutable per-request input. Created once, read-only thereafter."""

    query: str
    workspace_id: str
    user_id: str | None = None
    history: tuple[ConversationMessage, ...] = ()
    selected_source_ids: frozenset[str] | None = None

    @classmethod
    def create(
        cls,
        query: str,
        workspace_id: str,
        user_id: str | None = None,
        history: Iterable[ConversationMessage] = (),
        selected_source_ids: Iterable[str] | None = None,
        max_history: int = 12,
    ) -> QueryContext:
        bounded = tuple(history)[-max_history:] if max_history > 0 else ()
        selection = frozenset(selected_source_ids) if selected_source_ids is not None else None
        return cls(
            query=" ".join(query.split()),
            workspace_id=workspace_id,
            user_id=user_id,
            history=bounded,
            selected_source_ids=selection,
        )

    @property
    def user_scope(self) -> str:
        return f"{self.workspace_id}:{self.user_id or 'anonymous'}"


# ──────────────────────────────────────────────
# Sources
# ──────────────────────────────────────────────

class SourceKind(str, Enum):
    STRUCTURED = "structured_store"
    DOCUMENT = "document"
    EXTERNAL = "external_connector"


@dataclass(frozen=True)
class SourceDescriptor:
    """A data source as reported by discovery. Carries no per-query state."""

    id: str
    name: str
    kind: SourceKind
    summary: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)


# ──────────────────────────────────────────────
# Query analysis
# ──────────────────────────────────────────────

class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class QueryType(str, Enum):
    FACTUAL = "factual"
    ANALYTICAL = "analytical"
    COMPARATIVE = "comparative"
    PREDICTIVE = "predictive"
    CONVERSATIONAL = "conversational"


@dataclass(frozen=True)
class DataRequirements:
    needs_structured: bool = False
    needs_documents: bool = False
    needs_external: bool = False
    needs_visualization: bool = False

    def needs(self, kind: SourceKind) -> bool:
        return {
            SourceKind.STRUCTURED: self.needs_structured,
            SourceKind.DOCUMENT: self.needs_documents,
            SourceKind.EXTERNAL: self.needs_external,
        }[kind]


@dataclass(frozen=True)
class QueryAnalysis:
    complexity: Complexity
    query_type: QueryType
    requirements: DataRequirements
    confidence: float
    tier: str = "heuristic"  # heuristic | llm | default
    resource_units: int = 0


# ──────────────────────────────────────────────
# Execution plan
# ──────────────────────────────────────────────

class ExecutionOrder(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    HYBRID = "hybrid"


class TimeoutPolicy(str, Enum):
    FAIL_FAST = "fail_fast"
    WAIT_ALL = "wait_all"
    PARTIAL_RESULTS = "partial_results"


class ValidationLevel(str, Enum):
    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"


class AgentType(str, Enum):
    GUARDRAILS = "guardrails"
    INTENT_VALIDATION = "intent_validation"
    QUERY_OPTIMIZATION = "query_optimization"
    SOURCE_FILTER = "source_filter"
    STRUCTURED_EXECUTION = "structured_execution"
    DOCUMENT_EXECUTION = "document_execution"
    EXTERNAL_EXECUTION = "external_execution"
    CROSS_VALIDATION = "cross_validation"
    SYNTHESIS = "synthesis"
    HALLUCINATION_CHECK = "hallucination_check"
    VISUALIZATION = "visualization"


EXECUTION_AGENTS: Mapping[SourceKind, AgentType] = MappingProxyType({
    SourceKind.STRUCTURED: AgentType.STRUCTURED_EXECUTION,
    SourceKind.DOCUMENT: AgentType.DOCUMENT_EXECUTION,
    SourceKind.EXTERNAL: AgentType.EXTERNAL_EXECUTION,
})


@dataclass(frozen=True)
class DataSourceStrategy:
    primary_source_ids: tuple[str, ...]
    fallback_source_ids: tuple[str, ...]
    weights: Mapping[SourceKind, float]
    execution_order: ExecutionOrder
    timeout_policy: TimeoutPolicy


@dataclass(frozen=True)
class Stage:
    agents: frozenset[AgentType]

    def __iter__(self):
        # Stable iteration order for logging and task naming only
        return iter(sorted(self.agents, key=lambda agent: agent.value))


@dataclass(frozen=True)
class ExecutionPlan:
    stages: tuple[Stage, ...]
    skipped: frozenset[AgentType]
    strategy: DataSourceStrategy
    validation_level: ValidationLevel
    estimated_duration_ms: int
    confidence: float
    analysis: QueryAnalysis
    reasoning: str = ""
    is_fallback: bool = False

    @property
    def scheduled(self) -> frozenset[AgentType]:
        return frozenset(agent for stage in self.stages for agent in stage.agents)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [[agent.value for agent in stage] for stage in self.stages],
            "skipped": sorted(agent.value for agent in self.skipped),
            "primary_sources": list(self.strategy.primary_source_ids),
            "fallback_sources": list(self.strategy.fallback_source_ids),
            "execution_order": self.strategy.execution_order.value,
            "timeout_policy": self.strategy.timeout_policy.value,
            "validation_level": self.validation_level.value,
            "estimated_duration_ms": self.estimated_duration_ms,
            "confidence": self.confidence,
            "complexity": self.analysis.complexity.value,
            "query_type": self.analysis.query_type.value,
            "reasoning": self.reasoning,
            "is_fallback": self.is_fallback,
        }


# ──────────────────────────────────────────────
# Pipeline execution
# ──────────────────────────────────────────────

class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ABORTED = "aborted"
    REJECTED = "rejected"
    SHORT_CIRCUITED = "short_circuited"  # conversational turn answered at stage 0
    DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass
class StageTrace:
    index: int
    agents: list[AgentType]
    elapsed_ms: float
    timed_out: bool = False
    degraded: list[AgentType] = field(default_factory=list)


@dataclass
class PipelineOutcome:
    state: PipelineState
    results: dict[AgentType, AgentResult] = field(default_factory=dict)
    traces: list[StageTrace] = field(default_factory=list)
    elapsed_ms: float = 0.0
    reason: str | None = None

    @property
    def resource_units(self) -> int:
        return sum(result.resource_units for result in self.results.values())


# ──────────────────────────────────────────────
# Final answer
# ──────────────────────────────────────────────

class AnswerStatus(str, Enum):
    ANSWERED = "answered"
    DEGRADED = "degraded"        # delivered with a low-confidence notice
    PARTIAL = "partial"          # deadline/abort cut the pipeline short
    REFUSED = "refused"          # no usable source data
    REJECTED = "rejected"        # guardrails / intent validation
    CONVERSATIONAL = "conversational"


@dataclass
class FinalAnswer:
    status: AnswerStatus
    answer: str
    confidence: float
    sources_cited: list[str] = field(default_factory=list)
    follow_up_suggestions: list[str] = field(default_factory=list)
    notice: str | None = None
    raw_answer: str | None = None
    risk_level: str | None = None
    validation_level: ValidationLevel | None = None
    resource_units: int = 0
    elapsed_ms: float = 0.0
    agents: list[dict[str, Any]] = field(default_factory=list)
    plan: dict[str, Any] | None = None
    visualization: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "answer": self.answer,
            "confidence": round(self.confidence, 4),
            "sources_cited": self.sources_cited,
            "follow_up_suggestions": self.follow_up_suggestions,
            "notice": self.notice,
            "risk_level": self.risk_level,
            "validation_level": self.validation_level.value if self.validation_level else None,
            "resource_units": self.resource_units,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "agents": self.agents,
            "plan": self.plan,
            "visualization": self.visualization,
        }
