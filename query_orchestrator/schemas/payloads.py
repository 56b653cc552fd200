"""
Typed agent results.

Every agent returns an ``AgentResult`` whose ``payload`` is one member of a
closed union discriminated by ``kind``.  Fallback payloads are ordinary
members of the union, so downstream stages never see ``None``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from query_orchestrator.agent.state import AgentType, SourceKind

RiskLevel = Literal["low", "medium", "high"]
HallucinationRisk = Literal["low", "medium", "high", "critical"]
ValidationStatus = Literal["validated", "inconsistent", "unverified", "contradicted"]
CheckStatus = Literal["passed", "failed", "warning"]
CheckName = Literal[
    "factual_accuracy",
    "logical_consistency",
    "source_attribution",
    "confidence_calibration",
    "contradiction_detection",
]
IntentType = Literal[
    "data_query",
    "greeting",
    "closing",
    "continuation",
    "clarification",
    "abusive",
    "irrelevant",
    "ambiguous",
]


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class GuardrailsPayload(_Payload):
    kind: Literal["guardrails"] = "guardrails"
    allowed: bool
    risk_level: RiskLevel = "low"
    reason: str = ""
    categories: list[str] = Field(default_factory=list)
    flagged: bool = False  # intensive access, allowed but noted
    tier: str = "heuristic"


class IntentPayload(_Payload):
    kind: Literal["intent_validation"] = "intent_validation"
    is_valid: bool
    query_type: IntentType = "data_query"
    reason: str = ""
    suggested_response: str | None = None
    entities: list[str] = Field(default_factory=list)
    time_references: list[str] = Field(default_factory=list)
    tier: str = "heuristic"

    @property
    def requires_data(self) -> bool:
        return self.query_type not in {"greeting", "closing"}


class QueryOptimizationPayload(_Payload):
    kind: Literal["query_optimization"] = "query_optimization"
    optimized_query: str
    rationale: str = ""
    changed: bool = False


class RankedSourceModel(_Payload):
    source_id: str
    source_kind: SourceKind
    relevance_score: float = Field(ge=0.0, le=1.0)


class SourceFilterPayload(_Payload):
    kind: Literal["source_filter"] = "source_filter"
    ranked: list[RankedSourceModel] = Field(default_factory=list)
    fell_back: bool = False

    def ids_for(self, kind: SourceKind) -> list[str]:
        return [item.source_id for item in self.ranked if item.source_kind == kind]


class SourceResult(_Payload):
    """Outcome of one source call; same contract fields as ``AgentResult``."""

    source_id: str
    source_name: str
    source_kind: SourceKind
    success: bool
    records: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    statement: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    risk_level: RiskLevel | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_ms: float = 0.0
    resource_units: int = 0

    @property
    def has_data(self) -> bool:
        return self.success and bool(self.records)


class SourceExecutionPayload(_Payload):
    kind: Literal["source_execution"] = "source_execution"
    source_kind: SourceKind
    results: list[SourceResult] = Field(default_factory=list)

    def with_data(self) -> list[SourceResult]:
        return [result for result in self.results if result.has_data]


class SourceValidation(_Payload):
    source_id: str
    status: ValidationStatus
    confidence: float = Field(ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    supporting_sources: list[str] = Field(default_factory=list)


class CrossValidationPayload(_Payload):
    kind: Literal["cross_validation"] = "cross_validation"
    validations: list[SourceValidation] = Field(default_factory=list)
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reliability: Literal["high", "medium", "low"] = "low"
    recommendations: list[str] = Field(default_factory=list)


class SynthesisPayload(_Payload):
    kind: Literal["synthesis"] = "synthesis"
    answer: str
    sources_used: list[str] = Field(default_factory=list)
    follow_up_suggestions: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    refused: bool = False


class HallucinationCheck(_Payload):
    name: CheckName
    status: CheckStatus
    confidence: float = Field(ge=0.0, le=1.0)
    details: str = ""
    evidence: list[str] = Field(default_factory=list)


class HallucinationPayload(_Payload):
    kind: Literal["hallucination_check"] = "hallucination_check"
    checks: list[HallucinationCheck] = Field(default_factory=list)
    risk_level: HallucinationRisk = "low"
    detected: bool = False
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    safe_to_proceed: bool = True
    recommendations: list[str] = Field(default_factory=list)


class VisualizationPayload(_Payload):
    kind: Literal["visualization"] = "visualization"
    chart_type: Literal["bar", "line", "pie", "table", "none"] = "none"
    source_id: str | None = None
    x_field: str | None = None
    y_fields: list[str] = Field(default_factory=list)
    title: str = ""
    rationale: str = ""


AgentPayload = Annotated[
    Union[
        GuardrailsPayload,
        IntentPayload,
        QueryOptimizationPayload,
        SourceFilterPayload,
        SourceExecutionPayload,
        CrossValidationPayload,
        SynthesisPayload,
        HallucinationPayload,
        VisualizationPayload,
    ],
    Field(discriminator="kind"),
]


class AgentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent: AgentType
    success: bool
    payload: AgentPayload
    processing_ms: float = 0.0
    resource_units: int = 0
    confidence: float = Field(ge=0.0, le=1.0)
    error: str | None = None
    degraded: bool = False
    cached: bool = False

    def summary(self) -> dict[str, Any]:
        return {
            "agent": self.agent.value,
            "success": self.success,
            "confidence": round(self.confidence, 4),
            "processing_ms": round(self.processing_ms, 2),
            "resource_units": self.resource_units,
            "degraded": self.degraded,
            "cached": self.cached,
            "error": self.error,
        }
