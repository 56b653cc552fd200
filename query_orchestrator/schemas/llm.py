"""Shapes the LLM is asked to return. Validated by ``LLMService.call_json``."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from query_orchestrator.schemas.payloads import CheckStatus, IntentType, RiskLevel, ValidationStatus


class RequirementFlags(BaseModel):
    needs_structured: bool = False
    needs_documents: bool = False
    needs_external: bool = False
    needs_visualization: bool = False


class ClassificationOutput(BaseModel):
    complexity: Literal["simple", "medium", "complex"]
    query_type: Literal["factual", "analytical", "comparative", "predictive", "conversational"]
    data_requirements: RequirementFlags = Field(default_factory=RequirementFlags)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class GuardrailsOutput(BaseModel):
    allowed: bool
    risk_level: RiskLevel = "low"
    reason: str = ""
    categories: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class IntentOutput(BaseModel):
    is_valid: bool
    query_type: IntentType
    reason: str = ""
    suggested_response: str | None = None
    entities: list[str] = Field(default_factory=list)
    time_references: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class RewriteOutput(BaseModel):
    optimized_query: str = Field(min_length=1)
    rationale: str = ""


class StatementOutput(BaseModel):
    statement: str = Field(min_length=1)
    explanation: str = ""


class ExtractionOutput(BaseModel):
    found: bool
    records: list[dict[str, Any]] = Field(default_factory=list)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class SourceValidationOutput(BaseModel):
    source_id: str
    status: ValidationStatus
    confidence: float = Field(ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    supporting_sources: list[str] = Field(default_factory=list)


class CrossValidationOutput(BaseModel):
    validations: list[SourceValidationOutput] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class CheckOutput(BaseModel):
    status: CheckStatus
    confidence: float = Field(ge=0.0, le=1.0)
    details: str = ""
    evidence: list[str] = Field(default_factory=list)


class SynthesisOutput(BaseModel):
    answer: str = Field(min_length=1)
    sources_used: list[str] = Field(default_factory=list)
    follow_up_suggestions: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class ChartOutput(BaseModel):
    chart_type: Literal["bar", "line", "pie", "table", "none"]
    x_field: str | None = None
    y_fields: list[str] = Field(default_factory=list)
    title: str = ""
