"""
Result aggregation and validation scoring.

The scoring rules are plain functions so the validation agents and the
final aggregation share one definition of each rule, and so each rule can
be tested without running a pipeline.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping

from query_orchestrator.agent.state import (
    AgentType,
    AnswerStatus,
    ExecutionPlan,
    FinalAnswer,
    PipelineOutcome,
    PipelineState,
    QueryContext,
    ValidationLevel,
)
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.payloads import (
    AgentResult,
    CrossValidationPayload,
    GuardrailsPayload,
    HallucinationCheck,
    HallucinationPayload,
    IntentPayload,
    SourceExecutionPayload,
    SourceResult,
    SourceValidation,
    SynthesisPayload,
    VisualizationPayload,
)

logger = logging.getLogger(__name__)

STATUS_FACTORS = {
    "validated": 1.0,
    "unverified": 1.0,
    "inconsistent": 0.7,
    "contradicted": 0.4,
}

# Checks whose confidence makes up the overall hallucination confidence
_CORE_CHECKS = ("factual_accuracy", "logical_consistency", "source_attribution")

REFUSAL_MESSAGE = (
    "I couldn't find data in the selected sources to answer this question, "
    "so I won't guess. Try selecting different sources or rephrasing the question."
)
LOW_CONFIDENCE_NOTICE = (
    "This answer could not be verified with enough confidence to be shown as-is. "
    "Review the cited sources before relying on it."
)


def _mean(values: Iterable[float]) -> float:
    items = list(values)
    return sum(items) / len(items) if items else 0.0


def collect_source_results(results: Mapping[AgentType, AgentResult]) -> list[SourceResult]:
    collected: list[SourceResult] = []
    for result in results.values():
        if isinstance(result.payload, SourceExecutionPayload):
            collected.extend(result.payload.results)
    return collected


def preview(result: SourceResult, rows: int = 5) -> str:
    sample = json.dumps(result.records[:rows], default=str, ensure_ascii=False)
    return f"{result.source_name} [{result.source_id}] ({result.row_count} rows): {sample}"


def summarize_records(results: Iterable[SourceResult], rows: int = 5) -> str:
    """Plain-text answer built only from retrieved records."""
    lines = ["Here is what the sources returned:"]
    for result in results:
        lines.append(f"\n{result.source_name} ({result.row_count} rows)")
        for record in result.records[:rows]:
            lines.append("- " + ", ".join(f"{key}: {value}" for key, value in record.items()))
    return "\n".join(lines)


# ──────────────────────────────────────────────
# Cross-source consistency
# ──────────────────────────────────────────────

def reliability_bucket(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.5:
        return "medium"
    return "low"


def score_cross_validation(validations: Iterable[SourceValidation]) -> tuple[float, str]:
    """Mean per-source confidence, scaled down for inconsistent/contradicted sources."""
    scaled = [v.confidence * STATUS_FACTORS[v.status] for v in validations]
    overall = round(min(_mean(scaled), 1.0), 4)
    return overall, reliability_bucket(overall)


# ──────────────────────────────────────────────
# Hallucination risk
# ──────────────────────────────────────────────

def hallucination_risk(checks: list[HallucinationCheck]) -> str:
    failed = sum(1 for check in checks if check.status == "failed")
    warnings = sum(1 for check in checks if check.status == "warning")
    if failed >= 3:
        return "critical"
    if failed == 2:
        return "high"
    if failed == 1:
        return "medium"
    return "medium" if warnings >= 3 else "low"


def assess_hallucination(
    checks: list[HallucinationCheck],
    confidence_floor: float | None = None,
) -> HallucinationPayload:
    floor = confidence_floor if confidence_floor is not None else settings.answer_confidence_floor
    risk = hallucination_risk(checks)
    detected = any(
        check.status == "failed" or (check.status == "warning" and check.confidence < 0.4)
        for check in checks
    )
    core = [check.confidence for check in checks if check.name in _CORE_CHECKS]
    overall = round(_mean(core or [check.confidence for check in checks]), 4)

    if risk == "critical" or overall < floor:
        safe = False
    elif risk == "high" and detected:
        safe = False
    else:
        safe = risk == "low" or (risk == "medium" and overall > 0.5)

    recommendations = [
        f"{check.name.replace('_', ' ')}: {check.details or check.status}"
        for check in checks
        if check.status != "passed"
    ]
    return HallucinationPayload(
        checks=checks,
        risk_level=risk,
        detected=detected,
        overall_confidence=overall,
        safe_to_proceed=safe,
        recommendations=recommendations,
    )


# ──────────────────────────────────────────────
# Final answer
# ──────────────────────────────────────────────

class ResultAggregator:
    """Turns a pipeline outcome into the answer returned to the caller."""

    def __init__(self, confidence_floor: float | None = None) -> None:
        self._floor = confidence_floor if confidence_floor is not None else settings.answer_confidence_floor

    def finalize(
        self,
        context: QueryContext,
        plan: ExecutionPlan,
        outcome: PipelineOutcome,
    ) -> FinalAnswer:
        results = outcome.results
        common = {
            "validation_level": plan.validation_level,
            "resource_units": outcome.resource_units,
            "elapsed_ms": outcome.elapsed_ms,
            "agents": [result.summary() for result in results.values()],
            "plan": plan.to_dict(),
        }

        if outcome.state is PipelineState.REJECTED:
            return self._rejection(results, outcome.reason, common)
        if outcome.state is PipelineState.SHORT_CIRCUITED:
            intent = self._payload(results, AgentType.INTENT_VALIDATION, IntentPayload)
            return FinalAnswer(
                status=AnswerStatus.CONVERSATIONAL,
                answer=(intent.suggested_response if intent else None) or "How can I help with your data?",
                confidence=results[AgentType.INTENT_VALIDATION].confidence
                if AgentType.INTENT_VALIDATION in results else 0.5,
                **common,
            )

        sources = collect_source_results(results)
        with_data = [result for result in sources if result.has_data]
        synthesis_result = results.get(AgentType.SYNTHESIS)
        synthesis = self._payload(results, AgentType.SYNTHESIS, SynthesisPayload)

        if not with_data or (synthesis is not None and synthesis.refused):
            failures = [f"{r.source_name}: {r.error}" for r in sources if not r.success and r.error]
            logger.info("Aggregator: refusing, no source returned data (%d failed)", len(failures))
            return FinalAnswer(
                status=AnswerStatus.REFUSED,
                answer=REFUSAL_MESSAGE,
                confidence=0.0,
                notice="; ".join(failures) or None,
                **common,
            )

        data_ids = [result.source_id for result in with_data]
        if synthesis is not None:
            answer = synthesis.answer
            cited = [source_id for source_id in synthesis.sources_used if source_id in data_ids] or data_ids
            follow_ups = synthesis.follow_up_suggestions
            synthesis_confidence = synthesis.confidence
        else:
            answer = summarize_records(with_data)
            cited = data_ids
            follow_ups = []
            synthesis_confidence = 0.3

        confidence = _mean([_mean(r.confidence for r in with_data), synthesis_confidence])
        risk_level: str | None = None
        safe = True

        if plan.validation_level in (ValidationLevel.MEDIUM, ValidationLevel.HEAVY):
            cross = self._payload(results, AgentType.CROSS_VALIDATION, CrossValidationPayload)
            if cross is not None and cross.validations:
                confidence = _mean([cross.overall_confidence, synthesis_confidence])
        if plan.validation_level is ValidationLevel.HEAVY:
            check = self._payload(results, AgentType.HALLUCINATION_CHECK, HallucinationPayload)
            if check is not None and check.checks:
                confidence = _mean([confidence, check.overall_confidence])
                risk_level = check.risk_level
                safe = check.safe_to_proceed

        # Partial data failure lowers confidence in proportion to lost sources
        failed = sum(1 for result in sources if not result.success)
        confidence *= 1 - 0.5 * (failed / len(sources))
        synthesis_degraded = synthesis_result is None or not synthesis_result.success
        if synthesis_degraded:
            confidence = min(confidence, 0.3)
        confidence = round(max(0.0, min(confidence, 1.0)), 4)

        visual = self._payload(results, AgentType.VISUALIZATION, VisualizationPayload)
        extras = {
            "sources_cited": cited,
            "follow_up_suggestions": follow_ups,
            "risk_level": risk_level,
            "visualization": visual.model_dump(exclude={"kind"}) if visual and visual.chart_type != "none" else None,
        }

        if not safe or confidence < self._floor:
            logger.info("Aggregator: answer below delivery threshold (confidence=%.2f, safe=%s)", confidence, safe)
            return FinalAnswer(
                status=AnswerStatus.DEGRADED,
                answer=LOW_CONFIDENCE_NOTICE,
                confidence=confidence,
                notice=LOW_CONFIDENCE_NOTICE,
                raw_answer=answer,
                **extras,
                **common,
            )

        if outcome.state in (PipelineState.ABORTED, PipelineState.DEADLINE_EXCEEDED):
            status = AnswerStatus.PARTIAL
            notice = f"Answer is based on partial results ({outcome.reason or outcome.state.value})."
        elif synthesis_degraded:
            status = AnswerStatus.DEGRADED
            notice = "The answer was assembled directly from source records without language-model synthesis."
        else:
            status = AnswerStatus.ANSWERED
            notice = None

        return FinalAnswer(
            status=status,
            answer=answer,
            confidence=confidence,
            notice=notice,
            **extras,
            **common,
        )

    @staticmethod
    def _payload(results, agent, payload_cls):
        result = results.get(agent)
        if result is None or not isinstance(result.payload, payload_cls):
            return None
        return result.payload

    def _rejection(self, results, reason: str | None, common: dict) -> FinalAnswer:
        guard = self._payload(results, AgentType.GUARDRAILS, GuardrailsPayload)
        intent = self._payload(results, AgentType.INTENT_VALIDATION, IntentPayload)
        if guard is not None and not guard.allowed:
            message = "I can't help with that request. " + (guard.reason or "It was blocked by content safety rules.")
            risk = guard.risk_level
        elif intent is not None:
            message = intent.suggested_response or (
                "I couldn't tell what data you're looking for. "
                "Could you rephrase the question with the metric and time range you need?"
            )
            risk = None
        else:
            message = "The request was rejected."
            risk = None
        return FinalAnswer(
            status=AnswerStatus.REJECTED,
            answer=message,
            confidence=1.0 if guard is not None and not guard.allowed else 0.0,
            notice=reason,
            risk_level=risk,
            **common,
        )
