from dataclasses import replace

import pytest

from conftest import REVENUE_ROWS
from query_orchestrator.agent.aggregator import (
    LOW_CONFIDENCE_NOTICE,
    REFUSAL_MESSAGE,
    ResultAggregator,
    assess_hallucination,
    score_cross_validation,
)
from query_orchestrator.agent.planner import QueryPlanner
from query_orchestrator.agent.state import (
    AgentType,
    AnswerStatus,
    PipelineOutcome,
    PipelineState,
    QueryContext,
    SourceKind,
    ValidationLevel,
)
from query_orchestrator.schemas.payloads import (
    AgentResult,
    GuardrailsPayload,
    HallucinationCheck,
    IntentPayload,
    SourceExecutionPayload,
    SourceResult,
    SourceValidation,
    SynthesisPayload,
)
from query_orchestrator.services.cache_service import ResultCache

A = AgentType
CONTEXT = QueryContext.create(query="top regions by revenue", workspace_id="ws")
PLAN = QueryPlanner(classifier=None, cache=ResultCache()).fallback_plan([])


def _check(name: str, status: str, confidence: float) -> HallucinationCheck:
    return HallucinationCheck(name=name, status=status, confidence=confidence)


def _source(source_id: str, records=None, success: bool = True, error: str | None = None) -> SourceResult:
    records = records or []
    return SourceResult(
        source_id=source_id,
        source_name=source_id.title(),
        source_kind=SourceKind.STRUCTURED,
        success=success,
        records=records,
        row_count=len(records),
        error=error,
        confidence=0.9 if records else 0.0,
    )


def _results(*sources: SourceResult, synthesis: SynthesisPayload | None = None, synthesis_ok: bool = True):
    results = {
        A.STRUCTURED_EXECUTION: AgentResult(
            agent=A.STRUCTURED_EXECUTION,
            success=True,
            payload=SourceExecutionPayload(source_kind=SourceKind.STRUCTURED, results=list(sources)),
            confidence=0.9,
            resource_units=20,
        ),
    }
    if synthesis is not None:
        results[A.SYNTHESIS] = AgentResult(
            agent=A.SYNTHESIS,
            success=synthesis_ok,
            payload=synthesis,
            confidence=synthesis.confidence,
            resource_units=30,
        )
    return results


def _finalize(results, state: PipelineState = PipelineState.COMPLETE, plan=PLAN, reason=None):
    outcome = PipelineOutcome(state=state, results=results, reason=reason)
    return ResultAggregator(confidence_floor=0.3).finalize(CONTEXT, plan, outcome)


SYNTHESIS = SynthesisPayload(
    answer="EMEA led revenue.",
    sources_used=["warehouse", "ghost"],
    follow_up_suggestions=["Compare quarters"],
    confidence=0.85,
)


# ──────────────────────────────────────────────
# Scoring rules
# ──────────────────────────────────────────────

def test_three_failed_checks_are_critical_and_unsafe():
    payload = assess_hallucination([
        _check("factual_accuracy", "failed", 0.2),
        _check("logical_consistency", "failed", 0.3),
        _check("source_attribution", "failed", 0.2),
        _check("confidence_calibration", "passed", 0.9),
    ])

    assert payload.risk_level == "critical"
    assert payload.detected is True
    assert payload.safe_to_proceed is False
    assert len(payload.recommendations) == 3


def test_all_checks_passing_is_low_risk_and_safe():
    payload = assess_hallucination([
        _check("factual_accuracy", "passed", 0.9),
        _check("logical_consistency", "passed", 0.9),
        _check("source_attribution", "passed", 0.9),
    ])

    assert payload.risk_level == "low"
    assert payload.detected is False
    assert payload.safe_to_proceed is True
    assert payload.overall_confidence == 0.9


def test_single_failure_is_medium_risk_but_can_proceed():
    payload = assess_hallucination([
        _check("factual_accuracy", "failed", 0.2),
        _check("logical_consistency", "passed", 0.9),
        _check("source_attribution", "passed", 0.9),
    ])

    assert payload.risk_level == "medium"
    assert payload.detected is True
    assert payload.safe_to_proceed is True


def test_cross_validation_scales_down_contradicted_sources():
    overall, reliability = score_cross_validation([
        SourceValidation(source_id="a", status="validated", confidence=0.9),
        SourceValidation(source_id="b", status="contradicted", confidence=0.5),
    ])

    assert overall == pytest.approx(0.55)
    assert reliability == "medium"
    assert score_cross_validation([]) == (0.0, "low")


# ──────────────────────────────────────────────
# Final answer
# ──────────────────────────────────────────────

def test_answer_cites_only_sources_that_returned_data():
    answer = _finalize(_results(_source("warehouse", REVENUE_ROWS), synthesis=SYNTHESIS))

    assert answer.status is AnswerStatus.ANSWERED
    assert answer.answer == "EMEA led revenue."
    assert answer.sources_cited == ["warehouse"]
    assert answer.confidence == pytest.approx(0.875)
    assert answer.resource_units == 50
    assert answer.notice is None


def test_no_source_data_is_refused_without_guessing():
    results = _results(
        _source("warehouse", success=False, error="connection refused"),
        synthesis=SYNTHESIS,
    )

    answer = _finalize(results)

    assert answer.status is AnswerStatus.REFUSED
    assert answer.answer == REFUSAL_MESSAGE
    assert answer.confidence == 0.0
    assert "connection refused" in answer.notice
    assert answer.sources_cited == []


def test_failed_sources_lower_confidence_proportionally():
    answer = _finalize(_results(
        _source("warehouse", REVENUE_ROWS),
        _source("replica", success=False, error="timeout"),
        synthesis=SYNTHESIS,
    ))

    assert answer.status is AnswerStatus.ANSWERED
    assert answer.confidence == pytest.approx(0.875 * 0.75, abs=1e-3)


def test_unsafe_hallucination_check_withholds_the_answer():
    results = _results(_source("warehouse", REVENUE_ROWS), synthesis=SYNTHESIS)
    results[A.HALLUCINATION_CHECK] = AgentResult(
        agent=A.HALLUCINATION_CHECK,
        success=True,
        payload=assess_hallucination([
            _check("factual_accuracy", "failed", 0.1),
            _check("logical_consistency", "failed", 0.1),
            _check("source_attribution", "failed", 0.2),
        ]),
        confidence=0.1,
    )

    answer = _finalize(results, plan=replace(PLAN, validation_level=ValidationLevel.HEAVY))

    assert answer.status is AnswerStatus.DEGRADED
    assert answer.answer == LOW_CONFIDENCE_NOTICE
    assert answer.raw_answer == "EMEA led revenue."
    assert answer.risk_level == "critical"


def test_failed_synthesis_caps_confidence():
    fallback = SynthesisPayload(answer="Here is what the sources returned: ...", confidence=0.3)

    answer = _finalize(_results(_source("warehouse", REVENUE_ROWS), synthesis=fallback, synthesis_ok=False))

    assert answer.status is AnswerStatus.DEGRADED
    assert answer.confidence <= 0.3
    assert answer.answer.startswith("Here is what the sources returned")
    assert "without language-model synthesis" in answer.notice


def test_aborted_run_with_data_is_partial():
    answer = _finalize(
        _results(_source("warehouse", REVENUE_ROWS), synthesis=SYNTHESIS),
        state=PipelineState.ABORTED,
        reason="Stage 3 timed out",
    )

    assert answer.status is AnswerStatus.PARTIAL
    assert "Stage 3 timed out" in answer.notice


def test_guardrails_rejection_explains_the_block():
    results = {
        A.GUARDRAILS: AgentResult(
            agent=A.GUARDRAILS,
            success=True,
            payload=GuardrailsPayload(allowed=False, risk_level="high", reason="Requests credentials."),
            confidence=0.95,
        ),
    }

    answer = _finalize(results, state=PipelineState.REJECTED, reason="Requests credentials.")

    assert answer.status is AnswerStatus.REJECTED
    assert "Requests credentials." in answer.answer
    assert answer.risk_level == "high"
    assert answer.confidence == 1.0


def test_short_circuit_returns_the_conversational_reply():
    results = {
        A.INTENT_VALIDATION: AgentResult(
            agent=A.INTENT_VALIDATION,
            success=True,
            payload=IntentPayload(is_valid=True, query_type="greeting", suggested_response="Hi! Ask me about your data."),
            confidence=0.9,
        ),
    }

    answer = _finalize(results, state=PipelineState.SHORT_CIRCUITED)

    assert answer.status is AnswerStatus.CONVERSATIONAL
    assert answer.answer == "Hi! Ask me about your data."
    assert answer.confidence == 0.9
