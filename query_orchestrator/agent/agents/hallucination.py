"""
Hallucination check — heavy validation of the synthesized answer.

Five independent checks run concurrently.  Three ask the LLM to compare
the answer against the source data; source attribution and confidence
calibration are computed locally.  A check that cannot run becomes a
low-confidence warning rather than failing the whole pass.
"""

from __future__ import annotations

import asyncio
import logging

from query_orchestrator.agent.aggregator import assess_hallucination, collect_source_results, preview
from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.llm import CheckOutput
from query_orchestrator.schemas.payloads import (
    HallucinationCheck,
    HallucinationPayload,
    SourceResult,
    SynthesisPayload,
)

logger = logging.getLogger(__name__)

_LLM_CHECKS = {
    "factual_accuracy": "Is every number and fact in the answer supported by the source data?",
    "logical_consistency": "Are the answer's conclusions logically consistent with each other and with the data?",
    "contradiction_detection": "Does the answer contradict any of the source data, or contradict itself?",
}

_PROMPT = """\
You audit answers produced from data for hallucinations.

Check: {question}

Question asked: {query}

Answer:
{answer}

Source data:
{previews}

Respond ONLY with valid JSON in this exact format:
{{"status": "passed|failed|warning", "confidence": 0.0, "details": "...", "evidence": []}}
"""


def attribution_check(synthesis: SynthesisPayload, with_data: list[SourceResult]) -> HallucinationCheck:
    known = {result.source_id for result in with_data}
    unknown = [source_id for source_id in synthesis.sources_used if source_id not in known]
    if unknown:
        return HallucinationCheck(
            name="source_attribution",
            status="failed",
            confidence=0.2,
            details=f"Answer cites sources that returned no data: {', '.join(unknown)}",
            evidence=unknown,
        )
    if not synthesis.sources_used:
        return HallucinationCheck(
            name="source_attribution",
            status="warning",
            confidence=0.5,
            details="Answer cites no sources",
        )
    return HallucinationCheck(name="source_attribution", status="passed", confidence=0.9)


def calibration_check(synthesis: SynthesisPayload, with_data: list[SourceResult]) -> HallucinationCheck:
    evidence = sum(result.confidence for result in with_data) / len(with_data) if with_data else 0.0
    gap = synthesis.confidence - evidence
    if gap > 0.4:
        return HallucinationCheck(
            name="confidence_calibration",
            status="failed",
            confidence=0.3,
            details=f"Stated confidence {synthesis.confidence:.2f} far exceeds evidence {evidence:.2f}",
        )
    if gap > 0.2:
        return HallucinationCheck(
            name="confidence_calibration",
            status="warning",
            confidence=0.6,
            details=f"Stated confidence {synthesis.confidence:.2f} exceeds evidence {evidence:.2f}",
        )
    return HallucinationCheck(name="confidence_calibration", status="passed", confidence=0.9)


class HallucinationCheckAgent(BaseAgent):
    agent_type = AgentType.HALLUCINATION_CHECK

    def __init__(self, *args, confidence_floor: float | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._floor = confidence_floor if confidence_floor is not None else settings.answer_confidence_floor

    async def run(self, inp: AgentInput) -> AgentOutcome:
        synthesis = inp.payload(AgentType.SYNTHESIS, SynthesisPayload)
        if synthesis is None or synthesis.refused:
            # Nothing was asserted, so nothing can be hallucinated
            return AgentOutcome(payload=HallucinationPayload(overall_confidence=1.0), confidence=1.0)

        with_data = [result for result in collect_source_results(inp.prior) if result.has_data]
        previews = "\n".join(preview(result) for result in with_data) or "None"
        outcomes = await asyncio.gather(
            *(self._llm_check(name, question, inp, synthesis, previews) for name, question in _LLM_CHECKS.items())
        )
        checks = [check for check, _ in outcomes]
        checks.insert(2, attribution_check(synthesis, with_data))
        checks.insert(3, calibration_check(synthesis, with_data))

        payload = assess_hallucination(checks, self._floor)
        logger.info(
            "HallucinationCheck: risk=%s | detected=%s | safe=%s",
            payload.risk_level,
            payload.detected,
            payload.safe_to_proceed,
        )
        return AgentOutcome(
            payload=payload,
            confidence=payload.overall_confidence,
            resource_units=sum(units for _, units in outcomes),
        )

    async def _llm_check(
        self,
        name: str,
        question: str,
        inp: AgentInput,
        synthesis: SynthesisPayload,
        previews: str,
    ) -> tuple[HallucinationCheck, int]:
        try:
            output, units = await self._ask(
                _PROMPT.format(
                    question=question,
                    query=inp.context.query,
                    answer=synthesis.answer,
                    previews=previews,
                ),
                CheckOutput,
                temperature=0.0,
            )
        except Exception as exc:
            logger.warning("HallucinationCheck: %s unavailable (%s)", name, exc)
            return HallucinationCheck(
                name=name,
                status="warning",
                confidence=0.3,
                details=f"Check could not run: {exc}",
            ), 0
        return HallucinationCheck(
            name=name,
            status=output.status,
            confidence=output.confidence,
            details=output.details,
            evidence=output.evidence,
        ), units

    def fallback_payload(self, inp: AgentInput, reason: str) -> HallucinationPayload:
        return HallucinationPayload(
            risk_level="high",
            detected=True,
            overall_confidence=0.2,
            safe_to_proceed=False,
            recommendations=[f"Hallucination check unavailable: {reason}"],
        )
