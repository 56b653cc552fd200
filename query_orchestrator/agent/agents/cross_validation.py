from __future__ import annotations

from query_orchestrator.agent.aggregator import collect_source_results, preview, score_cross_validation
from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.schemas.llm import CrossValidationOutput
from query_orchestrator.schemas.payloads import CrossValidationPayload, SourceResult, SourceValidation

_PROMPT = """\
Several data sources answered the same question. For each source, decide
whether its data is consistent with the others.

Statuses: validated (agrees or stands on its own), inconsistent (minor
disagreement), contradicted (conflicts with other sources), unverified
(cannot be checked).

Question: {query}

Source data:
{previews}

Respond ONLY with valid JSON in this exact format:
{{"validations": [{{"source_id": "...", "status": "validated", "confidence": 0.0,
   "issues": [], "supporting_sources": []}}],
  "recommendations": []}}
"""


def _unverified(result: SourceResult, confidence: float, issue: str) -> SourceValidation:
    return SourceValidation(
        source_id=result.source_id,
        status="unverified",
        confidence=confidence,
        issues=[issue],
    )


class CrossValidationAgent(BaseAgent):
    """Cross-source consistency pass run at medium and heavy validation."""

    agent_type = AgentType.CROSS_VALIDATION

    async def run(self, inp: AgentInput) -> AgentOutcome:
        results = collect_source_results(inp.prior)
        usable = [result for result in results if result.has_data]
        validations = [
            _unverified(result, 0.1, result.error or "Source execution failed")
            for result in results
            if not result.success
        ]
        validations += [
            _unverified(result, 0.3, "Source returned no data")
            for result in results
            if result.success and not result.records
        ]

        recommendations: list[str] = []
        units = 0
        if usable:
            output, units = await self._ask(
                _PROMPT.format(
                    query=inp.effective_query,
                    previews="\n".join(preview(result) for result in usable),
                ),
                CrossValidationOutput,
                max_output_tokens=1024,
            )
            by_id = {item.source_id: item for item in output.validations}
            for result in usable:
                item = by_id.get(result.source_id)
                if item is None:
                    validations.append(_unverified(result, 0.3, "Not assessed"))
                    continue
                supporters = [s for s in item.supporting_sources if s != result.source_id]
                validations.append(
                    SourceValidation(
                        source_id=result.source_id,
                        status=item.status,
                        # Corroboration by other sources earns a small boost
                        confidence=min(item.confidence * (1.1 if supporters else 1.0), 1.0),
                        issues=item.issues,
                        supporting_sources=supporters,
                    )
                )
            recommendations.extend(output.recommendations)

        overall, reliability = score_cross_validation(validations)
        contradicted = [v.source_id for v in validations if v.status == "contradicted"]
        if contradicted:
            recommendations.append(f"Review conflicting sources: {', '.join(contradicted)}")
        failed = [r.source_name for r in results if not r.success]
        if failed:
            recommendations.append(f"Check connectivity for: {', '.join(failed)}")

        return AgentOutcome(
            payload=CrossValidationPayload(
                validations=validations,
                overall_confidence=overall,
                reliability=reliability,
                recommendations=recommendations,
            ),
            confidence=overall,
            resource_units=units,
        )

    def fallback_payload(self, inp: AgentInput, reason: str) -> CrossValidationPayload:
        results = collect_source_results(inp.prior)
        validations = [
            _unverified(result, 0.1 if not result.success else 0.3, reason)
            for result in results
        ]
        overall, reliability = score_cross_validation(validations)
        return CrossValidationPayload(
            validations=validations,
            overall_confidence=overall,
            reliability=reliability,
            recommendations=["Cross-validation unavailable; treat results as unverified"],
        )
