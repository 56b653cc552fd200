"""
Synthesis — composes the single natural-language answer.

Only sources that actually returned records are shown to the model, and
only those may be cited.  With no records at all the agent refuses instead
of letting the model answer from general knowledge.
"""

from __future__ import annotations

from query_orchestrator.agent.aggregator import (
    REFUSAL_MESSAGE,
    collect_source_results,
    preview,
    summarize_records,
)
from query_orchestrator.agent.agents.base import FALLBACK_CONFIDENCE, AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.schemas.llm import SynthesisOutput
from query_orchestrator.schemas.payloads import CrossValidationPayload, SynthesisPayload

_PROMPT = """\
You are a data analyst answering a business user's question.
Answer ONLY from the source data below. Cite the source ids you used.
If the data only partly answers the question, say what is missing.

Recent conversation:
{history}

Question: {query}

Source data (first rows of each result):
{previews}
{validation}
Respond ONLY with valid JSON in this exact format:
{{"answer": "...", "sources_used": ["source id"], "follow_up_suggestions": ["..."],
  "key_insights": ["..."], "confidence": 0.0}}
"""


class SynthesisAgent(BaseAgent):
    agent_type = AgentType.SYNTHESIS

    def __init__(self, *args, history_turns: int = 6, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._history_turns = history_turns

    async def run(self, inp: AgentInput) -> AgentOutcome:
        with_data = [result for result in collect_source_results(inp.prior) if result.has_data]
        if not with_data:
            return AgentOutcome(
                payload=SynthesisPayload(answer=REFUSAL_MESSAGE, refused=True),
                confidence=0.0,
                success=False,
                error="No source returned data",
            )

        validation = ""
        cross = inp.payload(AgentType.CROSS_VALIDATION, CrossValidationPayload)
        if cross is not None and cross.validations:
            notes = "; ".join(f"{v.source_id}: {v.status}" for v in cross.validations)
            validation = f"\nCross-source validation: {notes}\n"

        history = "\n".join(f"{m.role}: {m.text}" for m in inp.context.history[-self._history_turns:])
        output, units = await self._ask(
            _PROMPT.format(
                history=history or "None",
                query=inp.context.query,
                previews="\n".join(preview(result) for result in with_data),
                validation=validation,
            ),
            SynthesisOutput,
            temperature=0.2,
            max_output_tokens=1024,
        )

        # Models sometimes cite by name; accept names but keep ids
        by_name = {result.source_name.casefold(): result.source_id for result in with_data}
        known = {result.source_id for result in with_data}
        cited: list[str] = []
        for reference in output.sources_used:
            source_id = reference if reference in known else by_name.get(reference.casefold())
            if source_id and source_id not in cited:
                cited.append(source_id)

        return AgentOutcome(
            payload=SynthesisPayload(
                answer=output.answer.strip(),
                sources_used=cited or [result.source_id for result in with_data],
                follow_up_suggestions=output.follow_up_suggestions[:5],
                key_insights=output.key_insights[:5],
                confidence=output.confidence,
            ),
            confidence=output.confidence,
            resource_units=units,
        )

    def fallback_payload(self, inp: AgentInput, reason: str) -> SynthesisPayload:
        with_data = [result for result in collect_source_results(inp.prior) if result.has_data]
        if not with_data:
            return SynthesisPayload(answer=REFUSAL_MESSAGE, refused=True)
        return SynthesisPayload(
            answer=summarize_records(with_data),
            sources_used=[result.source_id for result in with_data],
            confidence=FALLBACK_CONFIDENCE,
        )
