from __future__ import annotations

from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.schemas.llm import RewriteOutput
from query_orchestrator.schemas.payloads import QueryOptimizationPayload

_PROMPT = """\
Rewrite the user's question so it can be answered precisely from databases,
documents and connected services. Resolve pronouns using the conversation,
make implicit time ranges and metrics explicit, and keep the user's intent.
Do not invent filters the user did not ask for.

Recent conversation:
{history}

Question: {query}

Respond ONLY with valid JSON in this exact format:
{{"optimized_query": "...", "rationale": "..."}}
"""


class QueryOptimizationAgent(BaseAgent):
    """Rewrites the query for retrieval. The raw query is the fallback."""

    agent_type = AgentType.QUERY_OPTIMIZATION
    cacheable = True
    reads_history = True

    async def run(self, inp: AgentInput) -> AgentOutcome:
        history = "\n".join(f"{m.role}: {m.text}" for m in inp.context.history[-6:])
        output, units = await self._ask(
            _PROMPT.format(query=inp.context.query, history=history or "None"),
            RewriteOutput,
            temperature=0.2,
        )
        rewritten = " ".join(output.optimized_query.split())
        return AgentOutcome(
            payload=QueryOptimizationPayload(
                optimized_query=rewritten,
                rationale=output.rationale,
                changed=rewritten.casefold() != inp.context.query.casefold(),
            ),
            confidence=0.8,
            resource_units=units,
        )

    def fallback_payload(self, inp: AgentInput, reason: str) -> QueryOptimizationPayload:
        return QueryOptimizationPayload(
            optimized_query=inp.context.query,
            rationale=f"Original query kept: {reason}",
        )
