"""
Intent validation — decides whether the query is a data question at all.

Greetings and closings short-circuit the pipeline with a conversational
reply; abusive, irrelevant or ambiguous queries are rejected with a reason.
"""

from __future__ import annotations

import re

from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.llm import IntentOutput
from query_orchestrator.schemas.payloads import IntentPayload

_GREETING = re.compile(r"^\s*(hi|hello|hey|howdy|good\s+(morning|afternoon|evening))\b[\s!.,]*\w{0,12}[\s!.]*$", re.I)
_CLOSING = re.compile(r"^\s*(thanks|thank\s+you|bye|goodbye|that'?s\s+all|cheers)\b[\s\w!.,]{0,20}$", re.I)
_ABUSIVE = re.compile(r"\b(idiot|stupid|shut\s+up|useless\s+bot|f+u+c+k\w*)\b", re.I)
_CONTINUATION = re.compile(r"^\s*(and|also|what\s+about|how\s+about|same\s+for)\b", re.I)
_CLARIFICATION = re.compile(r"^\s*(i\s+meant|no,?\s+i\s+mean|sorry,?\s+i\s+meant|to\s+clarify)\b", re.I)
_DATA_TERMS = re.compile(
    r"\b(show|list|how\s+many|count|total|sum|average|top|bottom|compare|trend|"
    r"revenue|sales|orders|customers|users|report|documents?|data|table|rows?|"
    r"by\s+\w+|per\s+\w+|last\s+(week|month|quarter|year)|between|since)\b",
    re.I,
)
_TIME_REFERENCES = re.compile(
    r"\b(today|yesterday|last\s+(week|month|quarter|year)|this\s+(week|month|quarter|year)|"
    r"q[1-4]|\d{4})\b",
    re.I,
)

_GREETING_REPLY = (
    "Hello! Ask me a question about your data, for example "
    "\"show total revenue by region for last quarter\"."
)
_CLOSING_REPLY = "You're welcome. Ask again any time you need something from your data."

_PROMPT = """\
You validate questions sent to a data analysis assistant.
Classify the message as one of: data_query, greeting, closing, continuation,
clarification, abusive, irrelevant, ambiguous. A data question is valid even
if phrased informally. Irrelevant means unrelated to the user's data.

Recent conversation:
{history}

Message: {query}

Respond ONLY with valid JSON in this exact format:
{{"is_valid": true, "query_type": "data_query", "reason": "...",
  "suggested_response": null, "entities": [], "time_references": [], "confidence": 0.0}}
"""


def classify_intent(query: str, has_history: bool = False) -> tuple[IntentPayload, float]:
    """Regex tier. Returns the payload and the tier's confidence."""
    times = [match.group(0) for match in _TIME_REFERENCES.finditer(query)]

    if _ABUSIVE.search(query):
        return IntentPayload(
            is_valid=False,
            query_type="abusive",
            reason="Message contains abusive language",
            suggested_response="Let's keep things respectful. What would you like to know about your data?",
        ), 0.9
    if _GREETING.match(query):
        return IntentPayload(is_valid=True, query_type="greeting", suggested_response=_GREETING_REPLY), 0.95
    if _CLOSING.match(query):
        return IntentPayload(is_valid=True, query_type="closing", suggested_response=_CLOSING_REPLY), 0.9
    if has_history and _CLARIFICATION.match(query):
        return IntentPayload(is_valid=True, query_type="clarification", time_references=times), 0.8
    if has_history and _CONTINUATION.match(query):
        return IntentPayload(is_valid=True, query_type="continuation", time_references=times), 0.8
    if _DATA_TERMS.search(query):
        confidence = 0.85 if len(query.split()) >= 3 else 0.7
        return IntentPayload(is_valid=True, query_type="data_query", time_references=times), confidence
    if len(query.split()) <= 2:
        return IntentPayload(
            is_valid=False,
            query_type="ambiguous",
            reason="The question is too short to act on",
            suggested_response="Could you add a bit more detail about what you want to see?",
        ), 0.6
    return IntentPayload(is_valid=True, query_type="data_query", time_references=times), 0.5


class IntentValidationAgent(BaseAgent):
    agent_type = AgentType.INTENT_VALIDATION
    cacheable = True
    reads_history = True

    def __init__(self, *args, threshold: float | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._threshold = threshold if threshold is not None else settings.agent_llm_threshold

    async def run(self, inp: AgentInput) -> AgentOutcome:
        context = inp.context
        payload, confidence = classify_intent(context.query, has_history=bool(context.history))
        if confidence >= self._threshold or self._llm is None:
            return AgentOutcome(payload=payload, confidence=confidence)

        history = "\n".join(f"{m.role}: {m.text}" for m in context.history[-4:])
        output, units = await self._ask(
            _PROMPT.format(query=context.query, history=history or "None"),
            IntentOutput,
        )
        suggested = output.suggested_response
        if output.query_type == "greeting" and not suggested:
            suggested = _GREETING_REPLY
        elif output.query_type == "closing" and not suggested:
            suggested = _CLOSING_REPLY
        return AgentOutcome(
            payload=IntentPayload(
                is_valid=output.is_valid and output.query_type not in {"abusive", "irrelevant", "ambiguous"},
                query_type=output.query_type,
                reason=output.reason,
                suggested_response=suggested,
                entities=output.entities,
                time_references=output.time_references or payload.time_references,
                tier="llm",
            ),
            confidence=output.confidence,
            resource_units=units,
        )

    def fallback_payload(self, inp: AgentInput, reason: str) -> IntentPayload:
        # Fail open: an unclassifiable query is treated as a data question
        payload, _ = classify_intent(inp.context.query, has_history=bool(inp.context.history))
        if payload.query_type in {"abusive", "greeting", "closing"}:
            return payload
        return IntentPayload(
            is_valid=True,
            query_type="data_query",
            reason=f"Intent check degraded: {reason}",
            time_references=payload.time_references,
        )
