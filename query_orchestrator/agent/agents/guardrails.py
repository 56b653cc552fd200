"""
Guardrails — content safety gate run in the first stage.

A pattern match is decisive and needs no LLM call.  Otherwise the LLM tier
is consulted when the pattern tier's confidence is below the threshold.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.llm import GuardrailsOutput
from query_orchestrator.schemas.payloads import GuardrailsPayload

logger = logging.getLogger(__name__)

BLOCK_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "security": [
        re.compile(r"\b(hack|exploit|bypass)\b.*\b(system|security|auth\w*|login)\b", re.I),
        re.compile(r"\bsql\s+injection\b", re.I),
        re.compile(r"\b(malware|ransomware|keylogger|backdoor)\b", re.I),
        re.compile(r"\b(drop|truncate|alter)\s+table\b", re.I),
        re.compile(r"\b(delete|wipe|destroy)\s+(all|every|the)\b.*\b(data|records|rows|tables?)\b", re.I),
    ],
    "illegal": [
        re.compile(r"\b(launder(ing)?|counterfeit|illegal\s+drugs|evade\s+tax(es)?)\b", re.I),
    ],
    "privacy": [
        re.compile(r"\b(ssn|social\s+security\s+numbers?)\b", re.I),
        re.compile(r"\bcredit\s+card\s+(numbers?|details)\b", re.I),
        re.compile(r"\b(passwords?|api\s+keys?|secret\s+keys?|access\s+tokens?)\b", re.I),
    ],
    "system": [
        re.compile(r"\bignore\s+(all\s+)?(previous|prior)\s+instructions\b", re.I),
        re.compile(r"\b(system\s+prompt|reveal\s+your\s+instructions)\b", re.I),
        re.compile(r"\b(exec|eval)\s*\(", re.I),
    ],
}

INTENSIVE_PATTERNS = [
    re.compile(r"\b(export|download|dump)\s+(all|every(thing)?|entire)\b", re.I),
    re.compile(r"\ball\s+(the\s+)?data\b", re.I),
]

_PROMPT = """\
You are the content-safety gate of a data analysis assistant.
Decide whether the user's question may be answered from the workspace's data.
Block requests for credentials, personal identifiers, attacks on systems,
data destruction, or illegal activity. Ordinary business questions are allowed.

Question: {query}

Respond ONLY with valid JSON in this exact format:
{{"allowed": true, "risk_level": "low|medium|high", "reason": "...", "categories": [], "confidence": 0.0}}
"""


@dataclass(frozen=True)
class PatternVerdict:
    allowed: bool
    categories: list[str]
    flagged: bool
    confidence: float


def screen(query: str) -> PatternVerdict:
    """Pattern tier. Pure, never suspends."""
    categories = [
        category
        for category, patterns in BLOCK_PATTERNS.items()
        if any(pattern.search(query) for pattern in patterns)
    ]
    flagged = any(pattern.search(query) for pattern in INTENSIVE_PATTERNS)
    if categories:
        return PatternVerdict(allowed=False, categories=categories, flagged=flagged, confidence=0.95)
    return PatternVerdict(allowed=True, categories=[], flagged=flagged, confidence=0.6 if flagged else 0.75)


class GuardrailsAgent(BaseAgent):
    agent_type = AgentType.GUARDRAILS
    cacheable = True

    def __init__(self, *args, threshold: float | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._threshold = threshold if threshold is not None else settings.agent_llm_threshold

    async def run(self, inp: AgentInput) -> AgentOutcome:
        verdict = screen(inp.context.query)
        if not verdict.allowed:
            logger.info("Guardrails: blocked by patterns %s", verdict.categories)
            return AgentOutcome(
                payload=GuardrailsPayload(
                    allowed=False,
                    risk_level="high",
                    reason=f"Request matches restricted categories: {', '.join(verdict.categories)}",
                    categories=verdict.categories,
                    flagged=verdict.flagged,
                ),
                confidence=verdict.confidence,
            )

        if verdict.confidence >= self._threshold or self._llm is None:
            return AgentOutcome(
                payload=GuardrailsPayload(allowed=True, risk_level="low", flagged=verdict.flagged),
                confidence=verdict.confidence,
            )

        output, units = await self._ask(_PROMPT.format(query=inp.context.query), GuardrailsOutput)
        return AgentOutcome(
            payload=GuardrailsPayload(
                allowed=output.allowed,
                risk_level="medium" if verdict.flagged and output.risk_level == "low" else output.risk_level,
                reason=output.reason,
                categories=output.categories,
                flagged=verdict.flagged,
                tier="llm",
            ),
            confidence=output.confidence,
            resource_units=units,
        )

    def fallback_payload(self, inp: AgentInput, reason: str) -> GuardrailsPayload:
        # The pattern tier still applies when the LLM tier is unavailable
        verdict = screen(inp.context.query)
        return GuardrailsPayload(
            allowed=verdict.allowed,
            risk_level="high",
            reason=f"Safety check degraded: {reason}",
            categories=verdict.categories,
            flagged=verdict.flagged,
        )
