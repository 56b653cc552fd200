"""
Query classification: a fast local tier and a conditional LLM tier.

``HeuristicClassifier`` never fails and never suspends.  ``LLMClassifier``
may raise ``LLMServiceError``.  ``TwoTierClassifier`` consults the LLM only
when the heuristic is not confident enough, and lets LLM failures propagate
so the planner can fall back to its fixed plan.
"""

from __future__ import annotations

import logging
import re

from query_orchestrator.agent.state import (
    Complexity,
    ConversationMessage,
    DataRequirements,
    QueryAnalysis,
    QueryType,
)
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.llm import ClassificationOutput
from query_orchestrator.services.llm_service import CallOptions, ChatMessage, LLMService

logger = logging.getLogger(__name__)

_STOP_WORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "how", "in",
    "is", "it", "me", "my", "of", "on", "or", "show", "that", "the", "to",
    "what", "which", "with",
}

_COMPLEXITY_HINTS = {
    "compare",
    "correlate",
    "correlation",
    "trend",
    "forecast",
    "predict",
    "why",
    "explain",
    "breakdown",
    "across",
    "versus",
    "impact",
    "root cause",
    "year over year",
}

_STRUCTURED_HINTS = {
    "revenue", "sales", "orders", "customers", "count", "total", "sum", "average",
    "top", "bottom", "rank", "per", "by", "region", "regions", "quarter", "month",
    "table", "rows", "records", "users", "transactions", "profit", "growth",
}
_DOCUMENT_HINTS = {
    "document", "documents", "report", "reports", "pdf", "file", "files", "policy",
    "contract", "manual", "memo", "summary", "summarize", "uploaded", "says",
}
_EXTERNAL_HINTS = {
    "api", "live", "realtime", "real-time", "market", "weather", "stock",
    "external", "crm", "salesforce", "hubspot", "latest",
}
_VISUAL_HINTS = {
    "chart", "graph", "plot", "visualize", "visualise", "trend", "dashboard",
    "histogram", "distribution", "over time",
}
_CONVERSATIONAL = re.compile(
    r"^\s*(hi|hello|hey|thanks|thank you|bye|goodbye|good (morning|afternoon|evening))\b",
    re.IGNORECASE,
)

_CLASSIFY_PROMPT = """\
Classify a user's data question for a query planner.

Return ONLY JSON in this exact format:
{{"complexity": "simple|medium|complex",
  "query_type": "factual|analytical|comparative|predictive|conversational",
  "data_requirements": {{"needs_structured": bool, "needs_documents": bool,
                         "needs_external": bool, "needs_visualization": bool}},
  "confidence": 0.0-1.0}}

Recent conversation:
{history}

Question: {query}
"""


def _tokenize(text: str) -> list[str]:
    return re.findall(r"[a-zA-Z0-9_\-]{2,}", text.lower())


def _hits(low: str, tokens: set[str], vocabulary: set[str]) -> int:
    return sum(1 for term in vocabulary if (term in tokens if " " not in term else term in low))


class HeuristicClassifier:
    """Keyword and shape based classification. Deterministic."""

    def classify(self, query: str) -> QueryAnalysis:
        low = " ".join(query.lower().split())
        token_list = _tokenize(low)
        tokens = set(token_list)
        info_tokens = [token for token in token_list if token not in _STOP_WORDS]

        if not info_tokens or (_CONVERSATIONAL.match(low) and len(info_tokens) <= 4):
            return QueryAnalysis(
                complexity=Complexity.SIMPLE,
                query_type=QueryType.CONVERSATIONAL,
                requirements=DataRequirements(),
                confidence=0.9,
            )

        hint_hits = _hits(low, tokens, _COMPLEXITY_HINTS)
        multi_part = (
            " and then " in low
            or " then " in low
            or " vs " in low
            or low.count("?") > 1
            or low.count(",") >= 2
        )
        length_factor = min(len(info_tokens) / 18.0, 1.0)
        score = min(1.0, hint_hits * 0.22 + (0.22 if multi_part else 0.0) + length_factor * 0.56)

        if score >= 0.6:
            complexity = Complexity.COMPLEX
        elif score >= 0.35:
            complexity = Complexity.MEDIUM
        else:
            complexity = Complexity.SIMPLE

        structured = _hits(low, tokens, _STRUCTURED_HINTS)
        documents = _hits(low, tokens, _DOCUMENT_HINTS)
        external = _hits(low, tokens, _EXTERNAL_HINTS)
        requirements = DataRequirements(
            needs_structured=structured > 0,
            needs_documents=documents > 0,
            needs_external=external > 0,
            needs_visualization=_hits(low, tokens, _VISUAL_HINTS) > 0,
        )

        if tokens & {"compare", "versus", "vs"}:
            query_type = QueryType.COMPARATIVE
        elif tokens & {"forecast", "predict", "projection", "next"}:
            query_type = QueryType.PREDICTIVE
        elif hint_hits or tokens & {"top", "rank", "average", "trend", "by"}:
            query_type = QueryType.ANALYTICAL
        else:
            query_type = QueryType.FACTUAL

        # Confidence grows with how clearly the query names its data.
        signal = structured + documents + external
        confidence = 0.45 + min(signal, 4) * 0.1
        if signal and not (structured and documents):
            confidence += 0.05
        if 0.3 <= score <= 0.4 or 0.55 <= score <= 0.65:
            confidence -= 0.1  # near a complexity boundary
        confidence = max(0.2, min(confidence, 0.95))

        return QueryAnalysis(
            complexity=complexity,
            query_type=query_type,
            requirements=requirements,
            confidence=round(confidence, 4),
        )


class LLMClassifier:
    def __init__(self, llm: LLMService) -> None:
        self._llm = llm

    async def classify(
        self,
        query: str,
        history: tuple[ConversationMessage, ...] = (),
    ) -> QueryAnalysis:
        history_block = "\n".join(f"{m.role}: {m.text}" for m in history[-4:])
        prompt = _CLASSIFY_PROMPT.format(query=query, history=history_block or "None")
        output, response = await self._llm.call_json(
            [ChatMessage(role="user", content=prompt)],
            ClassificationOutput,
            CallOptions(temperature=0.1, max_output_tokens=256, purpose="classification"),
        )
        flags = output.data_requirements
        return QueryAnalysis(
            complexity=Complexity(output.complexity),
            query_type=QueryType(output.query_type),
            requirements=DataRequirements(
                needs_structured=flags.needs_structured,
                needs_documents=flags.needs_documents,
                needs_external=flags.needs_external,
                needs_visualization=flags.needs_visualization,
            ),
            confidence=output.confidence,
            tier="llm",
            resource_units=response.resource_units_used,
        )


class TwoTierClassifier:
    """
    Heuristic first; LLM only below ``threshold``.

    Parameters
    ----------
    heuristic : HeuristicClassifier
    llm : LLMClassifier | None
        When ``None`` the heuristic answer is always used.
    threshold : float | None
        Minimum heuristic confidence that skips the LLM tier.
    """

    def __init__(
        self,
        heuristic: HeuristicClassifier | None = None,
        llm: LLMClassifier | None = None,
        threshold: float | None = None,
    ) -> None:
        self._heuristic = heuristic or HeuristicClassifier()
        self._llm = llm
        self._threshold = threshold if threshold is not None else settings.planner_llm_threshold

    async def classify(
        self,
        query: str,
        history: tuple[ConversationMessage, ...] = (),
    ) -> QueryAnalysis:
        fast = self._heuristic.classify(query)
        if fast.confidence >= self._threshold or self._llm is None:
            logger.debug("Classifier: heuristic tier accepted (confidence=%.2f)", fast.confidence)
            return fast

        logger.info(
            "Classifier: heuristic confidence %.2f below %.2f, consulting LLM",
            fast.confidence,
            self._threshold,
        )
        return await self._llm.classify(query, history)
