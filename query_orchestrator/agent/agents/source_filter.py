"""
Source filtering — ranks the workspace's sources against this query.

Relevance is the mean of embedding similarity and lexical overlap with the
source's name, summary and declared fields.  Scores are per query and live
only in this agent's payload, never on the descriptors.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType, SourceDescriptor
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.payloads import RankedSourceModel, SourceFilterPayload
from query_orchestrator.services.embedding_service import (
    EmbeddingService,
    EmbeddingServiceError,
    cosine_similarity,
)
from query_orchestrator.services.relevance_service import term_coverage

logger = logging.getLogger(__name__)


def describe(source: SourceDescriptor) -> str:
    fields = source.metadata.get("fields") or source.metadata.get("tables") or []
    return " ".join([source.name, source.summary, *map(str, fields)])


class SourceFilterAgent(BaseAgent):
    agent_type = AgentType.SOURCE_FILTER
    cacheable = True

    def __init__(
        self,
        *args,
        embeddings: EmbeddingService | None = None,
        min_relevance: float | None = None,
        max_selected: int | None = None,
        default_relevance: float | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._embeddings = embeddings
        self._min_relevance = min_relevance if min_relevance is not None else settings.source_min_relevance
        self._max_selected = max_selected or settings.source_max_selected
        self._default_relevance = (
            default_relevance if default_relevance is not None else settings.source_default_relevance
        )

    async def run(self, inp: AgentInput) -> AgentOutcome:
        sources = list(inp.sources)
        if not sources:
            return AgentOutcome(payload=SourceFilterPayload(), confidence=1.0)

        query = inp.effective_query
        semantic = await self._semantic_scores(query, sources)
        ranked = sorted(
            (
                RankedSourceModel(
                    source_id=source.id,
                    source_kind=source.kind,
                    relevance_score=round(
                        max(0.0, min((score + term_coverage(query, [describe(source)])) / 2, 1.0)), 4
                    ),
                )
                for source, score in zip(sources, semantic)
            ),
            key=lambda item: item.relevance_score,
            reverse=True,
        )

        kept = [item for item in ranked if item.relevance_score >= self._min_relevance]
        fell_back = not kept
        if fell_back:
            primary = set(inp.plan.strategy.primary_source_ids)
            kept = [item for item in ranked if item.source_id in primary] or ranked
            logger.info(
                "SourceFilter: no source reached %.2f, keeping %d planned source(s)",
                self._min_relevance,
                len(kept),
            )
        kept = kept[: self._max_selected]

        mean = sum(item.relevance_score for item in kept) / len(kept)
        confidence = min(mean, 0.4) if fell_back else max(mean, 0.5)
        return AgentOutcome(
            payload=SourceFilterPayload(ranked=kept, fell_back=fell_back),
            confidence=confidence,
        )

    async def _semantic_scores(self, query: str, sources: Sequence[SourceDescriptor]) -> list[float]:
        default = [self._default_relevance] * len(sources)
        if self._embeddings is None:
            return default
        try:
            query_vector = await self._embeddings.embed(query)
            vectors = await self._embeddings.embed_many([describe(source) for source in sources])
        except EmbeddingServiceError as exc:
            logger.warning("SourceFilter: embedding failed (%s), using default relevance", exc)
            return default
        return [max(0.0, cosine_similarity(query_vector, vector)) for vector in vectors]

    def fallback_payload(self, inp: AgentInput, reason: str) -> SourceFilterPayload:
        primary = set(inp.plan.strategy.primary_source_ids)
        chosen = [s for s in inp.sources if s.id in primary] or list(inp.sources)
        return SourceFilterPayload(
            ranked=[
                RankedSourceModel(
                    source_id=source.id,
                    source_kind=source.kind,
                    relevance_score=self._default_relevance,
                )
                for source in chosen[: self._max_selected]
            ],
            fell_back=True,
        )
