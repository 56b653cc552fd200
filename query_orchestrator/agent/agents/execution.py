"""
Source execution fan-out.

One agent per source kind.  Each receives the filtered, ranked sources of
its kind and the (possibly rewritten) query, and calls every source in
isolation: a failing source becomes a failed ``SourceResult`` and never
cancels its siblings.  Fallback sources are only tried when the primary
sources produced no data.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod

from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.sql_guard import inspect_statement
from query_orchestrator.agent.state import (
    AgentType,
    ExecutionOrder,
    SourceDescriptor,
    SourceKind,
)
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.llm import ExtractionOutput, StatementOutput
from query_orchestrator.schemas.payloads import SourceExecutionPayload, SourceFilterPayload, SourceResult
from query_orchestrator.services.relevance_service import term_coverage
from query_orchestrator.sources.base import (
    DocumentStore,
    ExternalConnector,
    SourceExecutionError,
    StructuredStoreClient,
)

logger = logging.getLogger(__name__)


class SourceExecutionAgent(BaseAgent):
    source_kind: SourceKind

    def select_sources(self, inp: AgentInput) -> tuple[list[SourceDescriptor], list[SourceDescriptor]]:
        """Split this kind's sources into (primary, fallback), best first."""
        of_kind = {s.id: s for s in inp.sources if s.kind == self.source_kind}
        filtered = inp.payload(AgentType.SOURCE_FILTER, SourceFilterPayload)
        if filtered is not None:
            ordered = [of_kind[source_id] for source_id in filtered.ids_for(self.source_kind) if source_id in of_kind]
        else:
            ordered = list(of_kind.values())

        primary_ids = set(inp.plan.strategy.primary_source_ids)
        primary = [s for s in ordered if s.id in primary_ids]
        fallback = [s for s in ordered if s.id not in primary_ids]
        return primary, fallback

    async def run(self, inp: AgentInput) -> AgentOutcome:
        primary, fallback = self.select_sources(inp)
        query = inp.effective_query
        order = inp.plan.strategy.execution_order

        if order is ExecutionOrder.SEQUENTIAL:
            results = [await self._isolated(source, query, inp) for source in primary]
        else:
            results = list(await asyncio.gather(*(self._isolated(s, query, inp) for s in primary)))

        if fallback and not any(result.has_data for result in results):
            logger.info("%s: primary sources gave no data, trying %d fallback(s)", self.name, len(fallback))
            if order is ExecutionOrder.PARALLEL:
                results.extend(await asyncio.gather(*(self._isolated(s, query, inp) for s in fallback)))
            else:
                for source in fallback:
                    result = await self._isolated(source, query, inp)
                    results.append(result)
                    if result.has_data:
                        break

        payload = SourceExecutionPayload(source_kind=self.source_kind, results=results)
        units = sum(result.resource_units for result in results)
        if not results:
            return AgentOutcome(payload=payload, confidence=0.0)

        with_data = payload.with_data()
        if with_data:
            confidence = sum(r.confidence for r in with_data) / len(with_data)
            return AgentOutcome(payload=payload, confidence=confidence, resource_units=units)
        if any(result.success for result in results):
            return AgentOutcome(payload=payload, confidence=0.4, resource_units=units)
        return AgentOutcome(
            payload=payload,
            confidence=0.1,
            resource_units=units,
            success=False,
            error=f"All {len(results)} {self.source_kind.value} source(s) failed",
        )

    async def _isolated(self, source: SourceDescriptor, query: str, inp: AgentInput) -> SourceResult:
        started = time.perf_counter()
        try:
            result = await self.execute_source(source, query, inp)
        except Exception as exc:
            logger.warning("%s: source %s failed (%s)", self.name, source.name, exc)
            result = SourceResult(
                source_id=source.id,
                source_name=source.name,
                source_kind=source.kind,
                success=False,
                error=str(exc) or type(exc).__name__,
            )
        return result.model_copy(update={"processing_ms": (time.perf_counter() - started) * 1000})

    @abstractmethod
    async def execute_source(self, source: SourceDescriptor, query: str, inp: AgentInput) -> SourceResult:
        """Query one source. May raise."""

    def fallback_payload(self, inp: AgentInput, reason: str) -> SourceExecutionPayload:
        return SourceExecutionPayload(source_kind=self.source_kind, results=[])

    @staticmethod
    def _empty(source: SourceDescriptor, note: str, confidence: float = 0.5, units: int = 0) -> SourceResult:
        return SourceResult(
            source_id=source.id,
            source_name=source.name,
            source_kind=source.kind,
            success=True,
            warnings=[note],
            confidence=confidence,
            resource_units=units,
        )


# ──────────────────────────────────────────────
# Structured stores
# ──────────────────────────────────────────────

_STATEMENT_PROMPT = """\
Write one read-only SQL SELECT statement that answers the question using the
schema below. Always end with a LIMIT clause (at most {row_limit} rows).
Never modify data or schema.

Source: {name}
Description: {summary}
Schema: {schema}

Question: {query}

Respond ONLY with valid JSON in this exact format:
{{"statement": "SELECT ... LIMIT {row_limit}", "explanation": "..."}}
"""


class StructuredExecutionAgent(SourceExecutionAgent):
    agent_type = AgentType.STRUCTURED_EXECUTION
    source_kind = SourceKind.STRUCTURED

    def __init__(
        self,
        *args,
        store: StructuredStoreClient | None = None,
        row_limit: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._store = store
        self._row_limit = row_limit or settings.structured_row_limit

    async def execute_source(self, source: SourceDescriptor, query: str, inp: AgentInput) -> SourceResult:
        if self._store is None:
            raise SourceExecutionError("No structured store client configured")

        output, units = await self._ask(
            _STATEMENT_PROMPT.format(
                name=source.name,
                summary=source.summary or "n/a",
                schema=self._store.describe_schema(source) or "unknown",
                query=query,
                row_limit=self._row_limit,
            ),
            StatementOutput,
            temperature=0.0,
        )
        report = inspect_statement(output.statement, self._row_limit)
        for warning in report.warnings:
            logger.warning("StructuredExecution: %s: %s", source.name, warning)
        logger.info(
            "StructuredExecution: %s | complexity=%.2f | risk=%s",
            source.name,
            report.complexity_score,
            report.risk_level,
        )

        rows = (await self._store.execute(source, report.statement, self._row_limit))[: self._row_limit]
        return SourceResult(
            source_id=source.id,
            source_name=source.name,
            source_kind=source.kind,
            success=True,
            records=rows,
            row_count=len(rows),
            statement=report.statement,
            warnings=list(report.warnings),
            risk_level=report.risk_level,
            confidence=0.9 if rows else 0.5,
            resource_units=units,
        )


# ──────────────────────────────────────────────
# Documents
# ──────────────────────────────────────────────

_EXTRACTION_PROMPT = """\
Extract the facts that answer the question from the passages below.
Use ONLY the passages. If they do not contain the answer, return found=false
and an empty records list. Never guess.

Document source: {name}

Passages:
{passages}

Question: {query}

Respond ONLY with valid JSON in this exact format:
{{"found": true, "records": [{{"field": "value"}}], "confidence": 0.0}}
"""


class DocumentExecutionAgent(SourceExecutionAgent):
    agent_type = AgentType.DOCUMENT_EXECUTION
    source_kind = SourceKind.DOCUMENT

    def __init__(
        self,
        *args,
        store: DocumentStore | None = None,
        passage_limit: int | None = None,
        min_coverage: float | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._store = store
        self._passage_limit = passage_limit or settings.document_passage_limit
        self._min_coverage = min_coverage if min_coverage is not None else settings.document_min_coverage

    def plausible(self, source: SourceDescriptor, query: str) -> bool:
        """Whether the source's indexed summary could contain the answer."""
        keywords = source.metadata.get("keywords") or []
        return term_coverage(query, [source.name, source.summary, *map(str, keywords)]) >= self._min_coverage

    async def execute_source(self, source: SourceDescriptor, query: str, inp: AgentInput) -> SourceResult:
        if not self.plausible(source, query):
            return self._empty(source, "Source summary does not cover the question", confidence=0.7)
        if self._store is None:
            raise SourceExecutionError("No document store configured")

        passages = await self._store.search(source, query, self._passage_limit)
        if not passages:
            return self._empty(source, "No matching passages")

        output, units = await self._ask(
            _EXTRACTION_PROMPT.format(
                name=source.name,
                passages="\n\n".join(f"[{i + 1}] {p}" for i, p in enumerate(passages)),
                query=query,
            ),
            ExtractionOutput,
            max_output_tokens=1024,
        )
        if not output.found or not output.records:
            return self._empty(source, "Passages do not answer the question", units=units)

        return SourceResult(
            source_id=source.id,
            source_name=source.name,
            source_kind=source.kind,
            success=True,
            records=output.records,
            row_count=len(output.records),
            confidence=output.confidence,
            resource_units=units,
        )


# ──────────────────────────────────────────────
# External connectors
# ──────────────────────────────────────────────

class ExternalExecutionAgent(SourceExecutionAgent):
    agent_type = AgentType.EXTERNAL_EXECUTION
    source_kind = SourceKind.EXTERNAL

    def __init__(self, *args, connector: ExternalConnector | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._connector = connector

    async def execute_source(self, source: SourceDescriptor, query: str, inp: AgentInput) -> SourceResult:
        if self._connector is None:
            raise SourceExecutionError("No external connector configured")

        records = await self._connector.fetch(source, query)
        limit = int(source.metadata.get("max_records", settings.structured_row_limit))
        records = records[:limit]
        return SourceResult(
            source_id=source.id,
            source_name=source.name,
            source_kind=source.kind,
            success=True,
            records=records,
            row_count=len(records),
            confidence=0.75 if records else 0.5,
        )
