from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from query_orchestrator.agent.aggregator import collect_source_results
from query_orchestrator.agent.agents.base import AgentInput, AgentOutcome, BaseAgent
from query_orchestrator.agent.state import AgentType
from query_orchestrator.core.config import settings
from query_orchestrator.schemas.llm import ChartOutput
from query_orchestrator.schemas.payloads import SourceResult, SynthesisPayload, VisualizationPayload

logger = logging.getLogger(__name__)

_TEMPORAL_FIELD = re.compile(r"(date|time|day|week|month|quarter|year|period)", re.IGNORECASE)
_SHARE_QUERY = re.compile(r"\b(share|breakdown|proportion|percentage|split|distribution)\b", re.IGNORECASE)

_PROMPT = """\
Choose the best chart for this result.

Question: {query}
Columns: {columns}
Sample rows: {sample}

Respond ONLY with valid JSON in this exact format:
{{"chart_type": "bar|line|pie|table|none", "x_field": "...", "y_fields": ["..."], "title": "..."}}
"""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def recommend_chart(query: str, result: SourceResult) -> tuple[VisualizationPayload, float]:
    """Pick a chart from the shape of the first records."""
    records = result.records
    columns = list(records[0].keys())
    numeric = [c for c in columns if all(_is_number(r.get(c)) for r in records if r.get(c) is not None)]
    numeric = [c for c in numeric if any(r.get(c) is not None for r in records)]
    labels = [c for c in columns if c not in numeric]
    temporal = [c for c in labels if _TEMPORAL_FIELD.search(c)]

    common = {"source_id": result.source_id, "title": query[:80]}
    if temporal and numeric:
        return VisualizationPayload(
            chart_type="line",
            x_field=temporal[0],
            y_fields=numeric[:3],
            rationale="Numeric values over a time column",
            **common,
        ), 0.85
    if labels and numeric:
        chart = "pie" if _SHARE_QUERY.search(query) and len(records) <= 8 else "bar"
        return VisualizationPayload(
            chart_type=chart,
            x_field=labels[0],
            y_fields=numeric[:1] if chart == "pie" else numeric[:3],
            rationale="Numeric values per category",
            **common,
        ), 0.8
    return VisualizationPayload(chart_type="table", rationale="No clear category/value pair", **common), 0.6


class VisualizationAgent(BaseAgent):
    agent_type = AgentType.VISUALIZATION

    def __init__(self, *args, threshold: float | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._threshold = threshold if threshold is not None else settings.agent_llm_threshold

    async def run(self, inp: AgentInput) -> AgentOutcome:
        synthesis = inp.payload(AgentType.SYNTHESIS, SynthesisPayload)
        with_data = [result for result in collect_source_results(inp.prior) if result.has_data]
        if synthesis is not None and synthesis.sources_used:
            cited = [r for r in with_data if r.source_id in synthesis.sources_used]
            with_data = cited or with_data
        if not with_data:
            return AgentOutcome(payload=VisualizationPayload(rationale="No records to chart"), confidence=1.0)

        # Chart the largest result
        result = max(with_data, key=lambda r: r.row_count)
        payload, confidence = recommend_chart(inp.context.query, result)
        if confidence >= self._threshold or self._llm is None:
            return AgentOutcome(payload=payload, confidence=confidence)

        try:
            output, units = await self._ask(
                _PROMPT.format(
                    query=inp.context.query,
                    columns=", ".join(result.records[0].keys()),
                    sample=result.records[:3],
                ),
                ChartOutput,
                temperature=0.0,
                max_output_tokens=256,
            )
        except Exception as exc:
            logger.info("Visualization: LLM tier unavailable (%s), keeping heuristic", exc)
            return AgentOutcome(payload=payload, confidence=confidence)

        if not self._fields_exist(output, result.records[0]):
            logger.info("Visualization: LLM chose unknown fields, keeping heuristic")
            return AgentOutcome(payload=payload, confidence=confidence, resource_units=units)

        return AgentOutcome(
            payload=VisualizationPayload(
                chart_type=output.chart_type,
                source_id=result.source_id,
                x_field=output.x_field,
                y_fields=output.y_fields,
                title=output.title or payload.title,
                rationale="Chosen by language model",
            ),
            confidence=0.8,
            resource_units=units,
        )

    @staticmethod
    def _fields_exist(output: ChartOutput, record: Mapping[str, Any]) -> bool:
        fields = [output.x_field, *output.y_fields] if output.x_field else list(output.y_fields)
        return all(name in record for name in fields)

    def fallback_payload(self, inp: AgentInput, reason: str) -> VisualizationPayload:
        return VisualizationPayload(chart_type="table", rationale=f"Default table view ({reason})")
