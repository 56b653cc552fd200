import json
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import query_orchestrator.models  # noqa: F401  registers tables on Base.metadata
from query_orchestrator.agent.aggregator import ResultAggregator
from query_orchestrator.agent.classifier import LLMClassifier, TwoTierClassifier
from query_orchestrator.agent.engine import QueryEngine, build_agents
from query_orchestrator.agent.executor import PipelineExecutor
from query_orchestrator.agent.planner import QueryPlanner
from query_orchestrator.agent.state import SourceDescriptor, SourceKind
from query_orchestrator.db.base import Base
from query_orchestrator.services.cache_service import ResultCache
from query_orchestrator.services.embedding_service import EmbeddingServiceError
from query_orchestrator.services.llm_service import (
    CallOptions,
    ChatMessage,
    LLMProvider,
    LLMResponse,
    LLMService,
    LLMServiceError,
)
from query_orchestrator.services.telemetry_service import TelemetryRecorder
from query_orchestrator.sources.base import (
    DocumentStore,
    ExternalConnector,
    SourceExecutionError,
    StructuredStoreClient,
)
from query_orchestrator.sources.discovery import StaticSourceDiscovery

EXAMPLE_QUERY = "show top 5 regions by revenue last quarter"

REVENUE_ROWS = [
    {"region": "EMEA", "revenue": 1200000},
    {"region": "North America", "revenue": 980000},
    {"region": "APAC", "revenue": 640000},
    {"region": "LATAM", "revenue": 310000},
    {"region": "Middle East", "revenue": 150000},
]


# ──────────────────────────────────────────────
# Fakes
# ──────────────────────────────────────────────

class FakeProvider(LLMProvider):
    """Replies by ``options.purpose``; unscripted purposes fail like a dead provider."""

    name = "fake"

    def __init__(self, script: dict[str, Any] | None = None) -> None:
        self.script = dict(script or {})
        self.calls: list[str] = []

    async def complete(self, messages: list[ChatMessage], options: CallOptions) -> LLMResponse:
        self.calls.append(options.purpose)
        reply = self.script.get(options.purpose)
        if reply is None:
            raise LLMServiceError(f"No scripted reply for {options.purpose}")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(messages)
        text = reply if isinstance(reply, str) else json.dumps(reply)
        return LLMResponse(text=text, resource_units_used=10, provider=self.name)


class FakeEmbeddings:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise EmbeddingServiceError("embedding backend down")
        return [1.0, 0.0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise EmbeddingServiceError("embedding backend down")
        return [[1.0, 0.0] for _ in texts]


class FakeStructuredStore(StructuredStoreClient):
    def __init__(self, rows: dict[str, list[dict]] | None = None, failing: set[str] | None = None) -> None:
        self.rows = rows or {}
        self.failing = failing or set()
        self.executed: list[tuple[str, str]] = []

    async def execute(self, source: SourceDescriptor, statement: str, row_limit: int) -> list[dict[str, Any]]:
        self.executed.append((source.id, statement))
        if source.id in self.failing:
            raise SourceExecutionError(f"{source.id} is unreachable")
        return list(self.rows.get(source.id, []))[:row_limit]


class FakeDocumentStore(DocumentStore):
    def __init__(self, passages: dict[str, list[str]] | None = None) -> None:
        self.passages = passages or {}
        self.searched: list[str] = []

    async def search(self, source: SourceDescriptor, query: str, limit: int) -> list[str]:
        self.searched.append(source.id)
        return self.passages.get(source.id, [])[:limit]


class FakeConnector(ExternalConnector):
    def __init__(self, records: dict[str, list[dict]] | None = None, failing: set[str] | None = None) -> None:
        self.records = records or {}
        self.failing = failing or set()

    async def fetch(self, source: SourceDescriptor, query: str) -> list[dict[str, Any]]:
        if source.id in self.failing:
            raise SourceExecutionError(f"{source.id} timed out")
        return list(self.records.get(source.id, []))


# ──────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────

@pytest.fixture
def warehouse() -> SourceDescriptor:
    return SourceDescriptor(
        id="warehouse",
        name="Sales warehouse",
        kind=SourceKind.STRUCTURED,
        summary="Revenue per region and quarter, including last quarter and top accounts",
        metadata={"tables": ["sales(region, revenue, quarter)"]},
    )


@pytest.fixture
def example_script() -> dict[str, Any]:
    return {
        "guardrails": {"allowed": True, "risk_level": "low", "reason": "", "confidence": 0.95},
        "structured_execution": {
            "statement": (
                "SELECT region, SUM(revenue) AS revenue FROM sales "
                "WHERE quarter = '2026-Q2' GROUP BY region ORDER BY revenue DESC LIMIT 5"
            ),
            "explanation": "Top regions by revenue",
        },
        "synthesis": {
            "answer": "EMEA led revenue last quarter with 1.2M, followed by North America and APAC.",
            "sources_used": ["warehouse"],
            "follow_up_suggestions": ["Compare with the previous quarter"],
            "key_insights": ["EMEA is the largest region"],
            "confidence": 0.85,
        },
    }


@pytest.fixture
def make_engine() -> Callable[..., tuple[QueryEngine, FakeProvider]]:
    def _make(
        script: dict[str, Any] | None = None,
        sources: list[SourceDescriptor] | None = None,
        structured_store: StructuredStoreClient | None = None,
        document_store: DocumentStore | None = None,
        connector: ExternalConnector | None = None,
        embeddings: FakeEmbeddings | None = None,
        stage_timeout: float = 5.0,
        deadline_seconds: float = 30.0,
        telemetry: TelemetryRecorder | None = None,
    ) -> tuple[QueryEngine, FakeProvider]:
        provider = FakeProvider(script)
        llm = LLMService(primary=provider, use_fallback=False)
        cache = ResultCache(max_entries=100, default_ttl=300)
        agents = build_agents(
            llm,
            cache,
            embeddings=embeddings,
            structured_store=structured_store,
            document_store=document_store,
            connector=connector,
        )
        engine = QueryEngine(
            discovery=StaticSourceDiscovery(sources or []),
            planner=QueryPlanner(TwoTierClassifier(llm=LLMClassifier(llm)), cache),
            executor=PipelineExecutor(agents, stage_timeout=stage_timeout, deadline_seconds=deadline_seconds),
            aggregator=ResultAggregator(),
            telemetry=telemetry,
            cache=cache,
        )
        return engine, provider

    return _make


@pytest.fixture
def session_factory() -> Iterator[sessionmaker]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    engine.dispose()
