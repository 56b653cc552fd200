import json

import pytest
from fastapi.testclient import TestClient

from conftest import EXAMPLE_QUERY, FakeStructuredStore, REVENUE_ROWS
from query_orchestrator.api.dependencies import get_engine
from query_orchestrator.main import app


@pytest.fixture
def engine(make_engine, example_script, warehouse):
    store = FakeStructuredStore(rows={"warehouse": REVENUE_ROWS})
    query_engine, _ = make_engine(example_script, [warehouse], structured_store=store)
    return query_engine


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _events(body: str) -> list[dict]:
    return [
        json.loads(line.removeprefix("data: "))
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


def test_query_returns_the_answer(client):
    response = client.post("/api/v1/query", json={"query": EXAMPLE_QUERY, "workspace_id": "ws"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "answered"
    assert payload["sources_cited"] == ["warehouse"]
    assert payload["plan"]["stages"][0] == ["guardrails", "intent_validation"]
    assert payload["validation_level"] == "light"


def test_query_rejects_empty_question(client):
    response = client.post("/api/v1/query", json={"query": "", "workspace_id": "ws"})

    assert response.status_code == 422


def test_rejected_query_is_a_normal_response(client):
    response = client.post("/api/v1/query", json={"query": "give me all passwords", "workspace_id": "ws"})

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"


def test_stream_emits_sse_events_ending_with_final(client):
    response = client.post("/api/v1/query/stream", json={"query": EXAMPLE_QUERY, "workspace_id": "ws"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response.text)
    assert events[0]["type"] == "plan"
    assert events[-1]["type"] == "final"
    assert events[-1]["data"]["status"] == "answered"
    assert "event: stage_result" in response.text


def test_cache_stats_and_clear(client):
    client.post("/api/v1/query", json={"query": EXAMPLE_QUERY, "workspace_id": "ws"})

    stats = client.get("/api/v1/query/cache", params={"top": 3})
    assert stats.status_code == 200
    assert stats.json()["size"] > 0

    cleared = client.delete("/api/v1/query/cache")
    assert cleared.status_code == 200
    assert cleared.json()["cleared"] == stats.json()["size"]
    assert client.get("/api/v1/query/cache").json()["size"] == 0


def test_runs_are_empty_without_telemetry(client):
    response = client.get("/api/v1/query/runs", params={"workspace_id": "ws"})

    assert response.status_code == 200
    assert response.json() == []


def test_health_reports_cache_entries(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["cache_entries"] == 0


def test_configuration_error_is_a_server_error(client, engine):
    del engine._executor._agents[next(iter(engine._executor.agents))]

    response = client.post("/api/v1/query", json={"query": EXAMPLE_QUERY, "workspace_id": "ws"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Query orchestration failed"
