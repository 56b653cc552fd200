from functools import lru_cache

from query_orchestrator.agent.engine import QueryEngine, build_default_engine


@lru_cache
def get_engine() -> QueryEngine:
    # Overridden through app.dependency_overrides in tests
    return build_default_engine()
