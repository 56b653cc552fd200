from fastapi import APIRouter, Depends

from query_orchestrator.agent.engine import QueryEngine
from query_orchestrator.api.dependencies import get_engine
from query_orchestrator.core.config import settings

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_check(engine: QueryEngine = Depends(get_engine)):
    cache = engine.cache
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "cache_entries": len(cache) if cache is not None else 0,
    }
