from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import query_orchestrator.models  # noqa: F401
from query_orchestrator.api import health, query
from query_orchestrator.api.dependencies import get_engine
from query_orchestrator.core.config import settings
from query_orchestrator.core.logging import configure_logging
from query_orchestrator.db.base import Base
from query_orchestrator.db.session import engine

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    query_engine = app.dependency_overrides.get(get_engine, get_engine)()
    if query_engine.cache is not None:
        query_engine.cache.start_sweeper(settings.cache_sweep_interval_seconds)
    yield
    if query_engine.cache is not None:
        await query_engine.cache.stop_sweeper()


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(query.router, prefix=settings.api_v1_prefix)


@app.get("/", tags=["root"])
def root():
    return {"message": f"{settings.app_name} is running"}
