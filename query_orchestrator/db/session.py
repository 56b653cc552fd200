from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from query_orchestrator.core.config import settings

is_sqlite = settings.database_url.startswith("sqlite")

engine_kwargs: dict = {"echo": settings.debug}

if is_sqlite:
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    engine_kwargs["pool_pre_ping"] = settings.db_pool_pre_ping
    engine_kwargs["pool_recycle"] = settings.db_pool_recycle_seconds
    engine_kwargs["pool_size"] = settings.db_pool_size
    engine_kwargs["max_overflow"] = settings.db_max_overflow

engine = create_engine(settings.database_url, **engine_kwargs)

SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    autoflush=False,
    autocommit=False,
)

