from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from insight_sync.config import get_settings

Base = declarative_base()

settings = get_settings()


def _build_engine(url: str):
    engine_kwargs: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        # In-memory databases must share one connection across sessions and threads.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
    return create_engine(url, **engine_kwargs)


engine = _build_engine(settings.database_url)
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
