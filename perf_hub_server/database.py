"""
Engine and session wiring for the relational store.
"""
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from perf_hub_server.config import Settings
from perf_hub_server.db_models import Base


def build_engine(settings: Settings) -> Engine:
    """Create the engine for DATABASE_URL."""
    url = settings.database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.database_echo, **kwargs)

    return create_engine(
        url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)


def ping(engine: Engine) -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


def get_db(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
