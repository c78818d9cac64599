"""SQLAlchemy engine and session factories plus the database health check."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from streamvault.core.config import get_settings


Base = declarative_base()


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``database_url``.

    SQLite connections may be used from the drainer's worker threads. An
    in-memory SQLite database is pinned to one shared connection so every
    session sees the same tables.
    """

    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True, echo=echo, future=True)

    kwargs: Dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": 30},
        "echo": echo,
        "future": True,
    }
    if url.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create every mapped table directly, for SQLite dev databases and tests."""

    load_models()
    Base.metadata.create_all(engine)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.database_echo)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return build_session_factory(get_engine())


def reset_engine_cache() -> None:
    get_session_factory.cache_clear()
    get_engine.cache_clear()


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return False, str(exc)
    return True, None


def load_models() -> None:
    """Register ORM models on ``Base.metadata``."""

    import streamvault.storage.models  # noqa: F401
