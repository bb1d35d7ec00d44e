"""
SQLAlchemy engine and session factory.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from collections_engine.core.logging import get_logger
from collections_engine.models.database import Base

logger = get_logger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    In-memory SQLite databases share one connection so every session sees
    the same data.
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory with objects usable after commit."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all engine tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured", url=str(engine.url))
