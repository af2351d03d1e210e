"""Database connection and session management."""

import os
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./pipeline_engine.db"

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create an engine; in-memory SQLite gets a shared StaticPool so its data survives across sessions."""
    if connect_args is None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:"):
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the process-wide database engine."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("PIPELINE_ENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)
        _engine = build_engine(database_url, echo=echo, connect_args=connect_args)

    return _engine


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Session factory bound to the given engine, or to the process-wide one."""
    global _session_factory
    if engine is not None:
        return sessionmaker(autocommit=False, autoflush=False, bind=engine)
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_database_engine())
    return _session_factory


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine, _session_factory
    if _engine:
        _engine.dispose()
    _engine = None
    _session_factory = None


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mapped classes on Base
    Base.metadata.create_all(bind=engine or get_database_engine())
