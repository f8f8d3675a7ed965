# backend/poi_discovery/database.py
"""
Database engine, session factory, and metadata shared across the service.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from poi_discovery.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str | None = None, *, echo: bool | None = None) -> Engine:
    """Create an engine for the given URL (defaults to settings.database_url)."""
    url = database_url or settings.database_url
    kwargs: dict[str, Any] = {
        "echo": settings.database_echo if echo is None else echo,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        # Sessions are handed to worker threads via asyncio.to_thread.
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from poi_discovery.models import poi  # noqa: F401

    Base.metadata.create_all(bind=engine)

