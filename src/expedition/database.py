"""
Database wiring: engine, session factories and transaction scopes.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.expedition.guards import ExpeditionSession, ReadOnlySession
from src.expedition.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite gets thread-safe settings for the request pool."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, database_url: str):
        self.url = database_url
        self.engine = build_engine(database_url)
        self._sessions = sessionmaker(
            bind=self.engine, class_=ExpeditionSession, expire_on_commit=False
        )
        self._readonly = sessionmaker(
            bind=self.engine, class_=ReadOnlySession, expire_on_commit=False
        )

    def init_db(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Expedition tables ready on %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session_scope(self) -> Iterator[ExpeditionSession]:
        """One engine operation = one transaction. Rolls back on any error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def read_scope(self) -> Iterator[ReadOnlySession]:
        session = self._readonly()
        try:
            yield session
        finally:
            session.close()
