"""
Database engine and session factory.

Works with PostgreSQL, MySQL, SQLite, etc. via SQLAlchemy.
"""

from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealerledger.config import DatabaseConfig
from dealerledger.storage.models import Base

logger = logging.getLogger("dealerledger.storage.database")


class Database:
    """Owns the SQLAlchemy engine and hands out sessions.

    Usage::

        db = Database.from_config(config.database)
        db.create_all()
        with db.session() as session, session.begin():
            ...
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        kwargs: dict = {"echo": echo}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # Share one connection so every session sees the same in-memory db
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        self.url = url
        self.engine: Engine = create_engine(url, **kwargs)
        self._factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        return cls(config.url, echo=config.echo)

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)
        logger.debug("Ensured schema on %s", self.engine.url.render_as_string(hide_password=True))

    def session(self) -> Session:
        return self._factory()

    def dispose(self) -> None:
        self.engine.dispose()
