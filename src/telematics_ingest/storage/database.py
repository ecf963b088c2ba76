# telematics_ingest/storage/database.py
"""
SQLAlchemy engine and session management.

One Database instance owns the engine for the whole worker process. Engines,
repositories and the job queue receive it by injection and open short
transactions with `session_scope()`.

Design Decisions:
-----------------
- Synchronous SQLAlchemy 2.0. The worker is thread-based, and each queue
  thread opens its own session; sessions are never shared between threads.
- `expire_on_commit=False` so ORM rows returned from a scope can still be read
  after the transaction closes (repositories return detached rows).
- In-memory SQLite URLs get a StaticPool and `check_same_thread=False` so every
  thread sees the same database. This keeps tests and local runs honest about
  the multi-threaded worker.

Usage:
------
    database = Database(config.database)
    database.create_all()

    with database.session_scope() as session:
        session.add(row)
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from telematics_ingest.config import DatabaseConfig
from telematics_ingest.storage.tables import Base

__all__: list[str] = ['Database']

logger: logging.Logger = logging.getLogger(__name__)


class Database:
    """
    Engine plus session factory.

    Args:
        config: Database URL and engine options.
        engine: Pre-built engine to use instead of creating one from config.
    """

    def __init__(self, config: DatabaseConfig, engine: Engine | None = None) -> None:
        self._config: DatabaseConfig = config
        self.engine: Engine = engine or self._create_engine(config)
        self._session_factory: sessionmaker[Session] = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        logger.debug('Database engine ready (dialect=%s)', self.dialect_name)

    @staticmethod
    def _create_engine(config: DatabaseConfig) -> Engine:
        url = make_url(config.url)
        engine_kwargs: dict[str, Any] = {
            'echo': config.echo,
            'pool_pre_ping': config.pool_pre_ping,
        }

        if url.get_backend_name() == 'sqlite':
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if url.database in (None, '', ':memory:'):
                engine_kwargs['poolclass'] = StaticPool

        return create_engine(url, **engine_kwargs)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        """Create any missing tables (existing tables are left untouched)."""
        Base.metadata.create_all(self.engine)
        logger.info('Database tables verified')

    def session(self) -> Session:
        """Return a new unmanaged session; the caller must close it."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Transactional scope: commit on success, roll back on any exception.

        Yields:
            A session bound to this database.
        """
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()
        logger.info('Database engine disposed')
