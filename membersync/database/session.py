"""
Database handle with connection pooling.

A single Database is created at process start and passed by reference into
every component constructor; components open short-lived sessions from it
per operation. Nothing here is module-global.

Usage:
    database = Database(config.database_url)

    with database.session_scope() as session:
        session.add(member)
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from membersync.models.base import Base

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Handle Render's postgres:// URL format (SQLAlchemy requires postgresql://)."""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT / ROLLBACK TO work.

    pysqlite defers BEGIN on its own, which breaks nested transactions.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """
    Owns the engine and session factory for the process.

    Uses connection pooling with sensible defaults for production:
    - pool_size: 5 connections
    - max_overflow: 10 additional connections under load
    - pool_pre_ping: Verify connections before use

    In-memory SQLite (tests) shares one connection across threads via
    StaticPool.
    """

    def __init__(self, database_url: str, engine: Optional[Engine] = None):
        if not database_url and engine is None:
            raise ValueError("database_url is required")

        self.database_url = normalize_database_url(database_url) if database_url else ""

        if engine is not None:
            self.engine = engine
        elif self.database_url.startswith("sqlite"):
            self.engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            _enable_sqlite_savepoints(self.engine)
        else:
            self.engine = create_engine(
                self.database_url,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=1800,
            )

        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.info(
            "Database engine created",
            extra={"dialect": self.engine.dialect.name}
        )

    def create_all(self) -> None:
        """Create all tables registered on Base (tests and local runs)."""
        import membersync.models  # noqa: F401 - registers tables

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        import membersync.models  # noqa: F401

        Base.metadata.drop_all(bind=self.engine)

    def new_session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Transactional scope: commit on success, roll back on any exception.

        The exception is re-raised; callers decide how to classify it.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
