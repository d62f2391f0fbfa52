"""
Database engine and session management.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ..config import DatabaseConfig
from ..utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (SQLite stores no offset)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """
    Owns the SQLAlchemy engine and hands out transactional sessions.

    SQLite connections get a busy timeout so concurrent writers wait for the
    database lock instead of failing immediately.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.url = self.config.url

        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {
                "timeout": self.config.timeout_seconds,
                "check_same_thread": False,
            }

        self.engine = create_engine(
            self.url,
            echo=self.config.echo,
            connect_args=connect_args,
            pool_pre_ping=True,
        )

        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite_connection)
            event.listen(self.engine, "begin", _begin_immediate)

        self.session_factory = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autoflush=False,
        )

    def create_all(self) -> None:
        """Create every table that does not exist yet."""
        # Registers the table classes on Base.metadata
        from . import tables  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info(f"Database schema ready at {self._safe_url()}")

    def check_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            return False

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Provide a transactional scope around a series of operations.

        Commits on success and rolls back on any exception. Database errors
        are re-raised as PersistenceError; engine errors pass through.

        Yields:
            An open Session
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database transaction rolled back: {e}")
            raise PersistenceError(f"Database write failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()

    def _safe_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    # Transactions are started explicitly in _begin_immediate
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_immediate(conn) -> None:
    # Take the write lock up front: concurrent writers then queue on the busy
    # timeout instead of failing on a shared-to-reserved lock upgrade.
    conn.exec_driver_sql("BEGIN IMMEDIATE")
