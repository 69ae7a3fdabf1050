"""SQLAlchemy engine and unit-of-work session management."""

from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import ConstraintViolationError, StorageFailureError
from .tables import Base

logger = structlog.get_logger(__name__)


def _configure_sqlite(engine: Engine) -> None:
    """Serialize SQLite writers with BEGIN IMMEDIATE and enforce foreign keys."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # Let SQLAlchemy emit BEGIN instead of pysqlite
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    def __init__(self, url: str, echo: bool = False, busy_timeout: float = 15.0):
        connect_args = {}
        is_sqlite = url.startswith("sqlite")
        if is_sqlite:
            connect_args = {"check_same_thread": False, "timeout": busy_timeout}

        self.engine = create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)
        if is_sqlite:
            _configure_sqlite(self.engine)

        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One atomic unit of work: commit on success, roll back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.warning("constraint_violation", error=str(e.orig))
            raise ConstraintViolationError("The change conflicts with existing data") from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("storage_failure", error=str(e), exc_info=e)
            raise StorageFailureError("Storage is temporarily unavailable") from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
