"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, session creation and context managers for
safe database access with automatic transaction rollback.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, scoped_session
from loguru import logger

from pledgehub.config import settings
from pledgehub.utils.errors import DatabaseError, PledgeHubError


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for PostgreSQL or SQLite.

    SQLite connections are shared across threads (FastAPI runs sync routes in
    a threadpool) and enforce foreign keys.
    """
    if database_url.startswith("sqlite"):
        new_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(new_engine, "connect")
        def _sqlite_pragmas(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return new_engine

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=30,
        pool_recycle=1800,
        echo=echo,
        connect_args={
            "connect_timeout": 10,
            "options": "-c statement_timeout=60000",
        },
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False,  # Prevent lazy load issues after commit
    )


engine = make_engine(settings.database_url, echo=settings.debug)

SessionLocal = scoped_session(make_session_factory(engine))


def init_db(bind: Engine = None) -> None:
    """Create all tables and indexes that don't exist yet. Safe to call repeatedly."""
    from pledgehub.db.models import Base

    Base.metadata.create_all(bind=bind or engine, checkfirst=True)
    logger.info("Database schema initialized")


def get_db() -> Session:
    """
    Get a database session.

    Caller is responsible for closing it with close_db_session()
    or using get_db_context().
    """
    return SessionLocal()


def close_db() -> None:
    """Close and remove the current database session."""
    SessionLocal.remove()


def close_db_session(db: Session) -> None:
    """Close a session from get_db() and drop it from the registry."""
    try:
        db.close()
    finally:
        SessionLocal.remove()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.

    Usage:
        with get_db_context() as db:
            session = db.get(PledgeSession, session_id)

    The session is committed on success and rolled back on error.
    """
    db = get_db()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        close_db()


@contextmanager
def atomic(db: Session) -> Generator[Session, None, None]:
    """
    Run a unit of work on an existing session as one transaction.

    Domain errors raised inside roll the transaction back and propagate
    unchanged. Storage failures roll back and surface as DatabaseError.

    Usage:
        with atomic(self.db):
            self.db.add(pledge)
            self.audit.record(...)
    """
    try:
        yield db
        db.commit()
    except PledgeHubError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database transaction rolled back: {e}")
        raise DatabaseError(f"Transaction failed: {e}") from e
    except Exception:
        db.rollback()
        raise


def check_db_health(bind: Engine = None) -> Dict[str, Any]:
    """Run a trivial query and report connectivity."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "healthy", "dialect": (bind or engine).dialect.name}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
