"""
Database Connection and Session Management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
import logging

from expense_tracker.database.models import Base

logger = logging.getLogger(__name__)

# Global engine and session factory
engine = None
SessionLocal = None


def create_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    """Build an engine plus session factory and make sure the tables exist."""
    db_engine = create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using them
        echo=False,  # Set to True for SQL query logging
        **engine_kwargs,
    )
    Base.metadata.create_all(bind=db_engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


def init_db(database_url: str) -> sessionmaker:
    """
    Initialize the database connection and create tables.

    Args:
        database_url: PostgreSQL connection URL

    Returns:
        The process-wide session factory
    """
    global engine, SessionLocal

    logger.info("Initializing database connection...")
    SessionLocal = create_session_factory(database_url)
    engine = SessionLocal.kw["bind"]
    logger.info("Database initialized successfully")
    return SessionLocal


@contextmanager
def session_scope(factory: sessionmaker):
    """
    Transactional scope around a series of operations on a given factory.

    Usage:
        with session_scope(factory) as session:
            session.query(Expense).first()
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def close_db():
    """Close database connection."""
    global engine, SessionLocal
    if engine:
        engine.dispose()
        logger.info("Database connection closed")
    engine = None
    SessionLocal = None
