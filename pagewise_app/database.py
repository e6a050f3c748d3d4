"""
================================================================================
Pagewise - Database Configuration
================================================================================
SQLAlchemy database connection and session management.

USAGE:
    from pagewise_app.database import get_db_session, init_database

    # Initialize database (create tables)
    init_database()

    # Use in storage code
    with get_db_session() as session:
        row = session.get(SourceBehaviorRecord, "mangadex")

CONFIGURATION:
    Set environment variable: DATABASE_URL
    Fallback: SQLite file next to the package
================================================================================
"""

import os
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from .models import Base

# Setup logging
logger = logging.getLogger(__name__)


# =============================================================================
# DATABASE CONFIGURATION
# =============================================================================

def get_database_url() -> str:
    """
    Get database URL from environment or use SQLite fallback.

    Priority:
      1. DATABASE_URL environment variable
      2. Fallback to SQLite (pagewise.db)
    """
    db_url = os.environ.get('DATABASE_URL')

    if db_url:
        # Handle Heroku's postgres:// -> postgresql://
        if db_url.startswith('postgres://'):
            db_url = db_url.replace('postgres://', 'postgresql://', 1)
        return db_url

    sqlite_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'pagewise.db')
    return f'sqlite:///{sqlite_path}'


def create_db_engine(db_url: Optional[str] = None):
    """
    Create SQLAlchemy engine.

    SQLite file: WAL mode for concurrent readers.
    SQLite memory: single shared connection so worker threads see one database.
    PostgreSQL: connection pooling.
    """
    db_url = db_url or get_database_url()
    is_sqlite = db_url.startswith('sqlite:')

    if is_sqlite and db_url in ('sqlite://', 'sqlite:///:memory:'):
        engine = create_engine(
            db_url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    elif is_sqlite:
        engine = create_engine(
            db_url,
            echo=False,
            connect_args={
                'check_same_thread': False,  # Storage runs in worker threads
                'timeout': 20  # Wait up to 20s for locks
            }
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
    else:
        engine = create_engine(
            db_url,
            echo=False,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,    # Verify connections before use
            pool_recycle=3600,
        )

    logger.info(f"Database engine created: {'SQLite' if is_sqlite else db_url.split(':', 1)[0]}")
    return engine


# Global engine and session factory
_engine = None
_SessionLocal = None


def get_engine():
    """Get or create the global database engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def get_session_factory():
    """Get or create the global session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = make_session_factory(get_engine())
    return _SessionLocal


def make_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False  # Keep objects usable after commit
    )


def configure_database(db_url: str):
    """Point the global engine at `db_url` (used by tests and run.py)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = create_db_engine(db_url)
    _SessionLocal = make_session_factory(_engine)
    return _engine


# =============================================================================
# SESSION MANAGEMENT
# =============================================================================

@contextmanager
def get_db_session(session_factory=None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Auto-commits on success, rolls back and re-raises on exceptions.
    """
    SessionLocal = session_factory or get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================

def init_database(drop_existing: bool = False, engine=None):
    """
    Initialize database - create all tables.

    Args:
        drop_existing: If True, drop all tables first (DANGEROUS!)
    """
    engine = engine or get_engine()

    if drop_existing:
        logger.warning("⚠️ DROPPING ALL TABLES - THIS WILL DELETE ALL DATA!")
        Base.metadata.drop_all(engine)

    Base.metadata.create_all(engine)
    logger.info("✅ Database tables ready")


def check_database_connection() -> bool:
    """Test database connection."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False
