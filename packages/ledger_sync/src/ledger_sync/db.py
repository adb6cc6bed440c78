import functools

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from ledger_sync.persistence.models import LedgerBase
from ledger_sync.settings import get_settings


@functools.lru_cache()
def get_engine():
    """
    Get SQLAlchemy engine (cached).

    The local database is created on first use; snapshot and outbox tables
    are created if missing.
    """
    settings = get_settings()
    engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=False)
    LedgerBase.metadata.create_all(engine)
    return engine


@functools.lru_cache()
def get_sessionmaker():
    """Get SQLAlchemy sessionmaker (cached)."""
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Session:
    """
    Open a long-lived session for the running process.

    The engine is single-threaded (one event loop), so one session is shared
    by the snapshot store and the outbox. Callers close it on shutdown.
    """
    SessionLocal = get_sessionmaker()
    return SessionLocal()
