"""Ledger store engine and sessions

Every ledger operation receives one Session and commits it exactly once.
"""
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from credit_ledger.core.config import settings
from credit_ledger.models.base import Base


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # Local runs only; SQLite ignores FOR UPDATE
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency yielding a request-scoped session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create missing tables (deployments run the Alembic migration instead)"""
    Base.metadata.create_all(bind=engine)
