"""
Shared Database Configuration

One engine and session factory for the ledger, configured from the
environment. SQLite is for development; production runs on PostgreSQL,
where row locks and statement timeouts are real.
"""

import os
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool
from typing import Generator
import logging

logger = logging.getLogger(__name__)

SQLALCHEMY_DATABASE_URL = os.getenv("SQLALCHEMY_DATABASE_URL", "sqlite:///./ledger.db")

# Heroku-style URLs
if SQLALCHEMY_DATABASE_URL.startswith("postgres://"):
    SQLALCHEMY_DATABASE_URL = SQLALCHEMY_DATABASE_URL.replace("postgres://", "postgresql://", 1)


def build_engine(url: str = SQLALCHEMY_DATABASE_URL):
    if url.startswith("sqlite"):
        ledger_engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))},
            poolclass=StaticPool,
            echo=os.getenv("SQL_ECHO", "0") == "1",
        )

        @event.listens_for(ledger_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            # Off by default in SQLite
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return ledger_engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
        echo=os.getenv("SQL_ECHO", "0") == "1",
    )


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, rolled back on error."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind=None):
    """Create the ledger tables and store-level guards. Safe to call on every startup."""
    import models
    from db_constraints import create_ledger_constraints

    bind = bind or engine
    models.Base.metadata.create_all(bind=bind)
    create_ledger_constraints(bind)
    logger.info(f"Ledger schema ready on {bind.dialect.name}")
