"""
tripfence/DB/session.py
======================================
Database Session Configuration Module
======================================

This module establishes the SQLAlchemy database connection and session
factory used by the repositories and the processing pipeline.

Architecture:
------------
- Engine: Manages the database connection pool and dialect
- SessionLocal: Factory for creating database sessions
- Configuration: Sourced from centralized settings module

Usage Example:
-------------
    from tripfence.DB.session import SessionLocal

    with SessionLocal() as db:
        trips = get_trips_by_device(db, "TRUCK-7")

Session Configuration:
---------------------
- autocommit=False: Transactions must be explicitly committed
- autoflush=False: Changes are not flushed before queries
- expire_on_commit=False: ORM rows stay readable after commit, so
  handlers can build events from rows they just committed

Note:
    The processing pipeline accepts any session factory, which is how the
    test suite swaps in an in-memory SQLite engine.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from tripfence.Core.config import settings


def build_engine(database_url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared across pipeline worker threads, so the
    same-thread check is disabled for that dialect, and writers wait up to
    30s for the file lock instead of failing fast.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


# ============================================================
# DATABASE ENGINE CONFIGURATION
# ============================================================
engine = build_engine(settings.DATABASE_URL)


# ============================================================
# SESSION FACTORY CONFIGURATION
# ============================================================
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)
