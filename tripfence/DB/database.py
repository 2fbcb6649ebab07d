# tripfence/DB/database.py

"""
Database Utilities Module

Connectivity check and schema helpers used by the application lifespan,
the /health endpoint and the test suite.

In production the schema is managed with Alembic (alembic upgrade head).
create_all_tables() exists for local development and tests.
"""

from typing import Optional
from sqlalchemy import text
from sqlalchemy.engine import Engine

from tripfence.DB.session import engine as default_engine, SessionLocal


def check_db_connection() -> bool:
    """
    Test database connectivity with a simple query.

    Returns:
        bool: True if database is reachable and responsive, False otherwise

    Notes:
        - Does not raise (returns False on error)
        - Logs error details to console for debugging
    """
    try:
        with SessionLocal() as db:
            value = db.execute(text("SELECT 1")).scalar()
            return value == 1
    except Exception as e:
        print(f"[DB] Connection test failed: {e}")
        return False


def create_all_tables(bind: Optional[Engine] = None):
    """
    Create all database tables defined in models.

    WARNING: Only use in development/testing environments.
    In production, use Alembic migrations instead.

    Idempotent: existing tables are skipped.
    """
    from tripfence.DB.base import Base

    print("[DB] Creating all tables...")
    Base.metadata.create_all(bind=bind or default_engine)
    print("[DB] Tables created successfully")


__all__ = [
    "check_db_connection",
    "create_all_tables"
]
