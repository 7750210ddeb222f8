"""
============================================================================
Agent Commerce Escrow v1.0.0
Database Session - SQLAlchemy Engine Construction
============================================================================

Reliability Level: L6 Critical
Input Constraints: SQLAlchemy URL (SQLite for single-node, PostgreSQL otherwise)
Side Effects: Database connections

Engines are built explicitly by the application factory, never at import
time, so tests can point the store at a temporary SQLite file.

============================================================================
"""

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from commerce.errors import EscrowErrorCode

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./agent_commerce.db"


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Database URL from ESCROW_DATABASE_URL (default: local SQLite file).

    Side Effects: Reads from environment (and .env)
    """
    load_dotenv()
    return os.getenv("ESCROW_DATABASE_URL", DEFAULT_DATABASE_URL)


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

def create_database_engine(database_url: str) -> Engine:
    """
    Build an engine for the trade store.

    SQLite gets WAL journaling and a busy timeout on every connection; other
    backends get a pre-pinged connection pool.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
        )
        event.listen(engine, "connect", _configure_sqlite)
    else:
        engine = create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
            execution_options={"isolation_level": "READ COMMITTED"},
        )

    logger.info(f"[DATABASE] Engine created | backend={engine.dialect.name}")
    return engine


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(engine: Engine) -> bool:
    """
    Verify database connectivity.

    Returns:
        True if the database answered, False otherwise (logged)
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"[{EscrowErrorCode.DB_PERSISTENCE_FAIL}] Database health check failed: {e}")
        return False
