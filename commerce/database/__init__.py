"""
Database module - SQLAlchemy engine construction and health check.
"""

from commerce.database.session import (
    get_database_url,
    create_database_engine,
    check_database_connection,
)

__all__ = [
    "get_database_url",
    "create_database_engine",
    "check_database_connection",
]
