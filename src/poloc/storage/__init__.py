"""
Durable storage for challenge state (SQLAlchemy).
"""

from poloc.storage.database import Base, DATABASE_URL, create_db_engine, create_session_factory, init_db
from poloc.storage.models import ChallengeRecord
from poloc.storage.sql_repository import SqlChallengeRepository

__all__ = [
    "Base",
    "DATABASE_URL",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "ChallengeRecord",
    "SqlChallengeRepository",
]
