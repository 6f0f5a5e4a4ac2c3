"""
Database Module
"""
from .connection import check_database_health, close_database, get_session_factory, init_database
from .models import Base

__all__ = [
    "init_database",
    "close_database",
    "get_session_factory",
    "check_database_health",
    "Base",
]
