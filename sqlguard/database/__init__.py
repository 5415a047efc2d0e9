"""Database connection and management module."""

from .connection import ConnectionManager, get_connection_manager
from .models import PoolStats, QueryResult

__all__ = ["ConnectionManager", "get_connection_manager", "PoolStats", "QueryResult"]
