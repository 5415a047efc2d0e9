"""Database models and data structures."""

from typing import List, Dict, Any, Optional
from dataclasses import dataclass, asdict
from datetime import datetime


@dataclass
class QueryResult:
    """Represents the result of a SQL statement execution."""

    columns: List[str]
    rows: List[List[Any]]
    row_count: int
    rows_affected: int
    execution_time: float
    query: str
    timestamp: datetime
    database: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the result to a dictionary."""
        return {
            "columns": self.columns,
            "rows": self.rows,
            "row_count": self.row_count,
            "rows_affected": self.rows_affected,
            "execution_time": self.execution_time,
            "query": self.query,
            "timestamp": self.timestamp.isoformat(),
            "database": self.database,
        }


@dataclass
class PoolStats:
    """Point-in-time view of the connection pool."""

    total_connections: int = 0
    active_connections: int = 0
    idle_connections: int = 0
    pending_requests: int = 0
    errors: int = 0

    @property
    def utilization(self) -> float:
        """Share of the pool capacity currently open."""
        if self.total_connections <= 0:
            return 0.0
        return self.active_connections / self.total_connections

    def to_dict(self) -> Dict[str, Any]:
        """Convert the stats to a dictionary."""
        return asdict(self)
