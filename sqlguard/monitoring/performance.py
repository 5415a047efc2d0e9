"""Query performance metrics and connection pool health."""

import logging
import random as _random
import threading
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..database.models import PoolStats

logger = logging.getLogger(__name__)

MAX_QUERY_TEXT = 200
RECENT_WINDOW_MS = 5 * 60 * 1000
POOL_EVENT_WINDOW_MS = 10 * 60 * 1000
RECENT_SHARE = 0.8
SLOW_SHARE = 0.2
HIGH_ERROR_COUNT = 10
MAX_PENDING_REQUESTS = 5

_POOL_FIELDS = ("total_connections", "active_connections", "idle_connections", "pending_requests", "errors")


@dataclass
class MonitorConfig:
    """Tunables for the performance monitor."""

    enabled: bool = True
    max_metrics_history: int = 1000
    slow_query_threshold: float = 5000
    track_pool_metrics: bool = True
    sampling_rate: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "MonitorConfig":
        """Build the monitor configuration from application settings."""
        return cls(
            enabled=settings.enable_performance_monitoring,
            max_metrics_history=settings.max_metrics_history,
            slow_query_threshold=settings.slow_query_threshold_ms,
            track_pool_metrics=settings.track_pool_metrics,
            sampling_rate=settings.performance_sampling_rate,
        )


@dataclass
class QueryMetric:
    """One sampled execution. Completed once, then read-only."""

    id: str
    tool: str
    query: str
    database: str
    start_time: float
    end_time: Optional[float] = None
    duration_ms: Optional[float] = None
    status: str = "running"
    rows_affected: int = 0
    row_count: int = 0
    error: Optional[str] = None

    def is_slow(self, threshold: float) -> bool:
        return self.duration_ms is not None and self.duration_ms > threshold

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AggregateStats:
    """Running totals, updated in O(1) per completed query."""

    total_queries: int = 0
    slow_queries: int = 0
    total_query_time: float = 0.0
    avg_query_time: float = 0.0
    max_query_time: float = 0.0
    min_query_time: Optional[float] = None
    error_rate: float = 0.0

    def update(self, metric: QueryMetric, slow_threshold: float) -> None:
        self.total_queries += 1
        n = self.total_queries
        failed = 1 if metric.status == "error" else 0
        self.error_rate = (self.error_rate * (n - 1) + failed) / n

        duration = metric.duration_ms
        if duration is None:
            return
        self.total_query_time += duration
        self.avg_query_time = self.total_query_time / n
        self.max_query_time = max(self.max_query_time, duration)
        self.min_query_time = duration if self.min_query_time is None else min(self.min_query_time, duration)
        if duration > slow_threshold:
            self.slow_queries += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PoolHealth:
    """Derived health snapshot of the connection pool."""

    status: str
    issues: List[str] = field(default_factory=list)
    score: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _result_value(result: Any, name: str) -> int:
    if result is None:
        return 0
    if isinstance(result, Mapping):
        value = result.get(name, 0)
    else:
        value = getattr(result, name, 0)
    return value if isinstance(value, int) else 0


class PerformanceMonitor:
    """Records sampled executions and derives aggregate and pool-health statistics.

    All mutable state sits behind a single lock, so start/end calls from
    concurrent pipelines interleave safely. Aggregates are updated
    incrementally and never recomputed from the history list.
    """

    def __init__(self, config: Optional[MonitorConfig] = None,
                 random: Callable[[], float] = _random.random,
                 clock: Callable[[], float] = time.time):
        self.config = config or MonitorConfig()
        self._random = random
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Drop all recorded metrics."""
        with self._lock:
            self._queries: List[QueryMetric] = []
            self._index: Dict[str, QueryMetric] = {}
            self._connections: List[Dict[str, Any]] = []
            self._pool_stats = PoolStats()
            self._pool_updated: Optional[float] = None
            self.aggregates = AggregateStats()
            self.start_time = self._now()

    def _now(self) -> float:
        return self._clock() * 1000

    def start_query(self, tool: str, query: Optional[str], context: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        """Begin tracking an execution; returns None when not sampled."""
        if not self.config.enabled or self._random() >= self.config.sampling_rate:
            return None

        query = query or ""
        truncated = f"{query[:MAX_QUERY_TEXT]}..." if len(query) > MAX_QUERY_TEXT else query
        metric = QueryMetric(
            id=f"q_{uuid.uuid4().hex[:16]}",
            tool=tool,
            query=truncated,
            database=(context or {}).get("database") or "default",
            start_time=self._now(),
        )

        with self._lock:
            self._queries.append(metric)
            self._index[metric.id] = metric
            self._trim_query_history()

        return metric.id

    def end_query(self, query_id: Optional[str], result: Any = None, error: Optional[BaseException] = None,
                  duration_ms: Optional[float] = None) -> None:
        """Complete a tracked execution. No-op for unsampled or evicted ids."""
        if not self.config.enabled or query_id is None:
            return

        with self._lock:
            metric = self._index.get(query_id)
            if metric is None or metric.status != "running":
                return

            metric.end_time = self._now()
            metric.duration_ms = duration_ms if duration_ms is not None else metric.end_time - metric.start_time
            metric.status = "error" if error is not None else "completed"
            metric.error = str(error) if error is not None else None
            metric.rows_affected = _result_value(result, "rows_affected")
            metric.row_count = _result_value(result, "row_count")

            self.aggregates.update(metric, self.config.slow_query_threshold)
            slow = metric.is_slow(self.config.slow_query_threshold)

        if slow:
            logger.warning(
                f"Slow query detected: {metric.duration_ms:.0f}ms "
                f"(tool={metric.tool}, database={metric.database}, rows={metric.row_count}): {metric.query}"
            )

    def record_pool_metrics(self, stats: Union[PoolStats, Mapping[str, Any]]) -> None:
        """Replace the current pool counters with a fresh snapshot.

        Error counts are cumulative, so the larger of the stored and the
        reported value is kept.
        """
        if not self.config.enabled or not self.config.track_pool_metrics:
            return

        values = stats.to_dict() if isinstance(stats, PoolStats) else dict(stats)
        timestamp = self._now()

        with self._lock:
            current = self._pool_stats
            updates = {name: int(values[name]) for name in _POOL_FIELDS if name in values}
            updates["errors"] = max(current.errors, updates.get("errors", 0))
            self._pool_stats = replace(current, **updates)
            self._pool_updated = timestamp
            self._connections.append({"timestamp": timestamp, "event": "pool", **self._pool_stats.to_dict()})
            self._trim_connection_history()

    def record_connection_event(self, event: str, details: Optional[Mapping[str, Any]] = None) -> None:
        """Record a connect/disconnect/error/retry event."""
        if not self.config.enabled:
            return

        record = {"id": f"e_{uuid.uuid4().hex[:16]}", **(details or {}), "event": event, "timestamp": self._now()}

        with self._lock:
            self._connections.append(record)
            self._trim_connection_history()

            stats = self._pool_stats
            if event == "connect":
                stats.total_connections += 1
                stats.active_connections += 1
            elif event == "disconnect":
                stats.active_connections = max(0, stats.active_connections - 1)
            elif event == "error":
                stats.errors += 1

    def get_stats(self) -> Dict[str, Any]:
        """Overall, recent (last 5 minutes) and pool statistics."""
        if not self.config.enabled:
            return {"enabled": False}

        now = self._now()
        with self._lock:
            recent = [q for q in self._queries if q.start_time > now - RECENT_WINDOW_MS and q.status != "running"]
            return {
                "enabled": True,
                "uptime": now - self.start_time,
                "overall": self.aggregates.to_dict(),
                "recent": self._calculate_query_stats(recent),
                "pool": self._pool_stats.to_dict(),
                "monitoring": {
                    "total_queries_tracked": len(self._queries),
                    "total_connection_events": len(self._connections),
                    "sampling_rate": self.config.sampling_rate,
                    "slow_query_threshold": self.config.slow_query_threshold,
                },
            }

    def get_query_stats(self, limit: int = 50) -> Dict[str, Any]:
        """Most recent finished queries with a per-tool breakdown."""
        if not self.config.enabled:
            return {"enabled": False}

        threshold = self.config.slow_query_threshold
        with self._lock:
            finished = [q for q in self._queries if q.status in ("completed", "error")]
        finished.sort(key=lambda q: q.start_time, reverse=True)
        finished = finished[:max(limit, 0)]

        by_tool: Dict[str, Dict[str, Any]] = {}
        for q in finished:
            tool = by_tool.setdefault(q.tool, {"count": 0, "total_time": 0.0, "errors": 0, "slow_queries": 0})
            tool["count"] += 1
            tool["total_time"] += q.duration_ms or 0
            if q.status == "error":
                tool["errors"] += 1
            if q.is_slow(threshold):
                tool["slow_queries"] += 1

        for tool in by_tool.values():
            tool["avg_time"] = tool["total_time"] / tool["count"]
            tool["error_rate"] = tool["errors"] / tool["count"] * 100
            tool["slow_query_rate"] = tool["slow_queries"] / tool["count"] * 100

        return {
            "enabled": True,
            "queries": [
                {
                    "tool": q.tool,
                    "duration": q.duration_ms,
                    "status": q.status,
                    "row_count": q.row_count,
                    "timestamp": q.start_time,
                }
                for q in finished
            ],
            "by_tool": by_tool,
            "slow_queries": [q.to_dict() for q in finished if q.is_slow(threshold)],
        }

    def get_pool_stats(self) -> Dict[str, Any]:
        """Current pool counters, recent event rates and health."""
        if not self.config.enabled or not self.config.track_pool_metrics:
            return {"enabled": False}

        now = self._now()
        with self._lock:
            recent = [c for c in self._connections if c["timestamp"] > now - POOL_EVENT_WINDOW_MS]
            current = self._pool_stats.to_dict()
            current["updated_at"] = self._pool_updated

        minutes = POOL_EVENT_WINDOW_MS / 60000
        events = Counter(c.get("event") for c in recent)
        return {
            "enabled": True,
            "current": current,
            "recent": {
                "connection_rate": events["connect"] / minutes,
                "error_rate": events["error"] / minutes,
                "retry_rate": events["retry"] / minutes,
                "total_events": len(recent),
            },
            "health": self.assess_pool_health().to_dict(),
        }

    def assess_pool_health(self) -> PoolHealth:
        """Score the pool from 0 to 100 and flag issues."""
        with self._lock:
            stats = replace(self._pool_stats)

        issues = []
        critical = False
        total = stats.total_connections
        active = stats.active_connections

        if stats.errors > HIGH_ERROR_COUNT:
            issues.append("High error count detected")
        if total > 0 and active >= total * 0.9:
            issues.append("Connection pool near capacity")
        if stats.pending_requests > MAX_PENDING_REQUESTS:
            issues.append("High number of pending requests")
        if active == 0 and total > 0:
            issues.append("No active connections available")
            critical = True

        score = 100 - 20 * len(issues)
        if total > 0:
            utilization = active / total
            if utilization > 0.8:
                score -= 10
            if utilization > 0.9:
                score -= 10
        if stats.errors > 0:
            score -= min(stats.errors * 2, 30)
        score = max(0, min(100, score))

        if critical:
            status = "critical"
        elif issues:
            status = "warning"
        else:
            status = "healthy"
        return PoolHealth(status=status, issues=issues, score=score)

    def generate_report(self) -> Dict[str, Any]:
        """Summary, detail and recommendations in one document."""
        stats = self.get_stats()
        if not stats["enabled"]:
            return {"enabled": False}

        query_stats = self.get_query_stats()
        pool_stats = self.get_pool_stats()
        overall = stats["overall"]
        pool_health = pool_stats.get("health", {}).get("status", "unknown")

        return {
            "timestamp": self._now(),
            "uptime": stats["uptime"],
            "summary": {
                "total_queries": overall["total_queries"],
                "avg_query_time": round(overall["avg_query_time"]),
                "slow_queries": overall["slow_queries"],
                "error_rate": round(overall["error_rate"] * 100, 2),
                "pool_health": pool_health,
            },
            "detailed": {
                "overall": overall,
                "recent": stats["recent"],
                "pool": pool_stats,
                "queries": query_stats,
            },
            "recommendations": self._recommendations(overall, query_stats, pool_stats),
        }

    def update_config(self, **changes: Any) -> None:
        """Apply configuration changes; unknown keys raise TypeError."""
        self.config = replace(self.config, **changes)

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)

    def _recommendations(self, overall, query_stats, pool_stats) -> List[Dict[str, Any]]:
        recommendations = []

        if overall["avg_query_time"] > 1000:
            recommendations.append({
                "type": "performance",
                "priority": "high",
                "message": "Average query time is high. Consider query optimization or indexing.",
                "metric": "avg_query_time",
                "value": overall["avg_query_time"],
            })

        if overall["error_rate"] > 0.05:
            recommendations.append({
                "type": "reliability",
                "priority": "critical",
                "message": "High error rate detected. Check query validation and database connectivity.",
                "metric": "error_rate",
                "value": overall["error_rate"],
            })

        health = pool_stats.get("health") if pool_stats.get("enabled") else None
        if health and health["status"] != "healthy":
            recommendations.append({
                "type": "infrastructure",
                "priority": "high" if health["status"] == "critical" else "medium",
                "message": "Connection pool health issues detected.",
                "issues": health["issues"],
            })

        for tool, tool_stats in query_stats.get("by_tool", {}).items():
            if tool_stats["avg_time"] > 2000:
                recommendations.append({
                    "type": "optimization",
                    "priority": "medium",
                    "message": f"Tool '{tool}' has high average execution time.",
                    "metric": "tool_avg_time",
                    "tool": tool,
                    "value": tool_stats["avg_time"],
                })

        return recommendations

    def _calculate_query_stats(self, queries: List[QueryMetric]) -> Dict[str, Any]:
        if not queries:
            return {
                "count": 0,
                "avg_duration": 0,
                "max_duration": 0,
                "min_duration": 0,
                "error_rate": 0,
                "slow_query_rate": 0,
            }

        durations = [q.duration_ms for q in queries if q.duration_ms is not None]
        errors = sum(1 for q in queries if q.status == "error")
        slow = sum(1 for q in queries if q.is_slow(self.config.slow_query_threshold))
        return {
            "count": len(queries),
            "avg_duration": sum(durations) / len(durations) if durations else 0,
            "max_duration": max(durations, default=0),
            "min_duration": min(durations, default=0),
            "error_rate": errors / len(queries) * 100,
            "slow_query_rate": slow / len(queries) * 100,
        }

    def _trim_query_history(self) -> None:
        # Caller holds the lock.
        budget = self.config.max_metrics_history
        if len(self._queries) <= budget:
            return

        threshold = self.config.slow_query_threshold
        recent_budget = max(1, int(budget * RECENT_SHARE))
        slow_budget = int(budget * SLOW_SHARE)

        recent = self._queries[-recent_budget:]
        slow = [q for q in self._queries if q.is_slow(threshold)]
        slow = slow[-slow_budget:] if slow_budget else []

        merged = {q.id: q for q in slow + recent}
        kept = sorted(merged.values(), key=lambda q: q.start_time)[-budget:]
        self._queries = kept
        self._index = {q.id: q for q in kept}

    def _trim_connection_history(self) -> None:
        budget = self.config.max_metrics_history
        if len(self._connections) > budget:
            self._connections = self._connections[-budget:]
