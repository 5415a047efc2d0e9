"""Performance and pool health monitoring."""

from .performance import AggregateStats, MonitorConfig, PerformanceMonitor, PoolHealth, QueryMetric

__all__ = ["AggregateStats", "MonitorConfig", "PerformanceMonitor", "PoolHealth", "QueryMetric"]
