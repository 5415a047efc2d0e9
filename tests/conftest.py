"""Pytest configuration and shared fixtures."""

import pytest
from unittest.mock import MagicMock, Mock
from datetime import datetime

from sqlguard.config.settings import Settings
from sqlguard.database.models import PoolStats, QueryResult
from sqlguard.monitoring.performance import MonitorConfig, PerformanceMonitor
from sqlguard.security.policy import SecurityPolicy


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """Keep real environment variables and .env files out of settings under test."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings():
    """Password-authenticated settings with fast retries."""
    return Settings(
        _env_file=None,
        db_host="db.internal",
        db_port=3306,
        db_name="appdb",
        db_user="app",
        db_password="s3cr3t-pw",
        db_max_retries=3,
        db_retry_delay_ms=1000,
    )


@pytest.fixture
def integrated_settings():
    """Settings without credentials, which selects integrated authentication."""
    return Settings(
        _env_file=None,
        db_host="db.internal",
        db_name="appdb",
        db_domain="CORP.EXAMPLE.COM",
    )


@pytest.fixture
def read_only_policy():
    return SecurityPolicy()


@pytest.fixture
def write_policy():
    """DML allowed, DDL still blocked."""
    return SecurityPolicy(read_only=False, allow_destructive=True, allow_schema_changes=False)


@pytest.fixture
def monitor():
    return PerformanceMonitor(MonitorConfig(slow_query_threshold=5000))


@pytest.fixture
def sample_query_result():
    """Create a sample successful query result."""
    return QueryResult(
        columns=['id', 'name', 'email'],
        rows=[
            [1, 'John Doe', 'john@example.com'],
            [2, 'Jane Smith', 'jane@example.com'],
        ],
        row_count=2,
        rows_affected=0,
        execution_time=0.012,
        query="SELECT id, name, email FROM users LIMIT 2",
        timestamp=datetime(2025, 1, 15, 12, 0, 0),
        database="appdb",
    )


@pytest.fixture
def mock_connection_manager(sample_query_result):
    """Connection manager double whose acquire() yields a mock connection."""
    manager = MagicMock()
    manager.connection = Mock(name="connection")
    manager.acquire.return_value.__enter__.return_value = manager.connection
    manager.acquire.return_value.__exit__.return_value = False
    manager.run.return_value = sample_query_result
    manager.pool_stats.return_value = PoolStats(total_connections=10, active_connections=2, idle_connections=1)
    return manager


@pytest.fixture(autouse=True)
def reset_global_instances():
    """Reset global instances before each test."""
    import sqlguard.config.settings
    import sqlguard.database.connection
    import sqlguard.pipeline

    sqlguard.config.settings._settings = None
    sqlguard.database.connection._connection_manager = None
    sqlguard.pipeline._pipeline = None

    yield

    sqlguard.config.settings._settings = None
    sqlguard.database.connection._connection_manager = None
    sqlguard.pipeline._pipeline = None
