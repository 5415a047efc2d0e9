"""Tests for database connection module."""

import time

import pytest
from unittest.mock import Mock, MagicMock, call, patch
from datetime import datetime

from sqlalchemy.exc import OperationalError, ProgrammingError

from sqlguard.config.settings import Settings
from sqlguard.database.connection import (
    ConnectionManager,
    get_connection_manager,
    quote_identifier,
)
from sqlguard.database.models import PoolStats, QueryResult
from sqlguard.errors import DatabaseConnectionError


def operational_error(message="Can't connect to MySQL server on 'db.internal:3306'"):
    return OperationalError("SELECT 1", None, Exception(message))


@pytest.fixture
def engine():
    """Engine double whose connect() succeeds."""
    engine = MagicMock(name="engine")
    engine.pool.checkedout.return_value = 0
    engine.pool.checkedin.return_value = 1
    return engine


def build_manager(settings, engine, **kwargs):
    kwargs.setdefault("sleep", Mock())
    kwargs.setdefault("on_event", Mock())
    return ConnectionManager(settings, engine_factory=Mock(return_value=engine), **kwargs)


class TestConnectionConfig:
    """Test cases for building driver and pool configuration."""

    def test_password_authentication(self, settings):
        """Test password mode never carries the Kerberos plugin."""
        config = ConnectionManager(settings).build_connection_config()

        assert config["url"].username == "app"
        assert config["url"].password == "s3cr3t-pw"
        assert "auth_plugin" not in config["connect_args"]
        assert "kerberos_auth_mode" not in config["connect_args"]
        assert config["connect_args"]["connection_timeout"] == 10
        assert config["connect_args"]["read_timeout"] == 30
        assert config["connect_args"]["charset"] == "utf8mb4"

    def test_integrated_authentication(self, integrated_settings):
        """Test integrated mode uses the Kerberos plugin and no password."""
        with patch("sqlguard.config.settings.getpass.getuser", return_value="alice"), \
                patch("sqlguard.database.connection.sys.platform", "linux"):
            config = ConnectionManager(integrated_settings).build_connection_config()

        assert config["url"].username == "alice@CORP.EXAMPLE.COM"
        assert config["url"].password is None
        assert config["connect_args"]["auth_plugin"] == "authentication_kerberos_client"
        assert config["connect_args"]["kerberos_auth_mode"] == "GSSAPI"
        assert "password" not in config["connect_args"]

    def test_integrated_authentication_on_windows(self, integrated_settings):
        """Test integrated mode uses SSPI on Windows."""
        with patch("sqlguard.database.connection.sys.platform", "win32"):
            config = ConnectionManager(integrated_settings).build_connection_config()

        assert config["connect_args"]["kerberos_auth_mode"] == "SSPI"

    def test_certificate_verified_for_production_hosts(self, settings):
        """Test non-development hosts verify the server certificate."""
        connect_args = ConnectionManager(settings).build_connection_config()["connect_args"]

        assert connect_args["ssl_verify_cert"] is True
        assert connect_args["ssl_verify_identity"] is True
        assert "ssl_disabled" not in connect_args

    def test_certificate_trusted_for_dev_hosts(self):
        """Test development hosts skip certificate verification."""
        settings = Settings(_env_file=None, db_host="localhost", db_user="app", db_ssl_ca="/etc/ca.pem")

        connect_args = ConnectionManager(settings).build_connection_config()["connect_args"]

        assert "ssl_verify_cert" not in connect_args
        assert connect_args["ssl_ca"] == "/etc/ca.pem"

    def test_encryption_disabled(self, settings):
        """Test DB_ENCRYPT=false disables TLS."""
        settings = settings.model_copy(update={"db_encrypt": False})

        connect_args = ConnectionManager(settings).build_connection_config()["connect_args"]

        assert connect_args["ssl_disabled"] is True
        assert "ssl_verify_cert" not in connect_args

    def test_pool_bounds(self, settings):
        """Test pool settings map onto the engine's pool arguments."""
        settings = settings.model_copy(update={
            "db_pool_min": 2,
            "db_pool_max": 8,
            "db_pool_idle_timeout_ms": 45000,
            "db_connect_timeout_ms": 2500,
        })

        pool = ConnectionManager(settings).build_connection_config()["pool"]

        assert pool == {
            "pool_size": 2,
            "max_overflow": 6,
            "pool_recycle": 45,
            "pool_timeout": 2.5,
            "pool_pre_ping": True,
        }

    def test_pool_min_zero_keeps_one_slot(self, settings):
        """Test a zero minimum still yields a usable pool of the configured maximum."""
        pool = ConnectionManager(settings).build_connection_config()["pool"]

        assert pool["pool_size"] == 1
        assert pool["max_overflow"] == 9

    def test_pool_min_above_max_is_clamped(self, settings):
        """Test the pool never exceeds its maximum."""
        settings = settings.model_copy(update={"db_pool_min": 20, "db_pool_max": 5})

        pool = ConnectionManager(settings).build_connection_config()["pool"]

        assert pool["pool_size"] == 5
        assert pool["max_overflow"] == 0


class TestConnect:
    """Test cases for establishing the pool with retries."""

    def test_connect_success(self, settings, engine):
        """Test a first-attempt success creates the engine once."""
        manager = build_manager(settings, engine)

        assert manager.connect() is engine
        assert manager.is_connected is True
        manager._engine_factory.assert_called_once()
        args, kwargs = manager._engine_factory.call_args
        assert args[0] == settings.database_url
        assert kwargs["pool_pre_ping"] is True
        manager._sleep.assert_not_called()
        manager.on_event.assert_called_once_with("connect", {"attempt": 1, "auth_mode": "password"})

    def test_connect_is_idempotent(self, settings, engine):
        """Test a connected manager does not reconnect."""
        manager = build_manager(settings, engine)

        manager.connect()
        manager.connect()

        assert engine.connect.call_count == 1

    def test_retry_with_exponential_backoff(self, settings, engine):
        """Test two failures then success waits base and twice base."""
        engine.connect.side_effect = [operational_error(), operational_error(), MagicMock()]
        manager = build_manager(settings, engine)

        manager.connect()

        assert manager.is_connected is True
        assert manager._sleep.call_args_list == [call(1.0), call(2.0)]
        events = [c.args[0] for c in manager.on_event.call_args_list]
        assert events == ["error", "retry", "error", "retry", "connect"]

    def test_retry_waits_real_time(self, settings, engine):
        """Test the elapsed time covers both backoff waits."""
        settings = settings.model_copy(update={"db_retry_delay_ms": 20})
        engine.connect.side_effect = [operational_error(), operational_error(), MagicMock()]
        manager = build_manager(settings, engine, sleep=time.sleep)

        started = time.monotonic()
        manager.connect()
        elapsed = time.monotonic() - started

        assert elapsed >= 0.02 + 0.04
        assert manager.is_connected is True

    def test_retry_exhaustion(self, settings, engine):
        """Test an always-failing connection raises after exactly max_retries attempts."""
        engine.connect.side_effect = operational_error(
            "Access denied for user 'app' (using password: s3cr3t-pw)"
        )
        manager = build_manager(settings, engine)

        with pytest.raises(DatabaseConnectionError) as exc_info:
            manager.connect()

        error = exc_info.value
        assert error.attempts == 3
        assert "3 attempts" in error.message
        assert "s3cr3t-pw" not in error.message
        assert engine.connect.call_count == 3
        assert manager._sleep.call_count == 2
        engine.dispose.assert_called_once()
        assert manager.is_connected is False
        assert manager.pool_stats() == PoolStats()

    def test_driver_errors_are_retried(self, settings, engine):
        """Test socket-level errors are retried like driver errors."""
        engine.connect.side_effect = [ConnectionRefusedError("refused"), MagicMock()]
        manager = build_manager(settings, engine)

        manager.connect()

        assert manager.is_connected is True
        manager._sleep.assert_called_once_with(1.0)

    def test_failing_event_handler_is_ignored(self, settings, engine):
        """Test a broken event callback never fails the connection."""
        manager = build_manager(settings, engine, on_event=Mock(side_effect=RuntimeError("boom")))

        assert manager.connect() is engine


class TestAcquireAndRun:
    """Test cases for checking out connections and running statements."""

    def test_acquire_yields_and_releases(self, settings, engine):
        """Test the pooled connection is closed after the block."""
        manager = build_manager(settings, engine)
        pooled = MagicMock(name="pooled")
        engine.connect.side_effect = [MagicMock(), pooled]

        with manager.acquire() as connection:
            assert connection is pooled

        pooled.close.assert_called_once()

    def test_acquire_releases_on_error(self, settings, engine):
        """Test the connection is returned to the pool when the block raises."""
        manager = build_manager(settings, engine)
        pooled = MagicMock(name="pooled")
        engine.connect.side_effect = [MagicMock(), pooled]

        with pytest.raises(RuntimeError):
            with manager.acquire():
                raise RuntimeError("statement failed")

        pooled.close.assert_called_once()

    def test_acquire_failure(self, settings, engine):
        """Test a checkout failure surfaces as a connection error."""
        manager = build_manager(settings, engine)
        engine.connect.side_effect = [MagicMock(), operational_error("QueuePool limit reached")]

        with pytest.raises(DatabaseConnectionError):
            with manager.acquire():
                pass

        assert manager.is_connected is False
        event, details = manager.on_event.call_args.args
        assert event == "error"
        assert details["stage"] == "acquire"

    def test_run_returns_rows(self, settings, engine):
        """Test a row-returning statement."""
        manager = build_manager(settings, engine)
        connection = MagicMock()
        cursor = connection.execution_options.return_value.exec_driver_sql.return_value
        cursor.returns_rows = True
        cursor.keys.return_value = ["id", "name"]
        cursor.fetchall.return_value = [(1, "alice"), (2, "bob")]

        result = manager.run(connection, "SELECT id, name FROM users")

        assert isinstance(result, QueryResult)
        assert result.columns == ["id", "name"]
        assert result.rows == [[1, "alice"], [2, "bob"]]
        assert result.row_count == 2
        assert result.rows_affected == 0
        assert result.database == "appdb"
        connection.execution_options.assert_called_once_with(no_parameters=True)
        connection.execution_options.return_value.exec_driver_sql.assert_called_once_with(
            "SELECT id, name FROM users"
        )
        connection.commit.assert_called_once()
        connection.exec_driver_sql.assert_not_called()

    def test_run_returns_rows_affected(self, settings, engine):
        """Test a data-modifying statement reports affected rows."""
        manager = build_manager(settings, engine)
        connection = MagicMock()
        cursor = connection.execution_options.return_value.exec_driver_sql.return_value
        cursor.returns_rows = False
        cursor.rowcount = 3

        result = manager.run(connection, "DELETE FROM sessions")

        assert result.rows_affected == 3
        assert result.rows == []
        assert result.columns == []

    def test_run_negative_rowcount(self, settings, engine):
        """Test an unknown row count is reported as zero."""
        manager = build_manager(settings, engine)
        connection = MagicMock()
        cursor = connection.execution_options.return_value.exec_driver_sql.return_value
        cursor.returns_rows = False
        cursor.rowcount = -1

        assert manager.run(connection, "SET @a = 1").rows_affected == 0

    def test_run_switches_and_restores_database(self, settings, engine):
        """Test a target database is selected and the default restored."""
        manager = build_manager(settings, engine)
        connection = MagicMock()
        connection.execution_options.return_value.exec_driver_sql.return_value.returns_rows = True

        result = manager.run(connection, "SELECT 1", database="reporting")

        assert connection.exec_driver_sql.call_args_list == [
            call("USE `reporting`"),
            call("USE `appdb`"),
        ]
        assert result.database == "reporting"

    def test_run_invalidates_without_default_database(self, engine):
        """Test a connection with no default to restore is discarded."""
        settings = Settings(_env_file=None, db_user="app")
        manager = build_manager(settings, engine)
        connection = MagicMock()

        manager.run(connection, "SELECT 1", database="reporting")

        connection.invalidate.assert_called_once()

    def test_run_restores_database_on_failure(self, settings, engine):
        """Test the default database is restored even when the statement fails."""
        manager = build_manager(settings, engine)
        connection = MagicMock()
        connection.execution_options.return_value.exec_driver_sql.side_effect = ProgrammingError(
            "SELECT * FROM missing", None, Exception("Table 'missing' doesn't exist")
        )

        with pytest.raises(ProgrammingError):
            manager.run(connection, "SELECT * FROM missing", database="reporting")

        connection.exec_driver_sql.assert_called_with("USE `appdb`")
        connection.commit.assert_not_called()

    def test_run_rejects_invalid_database_name(self, settings, engine):
        """Test an invalid database name is rejected before anything runs."""
        manager = build_manager(settings, engine)
        connection = MagicMock()

        with pytest.raises(ValueError):
            manager.run(connection, "SELECT 1", database="x" * 65)

        connection.execution_options.assert_not_called()

    def test_test_connection_success(self, settings, engine):
        """Test successful connection test."""
        manager = build_manager(settings, engine)

        assert manager.test_connection() is True

    def test_test_connection_failure(self, settings, engine):
        """Test connection test failure."""
        engine.connect.side_effect = operational_error()
        manager = build_manager(settings, engine)

        assert manager.test_connection() is False


class TestPoolIntrospection:
    """Test cases for pool statistics, health and shutdown."""

    def test_pool_stats_without_engine(self, settings):
        """Test stats never connect."""
        factory = Mock()
        manager = ConnectionManager(settings, engine_factory=factory)

        assert manager.pool_stats() == PoolStats()
        factory.assert_not_called()

    def test_pool_stats(self, settings, engine):
        """Test pool counters map onto PoolStats."""
        engine.pool.checkedout.return_value = 2
        engine.pool.checkedin.return_value = 3
        manager = build_manager(settings, engine)
        manager.connect()

        stats = manager.pool_stats()

        assert stats == PoolStats(total_connections=10, active_connections=5,
                                  idle_connections=3, pending_requests=0)

    def test_health_without_engine(self, settings):
        """Test health reports a missing pool without connecting."""
        assert ConnectionManager(settings).health() == {"connected": False, "status": "No connection pool"}

    def test_health_connected(self, settings, engine):
        """Test health includes pool and TLS details when connected."""
        manager = build_manager(settings, engine)
        manager.connect()

        health = manager.health()

        assert health["connected"] is True
        assert health["status"] == "Connected"
        assert health["pool"]["total_connections"] == 10
        assert health["tls"] == {
            "encrypt": True,
            "trust_server_certificate": False,
            "server": "db.internal:3306",
        }

    def test_close(self, settings, engine):
        """Test closing disposes the pool and reports a disconnect."""
        manager = build_manager(settings, engine)
        manager.connect()

        manager.close()

        engine.dispose.assert_called_once()
        assert manager.is_connected is False
        manager.on_event.assert_called_with("disconnect", {})

    def test_close_without_engine(self, settings):
        """Test closing an unused manager is a no-op."""
        on_event = Mock()
        ConnectionManager(settings, on_event=on_event).close()

        on_event.assert_not_called()

    def test_get_connection_manager_singleton(self):
        """Test global connection manager singleton."""
        assert get_connection_manager() is get_connection_manager()


class TestQuoteIdentifier:
    """Test cases for database name quoting."""

    def test_plain_name(self):
        assert quote_identifier("reporting") == "`reporting`"

    def test_backticks_are_doubled(self):
        """Test embedded backticks cannot break out of the identifier."""
        assert quote_identifier("odd`name") == "`odd``name`"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 65, "bad\x00name"])
    def test_invalid_names(self, name):
        """Test empty, oversized and NUL-containing names are rejected."""
        with pytest.raises(ValueError):
            quote_identifier(name)


class TestModels:
    """Test cases for database models."""

    def test_query_result_to_dict(self, sample_query_result):
        """Test QueryResult serialization."""
        data = sample_query_result.to_dict()

        assert data["columns"] == ['id', 'name', 'email']
        assert data["row_count"] == 2
        assert data["timestamp"] == datetime(2025, 1, 15, 12, 0, 0).isoformat()
        assert data["database"] == "appdb"

    def test_pool_stats_utilization(self):
        """Test utilization is the open share of capacity."""
        assert PoolStats(total_connections=10, active_connections=4).utilization == 0.4
        assert PoolStats().utilization == 0.0
