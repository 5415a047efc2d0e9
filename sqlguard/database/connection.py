"""Database connection management."""

import logging
import math
import sys
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from mysql.connector import Error as MySQLError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..config.settings import Settings, get_settings
from ..errors import DatabaseConnectionError, sanitize_error_message
from .models import PoolStats, QueryResult

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 64

EventCallback = Callable[[str, Dict[str, Any]], None]


def quote_identifier(name: str) -> str:
    """Quote a database name for use in a USE statement."""
    if not name or not name.strip() or len(name) > MAX_IDENTIFIER_LENGTH or "\x00" in name:
        raise ValueError(f"Invalid database name: {name!r}")
    return "`" + name.replace("`", "``") + "`"


class ConnectionManager:
    """Owns the pooled engine and establishes it with bounded retries."""

    def __init__(self, settings: Optional[Settings] = None,
                 engine_factory: Callable[..., Engine] = create_engine,
                 sleep: Callable[[float], None] = time.sleep,
                 on_event: Optional[EventCallback] = None):
        """Initialize the connection manager; nothing connects until connect()."""
        self.settings = settings or get_settings()
        self.on_event = on_event
        self._engine_factory = engine_factory
        self._sleep = sleep
        self._engine: Optional[Engine] = None
        self._connected = False
        self._pending = 0
        self._lock = threading.Lock()
        self._connect_lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether a verified pool is available."""
        return self._engine is not None and self._connected

    def build_connection_config(self) -> Dict[str, Any]:
        """Build URL, driver arguments and pool bounds for the selected auth mode."""
        s = self.settings
        connect_args: Dict[str, Any] = {
            "connection_timeout": max(1, math.ceil(s.db_connect_timeout_ms / 1000)),
            "read_timeout": max(1, math.ceil(s.db_request_timeout_ms / 1000)),
            "charset": "utf8mb4",
            "collation": "utf8mb4_unicode_ci",
        }

        if not s.db_encrypt:
            connect_args["ssl_disabled"] = True
        else:
            if s.db_ssl_ca:
                connect_args["ssl_ca"] = s.db_ssl_ca
            if not s.trust_server_certificate:
                connect_args["ssl_verify_cert"] = True
                connect_args["ssl_verify_identity"] = True

        if s.auth_mode == "integrated":
            connect_args["auth_plugin"] = "authentication_kerberos_client"
            connect_args["kerberos_auth_mode"] = "SSPI" if sys.platform == "win32" else "GSSAPI"

        pool_size = max(min(s.db_pool_min, s.db_pool_max), 1)
        pool = {
            "pool_size": pool_size,
            "max_overflow": s.db_pool_max - pool_size,
            "pool_recycle": s.db_pool_idle_timeout_ms // 1000,
            "pool_timeout": s.db_connect_timeout_ms / 1000,
            "pool_pre_ping": True,
        }

        return {"url": s.database_url, "connect_args": connect_args, "pool": pool}

    def connect(self) -> Engine:
        """Return the pooled engine, establishing it with exponential backoff if needed."""
        if self.is_connected:
            return self._engine

        with self._connect_lock:
            if self.is_connected:
                return self._engine

            config = self.build_connection_config()
            max_retries = self.settings.db_max_retries
            base_delay = self.settings.db_retry_delay_ms / 1000
            started = time.monotonic()
            last_error: Optional[BaseException] = None

            logger.debug(f"Establishing database connection to {self.settings.db_host}:{self.settings.db_port}")

            for attempt in range(1, max_retries + 1):
                try:
                    if self._engine is None:
                        self._engine = self._engine_factory(
                            config["url"], connect_args=config["connect_args"], **config["pool"]
                        )
                    with self._engine.connect() as connection:
                        connection.execute(text("SELECT 1"))

                    self._connected = True
                    logger.info(f"Connected to database (attempt {attempt})")
                    self._emit("connect", {"attempt": attempt, "auth_mode": self.settings.auth_mode})
                    return self._engine

                except (SQLAlchemyError, MySQLError, OSError) as e:
                    last_error = e
                    message = self._sanitize(e)
                    logger.warning(f"Connection attempt {attempt}/{max_retries} failed: {message}")
                    self._emit("error", {"attempt": attempt, "error": message})

                    if attempt >= max_retries:
                        break

                    delay = base_delay * 2 ** (attempt - 1)
                    self._emit("retry", {"attempt": attempt, "delay": delay})
                    self._sleep(delay)

            elapsed = time.monotonic() - started
            self._discard_engine()
            logger.error(f"Giving up on database connection after {max_retries} attempts")
            raise DatabaseConnectionError(max_retries, elapsed, last_error, secrets=self._secrets())

    @contextmanager
    def acquire(self):
        """Check a connection out of the pool for the duration of the block."""
        engine = self.connect()
        started = time.monotonic()
        with self._lock:
            self._pending += 1
        try:
            connection = engine.connect()
        except SQLAlchemyError as e:
            self._connected = False
            message = self._sanitize(e)
            logger.error(f"Failed to acquire pooled connection: {message}")
            self._emit("error", {"stage": "acquire", "error": message})
            raise DatabaseConnectionError(1, time.monotonic() - started, e, secrets=self._secrets()) from e
        finally:
            with self._lock:
                self._pending -= 1

        try:
            yield connection
        finally:
            connection.close()

    def run(self, connection: Connection, statement: str, database: Optional[str] = None) -> QueryResult:
        """Run a statement verbatim on an acquired connection and commit it."""
        start_time = time.time()
        if database:
            connection.exec_driver_sql(f"USE {quote_identifier(database)}")

        try:
            result = connection.execution_options(no_parameters=True).exec_driver_sql(statement)
            if result.returns_rows:
                columns = list(result.keys())
                rows = [list(row) for row in result.fetchall()]
                rows_affected = 0
            else:
                columns, rows = [], []
                rows_affected = max(result.rowcount or 0, 0)
            connection.commit()
        finally:
            if database:
                self._restore_database(connection)

        execution_time = time.time() - start_time
        logger.info(f"Statement executed successfully in {execution_time:.3f}s")

        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            rows_affected=rows_affected,
            execution_time=execution_time,
            query=statement,
            timestamp=datetime.now(),
            database=database or self.settings.db_name,
        )

    def test_connection(self) -> bool:
        """Test the database connection."""
        try:
            with self.acquire() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except (DatabaseConnectionError, SQLAlchemyError) as e:
            logger.error(f"Connection test failed: {self._sanitize(e)}")
            return False

    def pool_stats(self) -> PoolStats:
        """Snapshot of the underlying pool. Never connects."""
        if self._engine is None:
            return PoolStats()

        pool = self._engine.pool
        checked_out = pool.checkedout()
        checked_in = pool.checkedin()
        capacity = self.settings.db_pool_max

        with self._lock:
            pending = self._pending

        return PoolStats(
            total_connections=capacity,
            active_connections=checked_out + checked_in,
            idle_connections=checked_in,
            pending_requests=pending,
        )

    def health(self) -> Dict[str, Any]:
        """Connection health without triggering a connection attempt."""
        if self._engine is None:
            return {"connected": False, "status": "No connection pool"}

        health = {
            "connected": self._connected,
            "status": "Connected" if self._connected else "Disconnected",
            "pool": self.pool_stats().to_dict(),
        }
        if self._connected and self.settings.db_encrypt:
            health["tls"] = {
                "encrypt": True,
                "trust_server_certificate": self.settings.trust_server_certificate,
                "server": f"{self.settings.db_host}:{self.settings.db_port}",
            }
        return health

    def close(self) -> None:
        """Close the connection pool."""
        if self._engine is None:
            return
        logger.info("Closing database connection pool")
        self._discard_engine()
        self._emit("disconnect", {})

    def _discard_engine(self) -> None:
        try:
            if self._engine is not None:
                self._engine.dispose()
        except SQLAlchemyError as e:
            logger.error(f"Error closing connection pool: {self._sanitize(e)}")
        finally:
            self._engine = None
            self._connected = False

    def _restore_database(self, connection: Connection) -> None:
        try:
            if self.settings.db_name:
                connection.exec_driver_sql(f"USE {quote_identifier(self.settings.db_name)}")
            else:
                connection.invalidate()
        except SQLAlchemyError as e:
            logger.warning(f"Could not restore default database, discarding connection: {self._sanitize(e)}")
            connection.invalidate()

    def _emit(self, event: str, details: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event, details)
        except Exception as e:
            logger.warning(f"Connection event handler failed for '{event}': {e}")

    def _secrets(self):
        return [self.settings.password]

    def _sanitize(self, error: BaseException) -> str:
        return sanitize_error_message(error, self._secrets())


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global connection manager instance."""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager
