"""Safety-gated execution pipeline.

Every request flows through classification, connection acquisition,
execution and metrics recording::

    received -> classified -> rejected
                           -> connecting -> executing -> succeeded | failed

Blocked statements never touch the database. Monitoring is best-effort and
can never change the outcome of a request.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .config.settings import Settings, get_settings, reload_settings
from .database.connection import ConnectionManager
from .errors import QueryBlockedError, QueryExecutionError, SqlGuardError, sanitize_error_message
from .monitoring.performance import MonitorConfig, PerformanceMonitor
from .security.classifier import QueryClassifier
from .security.policy import ClassificationResult, SecurityPolicy

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("sqlguard.security")

AUDIT_QUERY_LENGTH = 200


class PipelineState(str, Enum):
    """Lifecycle of a single request."""

    RECEIVED = "received"
    CLASSIFIED = "classified"
    REJECTED = "rejected"
    CONNECTING = "connecting"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """Outcome of a successful execution."""

    rows_affected: int
    rows: List[List[Any]]
    columns: List[str]
    classification: ClassificationResult
    duration_ms: float
    database: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the result to a dictionary."""
        return {
            "rows_affected": self.rows_affected,
            "row_count": self.row_count,
            "columns": self.columns,
            "rows": self.rows,
            "classification": self.classification.to_dict(),
            "duration_ms": self.duration_ms,
            "database": self.database,
        }


def _truncate(text: Optional[str], length: int = AUDIT_QUERY_LENGTH) -> str:
    text = text or ""
    return f"{text[:length]}..." if len(text) > length else text


class ExecutionPipeline:
    """Sequences policy lookup, classification, connection, execution and metrics."""

    def __init__(self, policy: Optional[SecurityPolicy] = None,
                 connection_manager: Optional[ConnectionManager] = None,
                 monitor: Optional[PerformanceMonitor] = None,
                 classifier: Optional[QueryClassifier] = None,
                 settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._policy = policy or SecurityPolicy.from_settings(self.settings)
        self._policy_lock = threading.Lock()
        self.classifier = classifier or QueryClassifier()
        self.monitor = monitor or PerformanceMonitor(MonitorConfig.from_settings(self.settings))
        self.connection_manager = connection_manager or ConnectionManager(
            self.settings, on_event=self._on_connection_event
        )
        self._request = threading.local()

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    @property
    def last_state(self) -> Optional[PipelineState]:
        """State of the most recent request made from the calling thread."""
        return getattr(self._request, "state", None)

    def reload(self, policy: Optional[SecurityPolicy] = None) -> SecurityPolicy:
        """Swap the active policy as a whole; re-reads the environment when none is given."""
        if policy is None:
            self.settings = reload_settings()
            policy = SecurityPolicy.from_settings(self.settings, patterns=self._policy.patterns)

        with self._policy_lock:
            previous, self._policy = self._policy, policy

        if previous != policy:
            security_logger.info(f"CONFIGURATION_CHANGE security policy {previous.to_dict()} -> {policy.to_dict()}")
        return policy

    def classify(self, text: Optional[str]) -> ClassificationResult:
        """Classify a statement against the active policy without executing it."""
        return self.classifier.classify(text, self._policy)

    def execute_statement(self, text: str, database: Optional[str] = None,
                          tool: str = "execute_query") -> ExecutionResult:
        """Classify, then execute a statement on the pooled connection.

        Raises QueryBlockedError, DatabaseConnectionError or QueryExecutionError.
        """
        self._transition(PipelineState.RECEIVED)
        classification = self.classify(text)
        self._transition(PipelineState.CLASSIFIED)

        if not classification.allowed:
            self._transition(PipelineState.REJECTED)
            self._audit_blocked(text, classification, tool, database)
            raise QueryBlockedError(classification)

        if not (text or "").strip():
            self._transition(PipelineState.SUCCEEDED)
            return ExecutionResult(0, [], [], classification, 0.0, database)

        self._transition(PipelineState.CONNECTING)
        try:
            with self.connection_manager.acquire() as connection:
                self._transition(PipelineState.EXECUTING)
                result, duration_ms = self._execute(connection, text, database, tool)
        except SqlGuardError as e:
            self._transition(PipelineState.FAILED)
            logger.error(f"{tool} failed ({e.kind}): {e.message}")
            raise
        finally:
            self._record_pool_metrics()

        self._transition(PipelineState.SUCCEEDED)
        return ExecutionResult(
            rows_affected=result.rows_affected,
            rows=result.rows,
            columns=result.columns,
            classification=classification,
            duration_ms=duration_ms,
            database=result.database,
        )

    def _execute(self, connection, text: str, database: Optional[str], tool: str):
        query_id = self._monitor_call(self.monitor.start_query, tool, text, {"database": database})
        started = time.perf_counter()
        result = error = None
        try:
            result = self.connection_manager.run(connection, text, database)
        except SqlGuardError as e:
            error = e
            raise
        except Exception as e:
            error = e
            message = sanitize_error_message(getattr(e, "orig", None) or e, [self.settings.password])
            raise QueryExecutionError(message, database) from e
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            self._monitor_call(self.monitor.end_query, query_id, result, error, duration_ms)
        return result, duration_ms

    def _transition(self, state: PipelineState) -> None:
        self._request.state = state
        logger.debug(f"Pipeline state: {state.value}")

    def _audit_blocked(self, text: str, classification: ClassificationResult,
                       tool: str, database: Optional[str]) -> None:
        if not self.settings.enable_security_audit:
            return
        security_logger.warning(
            f"QUERY_BLOCKED tool={tool} database={database or 'default'} "
            f"type={classification.query_type.value} reason={classification.reason!r} "
            f"query={_truncate(text)!r}"
        )

    def _on_connection_event(self, event: str, details: Dict[str, Any]) -> None:
        if event == "error" and self.settings.enable_security_audit:
            security_logger.warning(f"CONNECTION_FAILED {details}")
        self._monitor_call(self.monitor.record_connection_event, event, details)

    def _record_pool_metrics(self) -> None:
        try:
            self.monitor.record_pool_metrics(self.connection_manager.pool_stats())
        except Exception as e:
            logger.warning(f"Failed to record pool metrics: {e}")

    @staticmethod
    def _monitor_call(func, *args):
        try:
            return func(*args)
        except Exception as e:
            logger.warning(f"Performance monitoring call {getattr(func, '__name__', func)!s} failed: {e}")
            return None


# Global pipeline instance
_pipeline: Optional[ExecutionPipeline] = None


def get_pipeline() -> ExecutionPipeline:
    """Get the global execution pipeline instance."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ExecutionPipeline()
    return _pipeline
