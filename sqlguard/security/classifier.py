"""Statement classification against the active security policy."""

import logging
import re
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from .policy import ClassificationResult, PatternSet, QueryType, SecurityPolicy

logger = logging.getLogger(__name__)

# Most restrictive first.
_RESTRICTIVENESS = {
    QueryType.DANGEROUS: 4,
    QueryType.SCHEMA: 3,
    QueryType.DESTRUCTIVE: 2,
    QueryType.SELECT: 1,
    QueryType.UNKNOWN: 0,
}


class StatementTyper(ABC):
    """Splits a batch and assigns a type to each statement."""

    @abstractmethod
    def split(self, text: str) -> List[str]:
        """Split a batch into individual statements."""

    @abstractmethod
    def statement_type(self, statement: str, patterns: PatternSet) -> QueryType:
        """Type a single statement."""


class PatternStatementTyper(StatementTyper):
    """Fast, conservative regex typer.

    Splitting is a plain split on ``;`` so a terminator inside a string
    literal or a comment produces extra fragments. Those fragments rarely
    match a read-only pattern and are therefore rejected in read-only mode.
    """

    def split(self, text: str) -> List[str]:
        return [part for part in text.split(";") if part.strip()]

    def statement_type(self, statement: str, patterns: PatternSet) -> QueryType:
        checks = (
            ("dangerous", QueryType.DANGEROUS),
            ("read_only", QueryType.SELECT),
            ("schema_changes", QueryType.SCHEMA),
            ("destructive", QueryType.DESTRUCTIVE),
        )
        for name, query_type in checks:
            if self._matches(getattr(patterns, name, None), statement, name):
                return query_type
        return QueryType.UNKNOWN

    @staticmethod
    def _matches(patterns: Optional[Iterable], statement: str, name: str) -> bool:
        try:
            for pattern in patterns:
                if isinstance(pattern, str):
                    if re.search(pattern, statement, re.IGNORECASE):
                        return True
                elif pattern.search(statement):
                    return True
        except (TypeError, AttributeError, re.error) as e:
            logger.warning(f"Ignoring unusable '{name}' pattern set: {e}")
        return False


class QueryClassifier:
    """Decides whether a statement may run under a security policy."""

    def __init__(self, typer: Optional[StatementTyper] = None):
        self.typer = typer or PatternStatementTyper()

    def classify(self, text: Optional[str], policy: SecurityPolicy) -> ClassificationResult:
        """Classify a statement or batch. Never raises."""
        if policy.is_unrestricted:
            return ClassificationResult(
                allowed=True,
                reason="All restrictions are disabled",
                query_type=QueryType.UNRESTRICTED,
            )

        text = text if isinstance(text, str) else ""
        if not text.strip():
            return ClassificationResult(
                allowed=True, reason="Empty query", query_type=QueryType.SELECT, statement_count=0
            )

        try:
            statements = self.typer.split(text)
            types = [self.typer.statement_type(statement, policy.patterns) for statement in statements]
            query_type = self._most_restrictive(types)
            if QueryType.UNKNOWN in types and query_type == QueryType.SELECT:
                # An unrecognized member never rides along with a read-only batch.
                query_type = QueryType.UNKNOWN
        except Exception as e:
            logger.warning(f"Statement typing failed, treating as unknown: {e}")
            statements = [text]
            query_type = QueryType.UNKNOWN

        return self._gate(query_type, policy, len(statements))

    @staticmethod
    def _most_restrictive(types: Iterable[QueryType]) -> QueryType:
        return max(types, key=_RESTRICTIVENESS.__getitem__, default=QueryType.UNKNOWN)

    @staticmethod
    def _gate(query_type: QueryType, policy: SecurityPolicy, count: int) -> ClassificationResult:
        if query_type == QueryType.DANGEROUS:
            return ClassificationResult(
                allowed=False,
                reason=(
                    "Query uses a prohibited server file or command function "
                    "(INTO OUTFILE, INTO DUMPFILE, LOAD_FILE, sys_exec, sys_eval). "
                    "It is blocked in every restricted mode."
                ),
                query_type=query_type,
                statement_count=count,
            )

        if policy.read_only:
            if query_type == QueryType.SELECT:
                return ClassificationResult(True, "Query validation passed", query_type, count)
            if query_type == QueryType.UNKNOWN:
                query_type = QueryType.NON_SELECT
            return ClassificationResult(
                allowed=False,
                reason=(
                    f"Read-only mode is enabled. Statement type '{query_type.value}' is not allowed; "
                    "only SELECT, SHOW, DESCRIBE and EXPLAIN queries are permitted. "
                    "Blocking is the secure default. Set DB_READ_ONLY=false to disable."
                ),
                query_type=query_type,
                statement_count=count,
            )

        if query_type == QueryType.SCHEMA and not policy.allow_schema_changes:
            return ClassificationResult(
                allowed=False,
                reason=(
                    "Schema changes (CREATE/DROP/ALTER/GRANT/REVOKE) are disabled. "
                    "Blocking is the secure default. Set DB_ALLOW_SCHEMA_CHANGES=true to enable."
                ),
                query_type=query_type,
                statement_count=count,
            )

        if query_type == QueryType.DESTRUCTIVE and not policy.allow_destructive:
            return ClassificationResult(
                allowed=False,
                reason=(
                    "Destructive operations (INSERT/UPDATE/DELETE/TRUNCATE/EXEC) are disabled. "
                    "Blocking is the secure default. "
                    "Set DB_ALLOW_DESTRUCTIVE_OPERATIONS=true to enable."
                ),
                query_type=query_type,
                statement_count=count,
            )

        return ClassificationResult(True, "Query validation passed", query_type, count)


_default_classifier = QueryClassifier()


def classify_query(text: Optional[str], policy: SecurityPolicy) -> ClassificationResult:
    """Classify with the shared pattern-based classifier."""
    return _default_classifier.classify(text, policy)
