"""Security policy and classification result types."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple

# Data-modifying verbs that may hide behind a CTE or an EXPLAIN ANALYZE.
_DML = r"(?:INSERT|UPDATE|DELETE|MERGE)"


def _compile(*patterns: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


class QueryType(str, Enum):
    """Classification of a submitted statement."""

    SELECT = "select"
    DESTRUCTIVE = "destructive"
    SCHEMA = "schema"
    UNKNOWN = "unknown"
    NON_SELECT = "non-select"
    DANGEROUS = "dangerous"
    UNRESTRICTED = "unrestricted"


@dataclass(frozen=True)
class PatternSet:
    """Matchers used to type a single statement."""

    read_only: Tuple[Any, ...]
    schema_changes: Tuple[Any, ...]
    destructive: Tuple[Any, ...]
    dangerous: Tuple[Any, ...] = ()


DEFAULT_PATTERNS = PatternSet(
    read_only=_compile(
        r"^\s*\(*\s*SELECT\b",
        r"^\s*SHOW\b",
        r"^\s*DESCRIBE\b",
        r"^\s*DESC\b",
        rf"^\s*EXPLAIN\b(?![\s\S]*\b{_DML}\b)",
        rf"^\s*WITH\b(?![\s\S]*\b{_DML}\b)[\s\S]*?\bSELECT\b",
    ),
    schema_changes=_compile(
        r"^\s*(?:CREATE|DROP|ALTER|RENAME)\b",
        r"^\s*(?:GRANT|REVOKE)\b",
    ),
    destructive=_compile(
        r"^\s*(?:DELETE|UPDATE|INSERT|TRUNCATE|MERGE|REPLACE)\b",
        r"^\s*EXEC(?:UTE)?\b",
        r"^\s*CALL\b",
        r"^\s*LOAD\s+(?:DATA|XML)\b",
        r"^\s*HANDLER\b",
        rf"^\s*(?:WITH|EXPLAIN)\b[\s\S]*?\b{_DML}\b",
    ),
    dangerous=_compile(
        r"\bINTO\s+(?:OUTFILE|DUMPFILE)\b",
        r"\bLOAD_FILE\s*\(",
        r"\bsys_(?:exec|eval)\s*\(",
    ),
)


@dataclass(frozen=True)
class SecurityPolicy:
    """Graduated safety switches plus the patterns that type a statement.

    Instances are never mutated; reloading configuration builds a new policy
    and swaps it in whole.
    """

    read_only: bool = True
    allow_destructive: bool = False
    allow_schema_changes: bool = False
    patterns: PatternSet = field(default=DEFAULT_PATTERNS, compare=False)

    @property
    def is_unrestricted(self) -> bool:
        """True when every restriction is switched off."""
        return not self.read_only and self.allow_destructive and self.allow_schema_changes

    @classmethod
    def from_settings(cls, settings, patterns: PatternSet = DEFAULT_PATTERNS) -> "SecurityPolicy":
        """Build a policy from application settings."""
        return cls(
            read_only=settings.db_read_only,
            allow_destructive=settings.db_allow_destructive_operations,
            allow_schema_changes=settings.db_allow_schema_changes,
            patterns=patterns,
        )

    def to_dict(self) -> Dict[str, bool]:
        """Convert the switches to a dictionary."""
        return {
            "read_only": self.read_only,
            "allow_destructive": self.allow_destructive,
            "allow_schema_changes": self.allow_schema_changes,
        }


@dataclass(frozen=True)
class ClassificationResult:
    """Decision for one submitted statement or batch."""

    allowed: bool
    reason: str
    query_type: QueryType
    statement_count: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert the result to a dictionary."""
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "query_type": self.query_type.value,
            "statement_count": self.statement_count,
        }
