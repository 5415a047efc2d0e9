"""Statement classification and security policy."""

from .classifier import PatternStatementTyper, QueryClassifier, StatementTyper, classify_query
from .policy import DEFAULT_PATTERNS, ClassificationResult, PatternSet, QueryType, SecurityPolicy

__all__ = [
    "ClassificationResult",
    "DEFAULT_PATTERNS",
    "PatternSet",
    "PatternStatementTyper",
    "QueryClassifier",
    "QueryType",
    "SecurityPolicy",
    "StatementTyper",
    "classify_query",
]
