"""Error types surfaced by the execution pipeline."""

import re
from typing import Any, Dict, Iterable, Optional

MAX_ERROR_LENGTH = 2048

_CREDENTIAL_RE = re.compile(r"(?i)\b(password|passwd|pwd)\s*[=:]\s*[^\s;,'\"]+")


def sanitize_error_message(message: Any, secrets: Iterable[Optional[str]] = ()) -> str:
    """Strip connection secrets from a driver message and bound its length."""
    text = "" if message is None else str(message)
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    text = _CREDENTIAL_RE.sub(lambda m: f"{m.group(1)}=***", text)
    text = text.strip()
    if len(text) > MAX_ERROR_LENGTH:
        text = text[:MAX_ERROR_LENGTH] + "..."
    return text


class SqlGuardError(Exception):
    """Base class for failures reported to the protocol layer."""

    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary."""
        return {"kind": self.kind, "message": self.message}


class QueryBlockedError(SqlGuardError):
    """The statement was rejected by the active security policy."""

    kind = "blocked"

    def __init__(self, classification):
        super().__init__(classification.reason)
        self.classification = classification

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["query_type"] = self.classification.query_type.value
        return data


class DatabaseConnectionError(SqlGuardError):
    """The database could not be reached after every connection attempt."""

    kind = "connection"

    def __init__(self, attempts: int, elapsed: float, last_error: Optional[BaseException] = None,
                 secrets: Iterable[Optional[str]] = ()):
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        detail = sanitize_error_message(last_error, secrets) if last_error else "Unknown error"
        super().__init__(
            f"Failed to connect to database after {attempts} attempt{'' if attempts == 1 else 's'} "
            f"({elapsed:.1f}s elapsed): {detail}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = self.attempts
        data["elapsed"] = round(self.elapsed, 3)
        return data


class QueryExecutionError(SqlGuardError):
    """The database rejected or failed a permitted statement."""

    kind = "execution"

    def __init__(self, message: str, database: Optional[str] = None):
        super().__init__(f"Query execution failed: {message}")
        self.database = database
