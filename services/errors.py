"""
Typed error hierarchy for the semantic catalog runtime.

Each error carries a ``retryable`` flag, read by ``is_transient_error`` when
the sampler and executor decide whether to retry, and an optional
``context`` dict for structured logging. HTTP status mapping lives next to
the routes.
"""
from typing import Any, Dict, Optional


class RuntimeBaseError(Exception):
    """Base class for all runtime errors."""

    retryable: bool = False
    code: str = "RUNTIME_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **({"context": self.context} if self.context else {})}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigurationError(RuntimeBaseError):
    """Bad or missing credentials, unreadable config, schema validation failure."""
    code = "CONFIGURATION_ERROR"


class TransientIOError(RuntimeBaseError):
    """Timeout, connection reset or deadlock. Retried with bounded backoff."""
    code = "TRANSIENT_IO_ERROR"
    retryable = True


class CatalogPermissionError(RuntimeBaseError):
    """Login cannot read privileged catalog views; callers fall back."""
    code = "CATALOG_PERMISSION_ERROR"


class SafetyViolation(RuntimeBaseError):
    """Generated SQL is not a read-only statement."""
    code = "SAFETY_VIOLATION"


class ModelOutputError(RuntimeBaseError):
    """The language model returned output that could not be understood."""
    code = "MODEL_OUTPUT_ERROR"


class QuotaExceeded(RuntimeBaseError):
    code = "QUOTA_EXCEEDED"


class CircuitOpen(RuntimeBaseError):
    code = "CIRCUIT_OPEN"


class CatalogNotReady(RuntimeBaseError):
    code = "CATALOG_NOT_READY"


class NotFoundError(RuntimeBaseError):
    code = "NOT_FOUND"


class TenantIsolationError(RuntimeBaseError):
    """A write targeted a record owned by another tenant."""
    code = "TENANT_ISOLATION"


class ArtifactTooLarge(RuntimeBaseError):
    """Serialized artifact payload exceeds the storage size limit."""
    code = "ARTIFACT_TOO_LARGE"


class QueryExecutionError(RuntimeBaseError):
    """The target database rejected a statement (bad column, syntax error)."""
    code = "QUERY_EXECUTION_ERROR"
