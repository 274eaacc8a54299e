from fastapi import HTTPException
import structlog

from services.audit_service import scrub_error
from services.errors import (
    RuntimeBaseError,
    ConfigurationError,
    SafetyViolation,
    NotFoundError,
    CatalogNotReady,
    QuotaExceeded,
    CircuitOpen,
    ModelOutputError,
    TenantIsolationError,
    QueryExecutionError,
    TransientIOError,
)

logger = structlog.get_logger()

STATUS_BY_ERROR = (
    (SafetyViolation, 422),
    (ConfigurationError, 422),
    (NotFoundError, 404),
    (TenantIsolationError, 404),
    (CatalogNotReady, 409),
    (QuotaExceeded, 429),
    (CircuitOpen, 429),
    (ModelOutputError, 502),
    (QueryExecutionError, 502),
    (TransientIOError, 503),
)


def to_http_exception(error: RuntimeBaseError) -> HTTPException:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status, detail=error.to_dict())
    logger.error("Unmapped runtime error", error=repr(error))
    return HTTPException(status_code=500, detail=error.to_dict())


def internal_error(error: Exception, event: str) -> HTTPException:
    logger.error(event, error=str(error), error_type=type(error).__name__)
    return HTTPException(status_code=500, detail={"code": "INTERNAL_ERROR", "message": scrub_error(str(error))})
