from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from datetime import datetime, timezone

from api.schemas.responses import ErrorResponse
from core.logging import get_api_logger_safe
from core.logging.correlation import CorrelationIdManager
from core.utils.exceptions import (
    InsufficientSharesError,
    NotFoundError,
    PersistenceError,
    PoolLedgerException,
    UpstreamUnavailableError,
    ValidationError,
)

logger = get_api_logger_safe("api.middleware.error_handling")

# Most specific first; the first isinstance match wins
STATUS_CODES = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (InsufficientSharesError, 409),
    (PersistenceError, 503),
    (UpstreamUnavailableError, 503),
)


def status_code_for(error: PoolLedgerException) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def _error_details(error: PoolLedgerException) -> dict:
    details = dict(error.details)
    for attribute in ("field", "resource", "resource_id", "requested", "available", "portfolio_id", "operation"):
        value = getattr(error, attribute, None)
        if value is not None:
            details[attribute] = str(value)
    return details


async def ledger_exception_handler(request: Request, exc: PoolLedgerException) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "Request failed",
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    if status_code < 500:
        message = exc.message
    elif status_code == 503:
        message = "Service temporarily unavailable"
    else:
        message = "An unexpected error occurred"
    body = ErrorResponse(
        error=type(exc).__name__,
        message=message,
        details=_error_details(exc) if status_code < 500 else None,
        correlation_id=exc.correlation_id,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PoolLedgerException, ledger_exception_handler)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Global error handling middleware for anything the exception handlers do not cover"""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(
                "Unhandled API exception",
                path=request.url.path,
                method=request.method,
                error=str(e),
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "message": "An unexpected error occurred",
                    "correlation_id": CorrelationIdManager.get_correlation_id(),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "path": request.url.path
                }
            )
