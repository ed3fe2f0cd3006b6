# Structured exception hierarchy for the pool ledger

from decimal import Decimal
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from core.logging.correlation import CorrelationIdManager


class PoolLedgerException(Exception):
    """Base exception for all pool ledger specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id or CorrelationIdManager.get_correlation_id()
        self.timestamp = datetime.now(timezone.utc)


class TransientError(PoolLedgerException):
    """Base class for transient errors that may succeed when retried"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 5,
                 details: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None):
        super().__init__(message, details, correlation_id)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.retryable = retry_count < max_retries


class PermanentError(PoolLedgerException):
    """Base class for permanent errors that must not be retried"""
    pass


# Input validation
class ValidationError(PermanentError):
    """Request rejected before any state change"""

    def __init__(self, message: str, field: str, value: Any,
                 expected: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.expected = expected


class NotFoundError(PermanentError):
    """Referenced portfolio or position does not exist"""

    def __init__(self, message: str, resource: str, resource_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.resource = resource
        self.resource_id = resource_id


class InsufficientSharesError(PermanentError):
    """Withdrawal asks for more shares than the position holds"""

    def __init__(self, message: str, requested: Decimal, available: Decimal,
                 portfolio_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.requested = requested
        self.available = available
        self.portfolio_id = portfolio_id


class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    def __init__(self, message: str, config_field: str, config_value: Any,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


# Price oracle
class UpstreamUnavailableError(TransientError):
    """Price oracle unreachable, slow, or answered with an unusable payload"""

    def __init__(self, message: str, symbol: Optional[str] = None,
                 status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.symbol = symbol
        self.status_code = status_code


class CircuitOpenError(UpstreamUnavailableError):
    """Oracle calls are being short-circuited after repeated failures"""
    pass


# Persistence
class PersistenceError(TransientError):
    """Ledger store read or write failed; the unit of work was rolled back"""

    def __init__(self, message: str, operation: str, table: Optional[str] = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.table = table


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error should be retried

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging and API error bodies

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, PoolLedgerException):
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count
            context["max_retries"] = error.max_retries

        if isinstance(error, ValidationError):
            context["field"] = error.field

        if isinstance(error, NotFoundError):
            context["resource"] = error.resource
            context["resource_id"] = error.resource_id

        if isinstance(error, InsufficientSharesError):
            context["requested"] = str(error.requested)
            context["available"] = str(error.available)
            context["portfolio_id"] = error.portfolio_id

        if isinstance(error, UpstreamUnavailableError) and error.symbol:
            context["symbol"] = error.symbol

    if additional_context:
        context.update(additional_context)

    return context
