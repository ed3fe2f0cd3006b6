"""
Standardized service logger initialization.
Provides consistent logging patterns across all service components.
"""

from typing import Any, Dict

from .channels import LogChannel
from .enhanced_logging import get_channel_logger


class ServiceLogger:
    """Standardized logger collection for services"""

    def __init__(self, service_name: str, channel: LogChannel, component: str = None):
        """
        Initialize service logger collection.

        Args:
            service_name: Name of the service (e.g., 'portfolio_ledger', 'rebalancer')
            channel: Channel for the service's main log stream
            component: Optional component within service (e.g., 'scheduler')
        """
        self.service_name = service_name
        self.component = component

        base_name = f"{service_name}_{component}" if component else service_name
        service_context = {"service": service_name, "component": component}

        self.main = get_channel_logger(base_name, channel).bind(**service_context)
        self.error = get_channel_logger(f"{base_name}_errors", LogChannel.ERROR).bind(**service_context)
        self.audit = get_channel_logger(f"{base_name}_audit", LogChannel.AUDIT).bind(**service_context)

    def bind_portfolio_context(self, portfolio_id: str) -> 'ServiceLogger':
        """Return a copy whose loggers carry portfolio_id on every event."""
        bound = ServiceLogger.__new__(ServiceLogger)
        bound.service_name = self.service_name
        bound.component = self.component
        bound.main = self.main.bind(portfolio_id=portfolio_id)
        bound.error = self.error.bind(portfolio_id=portfolio_id)
        bound.audit = self.audit.bind(portfolio_id=portfolio_id)
        return bound

    # Convenience methods for common logging patterns
    def info(self, message: str, **kwargs: Any) -> None:
        self.main.info(message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.main.debug(message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.main.warning(message, **kwargs)

    def log_error(self, message: str, error: Exception = None, **kwargs: Any) -> None:
        """Log on the error channel with normalized error fields."""
        if error is not None:
            kwargs.setdefault("error", str(error))
            kwargs.setdefault("error_type", type(error).__name__)
        self.error.error(message, **kwargs)

    def log_audit(self, action: str, details: Dict[str, Any]) -> None:
        """Record a committed state change on the audit channel."""
        self.audit.info(action, **details)


def get_service_logger(service_name: str, channel: LogChannel, component: str = None) -> ServiceLogger:
    """Factory function to create a service logger."""
    return ServiceLogger(service_name, channel, component)
