# Enhanced structured logging with multi-channel support
import structlog
from typing import Optional

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
)

# Global flag to prevent duplicate logging configuration
_logging_configured = False


def configure_logging(settings: Settings) -> None:
    """Configure the logging system once per process."""
    global _logging_configured

    if _logging_configured:
        return

    configure_enhanced_logging(settings)
    _logging_configured = True


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


# Channel-specific logger functions
def get_ledger_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a ledger logger safely."""
    return get_channel_logger(name, LogChannel.LEDGER)


def get_market_data_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a market data logger safely."""
    return get_channel_logger(name, LogChannel.MARKET_DATA)


def get_api_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an API logger safely."""
    return get_channel_logger(name, LogChannel.API)


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger safely."""
    return get_channel_logger(name, LogChannel.ERROR)


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a database logger safely."""
    return get_channel_logger(name, LogChannel.DATABASE)


__all__ = [
    "LogChannel",
    "configure_logging",
    "get_logger",
    "get_channel_logger",
    "get_ledger_logger_safe",
    "get_market_data_logger_safe",
    "get_api_logger_safe",
    "get_error_logger_safe",
    "get_database_logger_safe",
]
