"""
Correlation IDs for tying together the log lines of one request or
scheduler run.
"""

import contextvars
import uuid
from typing import Any, Dict, Optional

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id', default=None
)


class CorrelationIdManager:
    """Manager for correlation ID lifecycle in the current context"""

    @staticmethod
    def generate_correlation_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def set_correlation_id(correlation_id: str) -> str:
        _correlation_id.set(correlation_id)
        return correlation_id

    @staticmethod
    def get_correlation_id() -> Optional[str]:
        return _correlation_id.get()

    @staticmethod
    def ensure_correlation_id() -> str:
        """Return the current correlation ID, generating one if needed."""
        current_id = _correlation_id.get()
        if current_id is None:
            current_id = CorrelationIdManager.generate_correlation_id()
            _correlation_id.set(current_id)
        return current_id

    @staticmethod
    def clear_correlation() -> None:
        _correlation_id.set(None)


def add_correlation_id(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: stamp the current correlation ID on every event."""
    correlation_id = _correlation_id.get()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict
